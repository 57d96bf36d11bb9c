from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, MutableMapping, Tuple

logger = logging.getLogger(__name__)

ActionCallback = Callable[..., Any]
FilterCallback = Callable[..., Any]

DEFAULT_PRIORITY = 10


class HookError(RuntimeError):
    """Base exception raised for hook registration issues."""


@dataclass
class HookRegistry:
    """Holds lifecycle actions and value filters for one background process.

    Actions are fire-and-forget notifications (``cancelled``, ``completed``...).
    Filters receive a value and return a possibly replaced one; they are how a
    deployment tunes lock time, budgets and the trigger request.
    """

    actions: MutableMapping[str, List[ActionCallback]] = field(default_factory=dict)
    filters: MutableMapping[str, List[Tuple[int, int, FilterCallback]]] = field(default_factory=dict)
    _sequence: int = 0

    def add_action(self, name: str, callback: ActionCallback) -> ActionCallback:
        """Subscribe a callback to an action.

        Args:
            name: Action name.
            callback: Callable invoked with the action arguments.

        Returns:
            ActionCallback: The callback, so the method can be used as a decorator.
        """
        if not callable(callback):
            raise HookError(f"Action callback for '{name}' must be callable.")
        self.actions.setdefault(name, []).append(callback)
        return callback

    def remove_action(self, name: str, callback: ActionCallback) -> bool:
        callbacks = self.actions.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def do_action(self, name: str, *args: Any) -> None:
        """Invoke every callback subscribed to ``name`` in registration order.

        A raising callback is logged and does not prevent the others from running.
        """
        for callback in list(self.actions.get(name, [])):
            try:
                callback(*args)
            except Exception:
                logger.exception("Action '%s' callback %r failed", name, callback)

    def add_filter(self, name: str, callback: FilterCallback, priority: int = DEFAULT_PRIORITY) -> FilterCallback:
        """Register a value filter; lower priorities run first.

        Args:
            name: Filter name.
            callback: Callable receiving the current value (and extra args) and returning the new value.
            priority: Ordering key; ties run in registration order.

        Returns:
            FilterCallback: The callback.
        """
        if not callable(callback):
            raise HookError(f"Filter callback for '{name}' must be callable.")
        self._sequence += 1
        entries = self.filters.setdefault(name, [])
        entries.append((priority, self._sequence, callback))
        entries.sort(key=lambda entry: (entry[0], entry[1]))
        return callback

    def remove_filter(self, name: str, callback: FilterCallback) -> bool:
        entries = self.filters.get(name, [])
        for entry in entries:
            if entry[2] is callback:
                entries.remove(entry)
                return True
        return False

    def apply_filters(self, name: str, value: Any, *args: Any) -> Any:
        for _, _, callback in list(self.filters.get(name, [])):
            value = callback(value, *args)
        return value

    def has(self, name: str) -> bool:
        return bool(self.actions.get(name) or self.filters.get(name))

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        """Return counts of registered callbacks keyed by hook name."""
        return {
            "actions": {name: len(callbacks) for name, callbacks in self.actions.items() if callbacks},
            "filters": {name: len(entries) for name, entries in self.filters.items() if entries},
        }
