"""Durable, resumable batch processing drained across worker invocations.

A host pushes items, saves them as a batch and dispatches. Each triggered
invocation takes the process lock, drains the oldest batch until its time or
memory budget runs out (or a pause/cancel is requested), releases the lock
and either completes or dispatches the next invocation. A recurring health
check re-dispatches when a trigger was lost.
"""

from __future__ import annotations

import contextvars
import hashlib
import random
import secrets
import time
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from .async_request import AlreadyProcessingError, AsyncRequest, DispatchResult
from .constants import (
    ACTION_CANCELLED,
    ACTION_COMPLETED,
    ACTION_PAUSED,
    ACTION_RESUMED,
    BATCH_KEY_INFIX,
    CRON_HOOK_SUFFIX,
    FILTER_CRON_INTERVAL,
    FILTER_MEMORY_EXCEEDED,
    FILTER_QUEUE_LOCK_TIME,
    FILTER_TIME_EXCEEDED,
    FILTER_TIME_LIMIT,
    LOCK_KEY_SUFFIX,
    STATUS_KEY_SUFFIX,
)
from .logging_utils import current_request_id, new_request_id
from .memory import current_memory_usage, memory_limit
from .models import Batch, HandleOutcome, ProcessConfig, ProcessStatus
from .scheduler import RecurringScheduler, ThreadingScheduler

Callback = Callable[["BackgroundProcess"], Any]


def is_drop(value: Any) -> bool:
    """Return True when a task result means "done, drop the item"."""
    return value is None or value is False


@dataclass(frozen=True)
class Invocation:
    """Budget window and lock ownership of one worker invocation."""

    start_time: float = 0.0
    lock_token: Optional[str] = None


class BackgroundProcess(AsyncRequest):
    """Queue of work items drained in bounded slices.

    Subclasses implement :meth:`task`. Returning ``None`` (or ``False``)
    drops the item; returning anything else puts that value back at the
    front of the current batch, where it runs again on the next iteration.

    Args:
        config: Identifier and budget settings.
        scheduler: Recurring scheduler for the health check.
        **kwargs: Collaborators forwarded to :class:`AsyncRequest`.
    """

    def __init__(
        self,
        config: Optional[ProcessConfig] = None,
        *,
        scheduler: Optional[RecurringScheduler] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(config, **kwargs)
        self.scheduler = scheduler or ThreadingScheduler()
        self.cron_hook_identifier = f"{self.identifier}{CRON_HOOK_SUFFIX}"
        self.last_batch_key: Optional[str] = None
        self._queue: List[Any] = []
        self._invocation: contextvars.ContextVar[Optional[Invocation]] = contextvars.ContextVar(
            f"{self.identifier}_invocation", default=None
        )

    # ------------------------------------------------------------------
    # Keys and clock
    # ------------------------------------------------------------------

    @property
    def status_key(self) -> str:
        return f"{self.identifier}{STATUS_KEY_SUFFIX}"

    @property
    def lock_key(self) -> str:
        return f"{self.identifier}{LOCK_KEY_SUFFIX}"

    @property
    def batch_prefix(self) -> str:
        return f"{self.identifier}{BATCH_KEY_INFIX}"

    @property
    def start_time(self) -> float:
        """Start of the budget window of the invocation running in this context."""
        invocation = self._invocation.get()
        return invocation.start_time if invocation else 0.0

    def now(self) -> float:
        return time.time()

    def generate_key(self, length: Optional[int] = None) -> str:
        """Generate a unique batch key, truncated to ``length`` characters.

        Keys are unique per save so concurrent enqueue sessions never merge
        into each other's batches.
        """
        length = length or self.config.key_length
        unique = hashlib.md5(f"{time.time_ns()}{random.getrandbits(64)}".encode("ascii")).hexdigest()
        return (self.batch_prefix + unique)[:length]

    # ------------------------------------------------------------------
    # Enqueue API
    # ------------------------------------------------------------------

    def push(self, item: Any) -> "BackgroundProcess":
        """Append an item to the pending list; :meth:`save` persists it."""
        self._queue.append(item)
        return self

    push_to_queue = push

    def save(self) -> "BackgroundProcess":
        """Persist the pending list as one new batch and clear it.

        Saving an empty pending list creates nothing.
        """
        # A later save must not carry items of this one.
        items, self._queue = self._queue, []
        self.last_batch_key = self.save_items(items)
        return self

    commit = save

    def save_items(self, items: Iterable[Any]) -> Optional[str]:
        """Persist ``items`` as one new batch, bypassing the pending list.

        Safe for concurrent callers sharing this process instance.

        Returns:
            The new batch key, or None when ``items`` is empty.
        """
        items = list(items)
        if not items:
            return None
        key = self.generate_key()
        self.store.set(key, items)
        self.log.info("Saved batch", context={"batch": key, "items": len(items)})
        return key

    def update(self, key: str, data: List[Any]) -> "BackgroundProcess":
        if data:
            self.store.set(key, list(data))
        return self

    def delete(self, key: str) -> "BackgroundProcess":
        self.store.delete(key)
        return self

    def get_batches(self, limit: int = 0) -> List[Batch]:
        """Return persisted batches, oldest first.

        A record that is not a list is reported and read as an empty batch.
        """
        batches = []
        for key, value in self.store.list(self.batch_prefix, limit=limit):
            if not isinstance(value, list):
                self.log.error("Corrupt batch record", context={"batch": key, "type": type(value).__name__})
                value = []
            batches.append(Batch(key=key, data=value))
        return batches

    def get_batch(self) -> Batch:
        batches = self.get_batches(1)
        return batches[0] if batches else Batch()

    # ------------------------------------------------------------------
    # Status and control
    # ------------------------------------------------------------------

    def status(self) -> ProcessStatus:
        raw = self.store.get(self.status_key, ProcessStatus.idle.value)
        try:
            return ProcessStatus(int(raw))
        except (TypeError, ValueError):
            self.log.warning("Unknown status flag; treating as idle", context={"status": raw})
            return ProcessStatus.idle

    def is_cancelled(self) -> bool:
        return self.status() is ProcessStatus.cancelled

    def is_paused(self) -> bool:
        return self.status() is ProcessStatus.paused

    def is_processing(self) -> bool:
        return self.store.get(self.lock_key) is not None

    def is_queue_empty(self) -> bool:
        try:
            # A corrupt record reads as empty but must not hide later batches.
            return all(batch.is_empty() for batch in self.get_batches())
        except Exception:
            self.log.exception("Could not read the queue; treating it as empty")
            return True

    def is_queued(self) -> bool:
        return not self.is_queue_empty()

    def is_active(self) -> bool:
        """Is the process queued, working, paused or waiting for a cancel sweep?"""
        return self.is_queued() or self.is_processing() or self.is_paused() or self.is_cancelled()

    def pause(self) -> None:
        """Pause before the next item; the running loop observes the flag."""
        self.store.set(self.status_key, ProcessStatus.paused.value)
        self.log.info("Pause requested")

    def cancel(self) -> DispatchResult:
        """Flag the job cancelled and dispatch so a worker sweeps the queue."""
        self.store.set(self.status_key, ProcessStatus.cancelled.value)
        self.log.info("Cancel requested")
        # The job may have been paused or idle; wake a worker for the sweep.
        return self.dispatch()

    def resume(self) -> DispatchResult:
        self.store.delete(self.status_key)
        self.schedule_event()
        result = self.dispatch()
        if result.ok:
            self.resumed()
        else:
            self.log.warning("Resume dispatch failed", context={"error": result.code})
        return result

    def delete_all(self) -> None:
        """Delete every batch and the status flag, then fire ``cancelled``."""
        for batch in self.get_batches():
            self.delete(batch.key)
        self.store.delete(self.status_key)
        self.cancelled()

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def on_cancelled(self, callback: Callback) -> Callback:
        return self.hooks.add_action(ACTION_CANCELLED, callback)

    def on_paused(self, callback: Callback) -> Callback:
        return self.hooks.add_action(ACTION_PAUSED, callback)

    def on_resumed(self, callback: Callback) -> Callback:
        return self.hooks.add_action(ACTION_RESUMED, callback)

    def on_completed(self, callback: Callback) -> Callback:
        return self.hooks.add_action(ACTION_COMPLETED, callback)

    def cancelled(self) -> None:
        self.log.info("Process cancelled")
        self.hooks.do_action(ACTION_CANCELLED, self)

    def paused(self) -> None:
        self.log.info("Process paused")
        self.hooks.do_action(ACTION_PAUSED, self)

    def resumed(self) -> None:
        self.log.info("Process resumed")
        self.hooks.do_action(ACTION_RESUMED, self)

    def completed(self) -> None:
        self.log.info("Process completed")
        self.hooks.do_action(ACTION_COMPLETED, self)

    # ------------------------------------------------------------------
    # Dispatch and lock
    # ------------------------------------------------------------------

    def dispatch(self) -> DispatchResult:
        """Arm the health check and trigger a worker, unless one is running."""
        if self.is_processing():
            return DispatchResult(ok=False, error=AlreadyProcessingError("Already processing."))
        self.schedule_event()
        return super().dispatch()

    def lock_process(self) -> bool:
        """Take the process lock and start the budget window.

        The lock TTL should stay above the time limit so a live worker never
        loses it mid-window. The owner token and window start are kept per
        execution context, so invocations sharing this instance stay apart.

        Returns:
            bool: False when another invocation holds the lock.
        """
        start_time = self.now()
        lock_duration = self.hooks.apply_filters(FILTER_QUEUE_LOCK_TIME, self.config.queue_lock_time, self)
        token = f"{start_time:.6f}:{current_request_id()}:{secrets.token_hex(4)}"
        if not self.store.add(self.lock_key, token, ttl=lock_duration):
            return False
        self._invocation.set(Invocation(start_time=start_time, lock_token=token))
        return True

    def unlock_process(self) -> "BackgroundProcess":
        invocation = self._invocation.get()
        if invocation is None or invocation.lock_token is None:
            return self
        # Leave a lock alone if it expired and another invocation took it.
        if self.store.get(self.lock_key) == invocation.lock_token:
            self.store.delete(self.lock_key)
        self._invocation.set(Invocation(start_time=invocation.start_time))
        return self

    # ------------------------------------------------------------------
    # Worker invocation
    # ------------------------------------------------------------------

    def maybe_handle(self, nonce: Optional[str]) -> HandleOutcome:
        """Run the guard checks, verify the nonce and drain the queue.

        Raises:
            TokenError: If the queue has work but the nonce does not verify.
        """
        new_request_id()
        if self.is_processing():
            self.log.trace("Already processing; skipping.")
            return HandleOutcome.locked

        if self.is_cancelled():
            self.clear_scheduled_event()
            self.delete_all()
            return HandleOutcome.cancelled

        if self.is_paused():
            self.clear_scheduled_event()
            self.paused()
            return HandleOutcome.paused

        if self.is_queue_empty():
            self.log.trace("Nothing queued.")
            return HandleOutcome.empty

        self.tokens.verify(self.identifier, nonce)

        try:
            return self.handle()
        except Exception:
            self.log.exception("Batch processing failed")
            return HandleOutcome.failed

    def handle(self) -> HandleOutcome:
        """Drain the oldest batch within the budget window.

        Raises:
            Exception: Whatever :meth:`task` raised, after the item was
                put back and the lock released.
        """
        if not self.lock_process():
            return HandleOutcome.locked

        try:
            self._drain(self.get_batch())
        finally:
            self.unlock_process()

        if self.is_queue_empty():
            self.complete()
        else:
            self.dispatch()
        return HandleOutcome.handled

    def _drain(self, batch: Batch) -> None:
        while True:
            if not batch.data:
                self.delete(batch.key)
                break

            item = batch.data.pop(0)
            try:
                value = self.task(item)
            except Exception:
                batch.data.insert(0, item)
                self.update(batch.key, batch.data)
                self.log.error("Task failed; item kept at the front of its batch", context={"batch": batch.key})
                raise

            if not is_drop(value):
                batch.data.insert(0, value)

            if batch.data:
                # Keep the batch up to date while processing it.
                self.update(batch.key, batch.data)
            else:
                self.delete(batch.key)
                break

            if self.config.seconds_between_batches:
                time.sleep(self.config.seconds_between_batches)

            if self.time_exceeded() or self.memory_exceeded() or self.is_paused() or self.is_cancelled():
                break

    def time_exceeded(self) -> bool:
        time_limit = self.hooks.apply_filters(FILTER_TIME_LIMIT, self.config.time_limit, self)
        exceeded = self.now() >= self.start_time + time_limit
        return bool(self.hooks.apply_filters(FILTER_TIME_EXCEEDED, exceeded, self))

    def get_memory_limit(self) -> int:
        override = self.config.memory_limit if self.config.memory_limit is not None else self.settings.memory_limit
        return memory_limit(override)

    def memory_exceeded(self) -> bool:
        limit = self.get_memory_limit() * self.config.memory_threshold
        exceeded = current_memory_usage() >= limit
        return bool(self.hooks.apply_filters(FILTER_MEMORY_EXCEEDED, exceeded, self))

    def complete(self) -> None:
        self.store.delete(self.status_key)
        self.clear_scheduled_event()
        self.completed()

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------

    def cron_interval_seconds(self) -> int:
        minutes = self.hooks.apply_filters(FILTER_CRON_INTERVAL, self.config.cron_interval, self)
        return max(1, int(minutes)) * 60

    def schedule_event(self) -> None:
        if self.scheduler.next_fire_time(self.cron_hook_identifier) is None:
            self.scheduler.register(
                self.cron_hook_identifier,
                self.cron_interval_seconds(),
                self.handle_cron_healthcheck,
            )

    def clear_scheduled_event(self) -> None:
        if self.scheduler.next_fire_time(self.cron_hook_identifier) is not None:
            self.scheduler.deregister(self.cron_hook_identifier)

    def handle_cron_healthcheck(self) -> None:
        """Restart draining if work is queued and no worker holds the lock."""
        # Reclaim spent trigger tokens and expired locks.
        self.store.purge_expired()

        if self.is_processing():
            return

        if self.is_queue_empty():
            self.clear_scheduled_event()
            return

        result = self.dispatch()
        if not result.ok:
            self.log.warning("Health check dispatch failed", context={"error": result.code})

    @abstractmethod
    def task(self, item: Any) -> Any:
        """Process one queued item.

        Return ``None`` to drop the item, or a value to run again on the
        next loop iteration in its place.
        """
