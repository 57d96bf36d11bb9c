"""Fire-and-forget dispatch of a worker invocation over HTTP."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .config import Settings
from .constants import (
    DEFAULT_TRIGGER_PATH,
    DEFAULT_TRIGGER_TIMEOUT,
    ERROR_ALREADY_PROCESSING,
    ERROR_TRANSPORT,
    FILTER_POST_ARGS,
    FILTER_QUERY_ARGS,
    FILTER_QUERY_URL,
)
from .hooks import HookRegistry
from .logging_utils import get_process_logger, new_request_id
from .models import HandleOutcome, ProcessConfig
from .security import TokenProvider, current_identity
from .storage import KeyValueStore
from .transport import HttpTriggerTransport, TriggerRequest, TriggerTransport

logger = logging.getLogger(__name__)


class DispatchError(RuntimeError):
    """Base exception describing why a dispatch was not issued."""

    code = "dispatch_error"


class AlreadyProcessingError(DispatchError):
    """Raised (or reported) when a worker already holds the process lock."""

    code = ERROR_ALREADY_PROCESSING


class TransportError(DispatchError):
    """Raised (or reported) when the trigger could not be delivered."""

    code = ERROR_TRANSPORT


@dataclass
class DispatchResult:
    """Outcome of issuing a trigger.

    Attributes:
        ok: True when the trigger was issued.
        error: Structured error when it was not.
        status_code: HTTP status of the worker response, when one was awaited.
    """

    ok: bool
    error: Optional[DispatchError] = None
    status_code: Optional[int] = None

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def raise_for_error(self) -> "DispatchResult":
        if self.error is not None:
            raise self.error
        return self


class AsyncRequest(ABC):
    """Start :meth:`handle` in a separate worker invocation.

    ``dispatch`` posts ``action`` and a one-time ``nonce`` to the trigger URL;
    the receiving host calls :meth:`maybe_handle` with that nonce.

    Args:
        config: Identifier and trigger overrides.
        store: Key-value store shared with the worker host.
        tokens: Provider issuing and verifying trigger nonces.
        transport: Trigger transport; defaults to a requests transport.
        settings: Service-wide settings (base URL, debug, TLS verification).
        hooks: Hook registry for filters and lifecycle actions.
    """

    def __init__(
        self,
        config: Optional[ProcessConfig] = None,
        *,
        store: KeyValueStore,
        tokens: TokenProvider,
        transport: Optional[TriggerTransport] = None,
        settings: Optional[Settings] = None,
        hooks: Optional[HookRegistry] = None,
    ) -> None:
        self.config = config or ProcessConfig()
        self.identifier = self.config.identifier
        self.store = store
        self.tokens = tokens
        self.transport = transport or HttpTriggerTransport()
        self.settings = settings or Settings()
        self.hooks = hooks or HookRegistry()
        self.log = get_process_logger(type(self).__module__, self.identifier, debug=self.settings.debug)
        self._data: Any = None

    def data(self, data: Any) -> "AsyncRequest":
        """Set the body sent with the next trigger."""
        self._data = data
        return self

    def dispatch(self) -> DispatchResult:
        """Issue the trigger without waiting for the triggered work.

        Returns:
            DispatchResult: Whether the trigger was issued.
        """
        post_args = dict(self.get_post_args())
        request = TriggerRequest(
            url=self.get_query_url(),
            params=self.get_query_args(),
            body=post_args.get("body"),
            cookies=dict(post_args.get("cookies") or {}),
            timeout=float(post_args.get("timeout", DEFAULT_TRIGGER_TIMEOUT)),
            blocking=bool(post_args.get("blocking", False)),
            verify=bool(post_args.get("verify", self.settings.verify_ssl)),
        )
        result = self.transport.trigger(request)
        if not result.ok:
            self.log.warning("dispatch error.", context={"error": result.error})
            return DispatchResult(ok=False, error=TransportError(result.error or "Trigger failed."))
        self.log.trace("dispatch success.")
        return DispatchResult(ok=True, status_code=result.status_code)

    def get_query_args(self) -> Dict[str, Any]:
        if self.config.query_args is not None:
            return dict(self.config.query_args)
        args = {
            "action": self.identifier,
            "nonce": self.tokens.create(self.identifier),
        }
        return self.hooks.apply_filters(FILTER_QUERY_ARGS, args, self)

    def get_query_url(self) -> str:
        if self.config.query_url is not None:
            return self.config.query_url
        url = f"{self.settings.base_url.rstrip('/')}{DEFAULT_TRIGGER_PATH}"
        return self.hooks.apply_filters(FILTER_QUERY_URL, url, self)

    def get_post_args(self) -> Dict[str, Any]:
        if self.config.post_args is not None:
            return dict(self.config.post_args)
        args = {
            "timeout": DEFAULT_TRIGGER_TIMEOUT,
            "blocking": False,
            "body": self._data,
            # Forwarding cookies runs the worker as the initiating caller.
            "cookies": current_identity().cookies,
            "verify": self.settings.verify_ssl,
        }
        return self.hooks.apply_filters(FILTER_POST_ARGS, args, self)

    def maybe_handle(self, nonce: Optional[str]) -> HandleOutcome:
        """Verify the nonce and run :meth:`handle`.

        Raises:
            TokenError: If the nonce does not verify.
        """
        new_request_id()
        self.log.trace("maybe_handle start.")
        self.tokens.verify(self.identifier, nonce)
        try:
            self.log.trace("handle start.")
            self.handle()
            self.log.trace("handle end.")
        except Exception:
            self.log.exception("handle failed.")
            return HandleOutcome.failed
        finally:
            self.log.trace("maybe_handle end.")
        return HandleOutcome.handled

    @abstractmethod
    def handle(self) -> Any:
        """Work performed in the triggered invocation."""
