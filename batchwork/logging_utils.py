import contextvars
import json
import logging
import os
import secrets
from typing import Any, Dict, MutableMapping, Optional, Tuple

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"

_REQUEST_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("batchwork_request_id", default=None)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging from ``LOG_LEVEL`` so worker-thread logs appear.

    Args:
        level: Explicit level name; defaults to the ``LOG_LEVEL`` env var.

    Returns:
        None
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


def new_request_id() -> str:
    """Start a new invocation and return its short request id."""
    request_id = secrets.token_hex(4)
    _REQUEST_ID.set(request_id)
    return request_id


def current_request_id() -> str:
    """Return the request id of the current invocation, creating one if needed."""
    request_id = _REQUEST_ID.get()
    if request_id is None:
        request_id = new_request_id()
    return request_id


class ProcessLogAdapter(logging.LoggerAdapter):
    """Tag records with the process identifier, request id and a JSON context.

    Trace messages go through :meth:`trace` and are only emitted when the
    adapter was built with ``debug=True`` (``BATCHWORK_DEBUG``).
    """

    def __init__(self, logger: logging.Logger, identifier: str, *, debug: bool = False) -> None:
        super().__init__(logger, {"identifier": identifier})
        self.debug_enabled = debug

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        context: Dict[str, Any] = kwargs.pop("context", None) or {}
        message = f"[{self.extra['identifier']}] {msg} {current_request_id()}"
        if context:
            message += "\t " + json.dumps(context, default=str, sort_keys=True)
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("identifier", self.extra["identifier"])
        kwargs["extra"] = extra
        return message, kwargs

    def trace(self, msg: str, **kwargs: Any) -> None:
        if self.debug_enabled:
            self.debug(msg, **kwargs)


def get_process_logger(name: str, identifier: str, *, debug: bool = False) -> ProcessLogAdapter:
    return ProcessLogAdapter(logging.getLogger(name), identifier, debug=debug)
