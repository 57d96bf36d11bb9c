"""Fire-and-forget HTTP trigger for starting worker invocations."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import requests

from .constants import DEFAULT_CONNECT_TIMEOUT, DEFAULT_TRIGGER_TIMEOUT

logger = logging.getLogger(__name__)


@dataclass
class TriggerRequest:
    """Everything needed to start one worker invocation."""

    url: str
    params: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    cookies: Dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_TRIGGER_TIMEOUT
    blocking: bool = False
    verify: bool = False


@dataclass
class TriggerResult:
    """Outcome of issuing a trigger, not of the work it starts."""

    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class TriggerTransport(Protocol):
    """Protocol for anything able to deliver a trigger."""

    def trigger(self, request: TriggerRequest) -> TriggerResult: ...


class HttpTriggerTransport:
    """POST the trigger with requests and, unless blocking, do not wait for a reply.

    A non-blocking trigger uses a tiny read timeout: once the request has been
    written, a read timeout means the worker received it and is running.
    Connection failures are reported as errors.

    Args:
        session: Optional preconfigured ``requests.Session``.
        connect_timeout: Seconds allowed to connect to the worker host.
    """

    def __init__(self, session: Optional[requests.Session] = None, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> None:
        self._session = session
        self._connect_timeout = connect_timeout

    def _timeout(self, request: TriggerRequest) -> tuple:
        read = request.timeout if not request.blocking else max(request.timeout, self._connect_timeout)
        return (self._connect_timeout, read)

    def trigger(self, request: TriggerRequest) -> TriggerResult:
        sender = self._session or requests
        try:
            response = sender.post(
                request.url,
                params=request.params,
                json=request.body,
                cookies=request.cookies or None,
                timeout=self._timeout(request),
                verify=request.verify,
            )
        except requests.exceptions.ReadTimeout:
            if request.blocking:
                logger.warning("Trigger to %s timed out waiting for a response", request.url)
                return TriggerResult(ok=False, error="Timed out waiting for the worker response.")
            return TriggerResult(ok=True)
        except requests.RequestException as e:
            logger.warning("Trigger to %s failed: %s", request.url, e)
            return TriggerResult(ok=False, error=str(e) or e.__class__.__name__)
        return TriggerResult(ok=True, status_code=response.status_code)
