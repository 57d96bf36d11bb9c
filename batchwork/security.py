"""
Anti-forgery tokens and caller identity for triggered worker invocations.

A token is bound to one process identifier, expires after ``max_age``
seconds and is accepted once. The caller's cookies travel with the trigger
so the worker runs with the same identity as the request that queued it.
"""

import contextvars
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Mapping, Optional
from uuid import uuid4

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .constants import NONCE_KEY_INFIX
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

_TOKEN_SALT = "batchwork.async-request"


class TokenError(RuntimeError):
    """Raised when a trigger token is invalid, expired, replayed or foreign."""


@dataclass(frozen=True)
class IdentityContext:
    """Identity of the caller that issued a dispatch."""

    cookies: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_cookies(cls, cookies: Optional[Mapping[str, str]]) -> "IdentityContext":
        return cls(cookies=dict(cookies or {}))


_IDENTITY: contextvars.ContextVar[IdentityContext] = contextvars.ContextVar(
    "batchwork_identity", default=IdentityContext()
)


def bind_identity(identity: IdentityContext) -> contextvars.Token:
    """Make ``identity`` current; pass the returned token to ``reset_identity``."""
    return _IDENTITY.set(identity)


def reset_identity(token: contextvars.Token) -> None:
    _IDENTITY.reset(token)


def current_identity() -> IdentityContext:
    return _IDENTITY.get()


class TokenProvider:
    """Issue and verify single-use tokens scoped to a process identifier.

    Args:
        secret_key: Signing key shared by the dispatching and handling hosts.
        store: Store used to remember consumed tokens until they expire.
        max_age: Token lifetime in seconds.
    """

    def __init__(self, secret_key: str, store: KeyValueStore, max_age: int = 86400) -> None:
        self.serializer = URLSafeTimedSerializer(secret_key, salt=_TOKEN_SALT)
        self.store = store
        self.max_age = max_age

    def create(self, identifier: str) -> str:
        """Create a signed token for ``identifier``."""
        return self.serializer.dumps({"action": identifier, "jti": uuid4().hex})

    def verify(self, identifier: str, token: Optional[str]) -> None:
        """Verify and consume a token.

        Args:
            identifier: Process identifier the token must be bound to.
            token: Token received with the trigger.

        Raises:
            TokenError: If the token is missing, tampered, expired, bound to
                another identifier, or was already used.
        """
        if not token:
            raise TokenError("Missing token.")
        try:
            data = self.serializer.loads(token, max_age=self.max_age)
        except SignatureExpired as exc:
            raise TokenError("Token expired.") from exc
        except BadSignature as exc:
            raise TokenError("Invalid token.") from exc

        if not isinstance(data, dict) or data.get("action") != identifier:
            raise TokenError(f"Token is not valid for '{identifier}'.")

        consumed_key = f"{identifier}{NONCE_KEY_INFIX}{data.get('jti')}"
        if not self.store.add(consumed_key, 1, ttl=self.max_age):
            logger.warning("Rejected replayed token for %s", identifier)
            raise TokenError("Token already used.")


@contextmanager
def identity_scope(cookies: Optional[Mapping[str, str]]) -> Iterator[IdentityContext]:
    """Bind the caller identity carried by ``cookies`` for the enclosed block."""
    identity = IdentityContext.from_cookies(cookies)
    token = bind_identity(identity)
    try:
        yield identity
    finally:
        reset_identity(token)
