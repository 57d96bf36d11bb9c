"""Environment-driven settings for the batchwork service."""

import logging
import os
import secrets
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8000"
DEFAULT_TOKEN_MAX_AGE = 86400


def _env_int(name: str, default: int) -> int:
    raw = str(os.getenv(name, "")).strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using %d", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "off", "no"}


@dataclass(frozen=True)
class Settings:
    """Process-wide settings shared by every registered background process."""

    base_url: str = DEFAULT_BASE_URL
    secret_key: str = ""
    token_max_age: int = DEFAULT_TOKEN_MAX_AGE
    store_backend: str = "local"
    debug: bool = False
    memory_limit: Optional[str] = None
    verify_ssl: bool = False


def load_settings() -> Settings:
    """Build settings from ``BATCHWORK_*`` environment variables.

    Returns:
        Settings: Frozen settings snapshot.
    """
    secret_key = os.getenv("BATCHWORK_SECRET_KEY", "").strip()
    if not secret_key:
        # Tokens signed with an ephemeral key do not survive a restart.
        logger.warning("BATCHWORK_SECRET_KEY is not set; using a random per-process key")
        secret_key = secrets.token_urlsafe(32)
    return Settings(
        base_url=os.getenv("BATCHWORK_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
        secret_key=secret_key,
        token_max_age=max(1, _env_int("BATCHWORK_TOKEN_MAX_AGE", DEFAULT_TOKEN_MAX_AGE)),
        store_backend=os.getenv("BATCHWORK_STORE_BACKEND", "local").strip().lower(),
        debug=_env_bool("BATCHWORK_DEBUG", False),
        memory_limit=os.getenv("BATCHWORK_MEMORY_LIMIT") or None,
        verify_ssl=_env_bool("BATCHWORK_VERIFY_SSL", False),
    )
