from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import (
    BATCH_KEY_INFIX,
    DEFAULT_ACTION,
    DEFAULT_CRON_INTERVAL_MINUTES,
    DEFAULT_KEY_LENGTH,
    DEFAULT_MEMORY_THRESHOLD,
    DEFAULT_PREFIX,
    DEFAULT_QUEUE_LOCK_TIME,
    DEFAULT_TIME_LIMIT,
)

HEALTH_STATUS_OK = "ok"
MIN_BATCH_KEY_ENTROPY = 8


class ProcessStatus(IntEnum):
    """Persisted control flag of a background process.

    ``idle`` is never stored; it is the absence of a status record.
    """

    idle = 0
    cancelled = 1
    paused = 2


class Batch(BaseModel):
    """One persisted, ordered chunk of queued items."""

    key: str = ""
    data: List[Any] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.data


class ProcessConfig(BaseModel):
    """Per-process tuning knobs, all optional with documented defaults.

    Attributes:
        prefix: Identifier prefix.
        action: Identifier suffix; the identifier is ``f"{prefix}_{action}"``.
        queue_lock_time: Lock TTL in seconds; keep it above ``time_limit``.
        time_limit: Budget window in seconds for one worker invocation.
        memory_threshold: Fraction of the memory ceiling that stops the drain loop.
        memory_limit: Memory ceiling in bytes; ``None`` defers to settings/platform.
        seconds_between_batches: Cooperative sleep between two items.
        cron_interval: Health-check interval in minutes (minimum 1).
        key_length: Maximum batch key length.
        query_url: Fixed trigger URL, bypassing the ``query_url`` filter.
        query_args: Fixed trigger query arguments, bypassing the ``query_args`` filter.
        post_args: Fixed transport options, bypassing the ``post_args`` filter.
    """

    model_config = ConfigDict(frozen=True)

    prefix: str = DEFAULT_PREFIX
    action: str = DEFAULT_ACTION
    queue_lock_time: int = Field(default=DEFAULT_QUEUE_LOCK_TIME, ge=1)
    time_limit: int = Field(default=DEFAULT_TIME_LIMIT, ge=0)
    memory_threshold: float = Field(default=DEFAULT_MEMORY_THRESHOLD, gt=0.0, le=1.0)
    memory_limit: Optional[int] = Field(default=None, ge=1)
    seconds_between_batches: float = Field(default=0, ge=0)
    cron_interval: int = Field(default=DEFAULT_CRON_INTERVAL_MINUTES, ge=1)
    key_length: int = Field(default=DEFAULT_KEY_LENGTH, ge=16, le=191)
    query_url: Optional[str] = None
    query_args: Optional[Dict[str, Any]] = None
    post_args: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _validate_identifier(self) -> "ProcessConfig":
        """Reject identifiers that cannot form store keys.

        Raises:
            ValueError: If prefix or action is blank, or if batch keys
                truncated to ``key_length`` would keep fewer than
                ``MIN_BATCH_KEY_ENTROPY`` unique characters.
        """
        if not self.prefix.strip() or not self.action.strip():
            raise ValueError("Process prefix and action must be non-empty.")
        batch_prefix = len(self.identifier) + len(BATCH_KEY_INFIX)
        if self.key_length - batch_prefix < MIN_BATCH_KEY_ENTROPY:
            raise ValueError(
                f"key_length={self.key_length} is too short for identifier '{self.identifier}';"
                f" need at least {batch_prefix + MIN_BATCH_KEY_ENTROPY}."
            )
        return self

    @property
    def identifier(self) -> str:
        return f"{self.prefix}_{self.action}"


class HealthResponse(BaseModel):
    """Liveness payload with the registered process identifiers."""

    status: str
    processes: List[str] = Field(default_factory=list)


class ProcessStatusResponse(BaseModel):
    """Snapshot of a process's queue and control state."""

    identifier: str
    status: str
    is_queued: bool
    is_processing: bool
    is_paused: bool
    is_cancelled: bool
    is_active: bool
    batches: int
    queued_items: int
    next_healthcheck_at: Optional[float] = None


class EnqueueRequest(BaseModel):
    """Items to persist as one new batch."""

    items: List[Any]
    dispatch: bool = True

    @model_validator(mode="after")
    def _ensure_items(self) -> "EnqueueRequest":
        if not self.items:
            raise ValueError("At least one item must be provided.")
        return self


class DispatchResponse(BaseModel):
    """Outcome of issuing a trigger (not of the work it starts)."""

    identifier: str
    ok: bool
    error: Optional[str] = None
    message: Optional[str] = None


class EnqueueResponse(BaseModel):
    identifier: str
    batch_key: str
    items: int
    dispatch: Optional[DispatchResponse] = None


class HandleOutcome(str, Enum):
    """What a worker invocation did with its trigger."""

    locked = "locked"
    cancelled = "cancelled"
    paused = "paused"
    empty = "empty"
    handled = "handled"
    failed = "failed"
