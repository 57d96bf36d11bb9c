"""Helpers turning process state into API response models."""

from typing import Optional

from ..async_request import DispatchResult
from ..process import BackgroundProcess
from ..models import DispatchResponse, ProcessStatus, ProcessStatusResponse


def process_to_status(process: BackgroundProcess) -> ProcessStatusResponse:
    """Snapshot the queue and control flags of ``process``.

    Args:
        process: Registered background process.

    Returns:
        ProcessStatusResponse: Flags and queue sizes.
    """
    batches = process.get_batches()
    is_queued = any(batch.data for batch in batches)
    is_processing = process.is_processing()
    status = process.status()
    is_paused = status is ProcessStatus.paused
    is_cancelled = status is ProcessStatus.cancelled
    return ProcessStatusResponse(
        identifier=process.identifier,
        status=status.name,
        is_queued=is_queued,
        is_processing=is_processing,
        is_paused=is_paused,
        is_cancelled=is_cancelled,
        is_active=is_queued or is_processing or is_paused or is_cancelled,
        batches=len(batches),
        queued_items=sum(len(batch.data) for batch in batches),
        next_healthcheck_at=process.scheduler.next_fire_time(process.cron_hook_identifier),
    )


def dispatch_to_response(identifier: str, result: Optional[DispatchResult]) -> Optional[DispatchResponse]:
    if result is None:
        return None
    return DispatchResponse(
        identifier=identifier,
        ok=result.ok,
        error=result.code,
        message=str(result.error) if result.error else None,
    )
