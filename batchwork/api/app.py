from contextlib import asynccontextmanager
from typing import Any, Iterable, List, Optional
import logging

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..async_request import AlreadyProcessingError, DispatchResult
from ..constants import DEFAULT_TRIGGER_PATH
from ..models import (
    HEALTH_STATUS_OK,
    DispatchResponse,
    EnqueueRequest,
    EnqueueResponse,
    HealthResponse,
    ProcessStatusResponse,
)
from ..process import BackgroundProcess
from ..registry import ProcessRegistry, UnknownRegistrationError
from ..security import TokenError, identity_scope
from .converters import dispatch_to_response, process_to_status

logger = logging.getLogger(__name__)


def _raise_for_dispatch(identifier: str, result: DispatchResult) -> None:
    """Map a failed dispatch to 409 (already processing) or 502 (transport)."""
    if result.ok:
        return
    if isinstance(result.error, AlreadyProcessingError):
        raise HTTPException(status_code=409, detail={"error": result.code, "message": str(result.error)})
    logger.warning("Dispatch for %s failed: %s", identifier, result.error)
    raise HTTPException(status_code=502, detail={"error": result.code, "message": str(result.error)})


def create_app(registry: Optional[ProcessRegistry] = None) -> FastAPI:
    """Create a FastAPI app serving worker triggers and process controls.

    Args:
        registry: Registry holding the background processes to serve.

    Returns:
        FastAPI: Configured application instance.
    """

    registry = registry or ProcessRegistry.from_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Re-arm health checks on startup, stop the scheduler on shutdown."""
        rearmed = registry.rearm()
        if rearmed:
            logger.info("Re-armed health checks for %d processes with queued work", rearmed)
        try:
            yield
        finally:
            registry.shutdown()
            logger.info("Scheduler stopped")

    app = FastAPI(title="batchwork", lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Transform Pydantic validation errors into a consistent response payload.

        Args:
            request: Incoming HTTP request that triggered the validation error.
            exc: Pydantic ``RequestValidationError`` raised by FastAPI.

        Returns:
            JSONResponse: Structured error response consumed by API clients.
        """

        def _format_field(loc: Iterable[Any]) -> str:
            parts: list[str] = []
            for entry in loc:
                if entry in {"body", "query", "__root__"}:
                    continue
                if isinstance(entry, int):
                    if parts:
                        parts[-1] = f"{parts[-1]}[{entry}]"
                    else:
                        parts.append(f"[{entry}]")
                else:
                    parts.append(str(entry))
            return ".".join(parts) if parts else "body"

        issues = [
            {
                "field": _format_field(error.get("loc", [])),
                "message": error.get("msg", "Invalid value"),
                "type": error.get("type", "validation_error"),
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content={
                "error": "invalid_request",
                "detail": issues,
            },
        )

    def _get_process(identifier: str) -> BackgroundProcess:
        try:
            return registry.get(identifier)
        except UnknownRegistrationError:
            logger.warning("Request for unknown process %s", identifier)
            raise HTTPException(status_code=404, detail=f"Unknown process '{identifier}'.")

    @app.post(DEFAULT_TRIGGER_PATH)
    def handle_async_request(
        request: Request,
        action: str = Query(..., description="Process identifier"),
        nonce: Optional[str] = Query(default=None, description="One-time trigger token"),
    ) -> dict:
        """Worker entry point hit by a dispatched trigger.

        Runs the guard checks and drains the queue within the budget window
        before answering; the dispatching side does not wait for the reply.

        Raises:
            HTTPException: 404 for an unknown action, 403 when the nonce fails.
        """
        process = _get_process(action)
        with identity_scope(request.cookies):
            try:
                outcome = process.maybe_handle(nonce)
            except TokenError as exc:
                logger.warning("Rejected trigger for %s: %s", action, exc)
                raise HTTPException(status_code=403, detail=str(exc)) from exc
        return {"action": action, "outcome": outcome.value}

    @app.get("/health", response_model=HealthResponse)
    def healthcheck() -> HealthResponse:
        return HealthResponse(status=HEALTH_STATUS_OK, processes=registry.snapshot())

    @app.get("/processes", response_model=List[ProcessStatusResponse])
    def list_processes() -> List[ProcessStatusResponse]:
        return [process_to_status(registry.get(identifier)) for identifier in registry.snapshot()]

    @app.get("/processes/{identifier}", response_model=ProcessStatusResponse)
    def get_process(identifier: str) -> ProcessStatusResponse:
        return process_to_status(_get_process(identifier))

    @app.post("/processes/{identifier}/items", response_model=EnqueueResponse, status_code=201)
    def enqueue_items(identifier: str, payload: EnqueueRequest, request: Request) -> EnqueueResponse:
        """Persist ``items`` as one new batch and optionally start draining.

        A dispatch that finds a worker already running is reported in the
        response, not raised: that worker picks the batch up.
        """
        process = _get_process(identifier)
        batch_key = process.save_items(payload.items) or ""

        result = None
        if payload.dispatch:
            with identity_scope(request.cookies):
                result = process.dispatch()

        logger.info("Enqueued %d items for %s in %s", len(payload.items), identifier, batch_key)
        return EnqueueResponse(
            identifier=identifier,
            batch_key=batch_key,
            items=len(payload.items),
            dispatch=dispatch_to_response(identifier, result),
        )

    @app.post("/processes/{identifier}/dispatch", response_model=DispatchResponse)
    def dispatch_process(identifier: str, request: Request) -> DispatchResponse:
        process = _get_process(identifier)
        with identity_scope(request.cookies):
            result = process.dispatch()
        _raise_for_dispatch(identifier, result)
        return dispatch_to_response(identifier, result)

    @app.post("/processes/{identifier}/pause", response_model=ProcessStatusResponse)
    def pause_process(identifier: str) -> ProcessStatusResponse:
        process = _get_process(identifier)
        process.pause()
        return process_to_status(process)

    @app.post("/processes/{identifier}/resume", response_model=DispatchResponse)
    def resume_process(identifier: str, request: Request) -> DispatchResponse:
        process = _get_process(identifier)
        with identity_scope(request.cookies):
            result = process.resume()
        _raise_for_dispatch(identifier, result)
        return dispatch_to_response(identifier, result)

    @app.post("/processes/{identifier}/cancel", response_model=DispatchResponse, status_code=202)
    def cancel_process(identifier: str, request: Request) -> DispatchResponse:
        """Flag the process cancelled; the sweep happens in a worker.

        When a worker is already running it observes the flag between items,
        so an ``already_processing`` dispatch result is not an error here.
        """
        process = _get_process(identifier)
        with identity_scope(request.cookies):
            result = process.cancel()
        if not result.ok and not isinstance(result.error, AlreadyProcessingError):
            _raise_for_dispatch(identifier, result)
        return dispatch_to_response(identifier, result)

    @app.delete("/processes/{identifier}/queue", response_model=ProcessStatusResponse)
    def delete_queue(identifier: str) -> ProcessStatusResponse:
        process = _get_process(identifier)
        process.delete_all()
        return process_to_status(process)

    return app
