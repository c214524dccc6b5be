"""HTTP API routes for the Imagine backend.

This module defines the HTTP endpoints for starting generations, pressing
controls, reading messages and metrics, and health checks. Job progress is
streamed over WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Path, status

from config import settings
from controls import layout_to_schema
from dispatcher import InteractionEvent
from events import get_event_bus
from models.schemas import (
    FlushResponse,
    HealthResponse,
    ImagineRequest,
    ImagineResponse,
    InteractionRequest,
    InteractionResponse,
    MessageResponse,
    MetricsCategory,
    MetricsSnapshotResponse,
)

if TYPE_CHECKING:
    from dispatcher import ActionDispatcher
    from messages import Message
    from metrics import MetricsAggregator

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Dependencies (set during application startup)
# -----------------------------------------------------------------------------

_dispatcher: ActionDispatcher | None = None
_metrics: MetricsAggregator | None = None


def set_dispatcher(dispatcher: ActionDispatcher) -> None:
    """Set the dispatcher instance for the routes.

    This should be called during application startup to inject the
    dispatcher dependency.

    Args:
        dispatcher: The ActionDispatcher instance to use for all routes.
    """
    global _dispatcher
    _dispatcher = dispatcher
    logger.info("dispatcher_configured")


def get_dispatcher() -> ActionDispatcher:
    """Get the dispatcher instance.

    Raises:
        RuntimeError: If the dispatcher has not been configured.
    """
    if _dispatcher is None:
        logger.error("dispatcher_not_configured")
        raise RuntimeError("ActionDispatcher not configured. Call set_dispatcher() during startup.")
    return _dispatcher


def set_metrics_aggregator(aggregator: MetricsAggregator) -> None:
    """Set the metrics aggregator used by the metrics routes."""
    global _metrics
    _metrics = aggregator
    logger.info("metrics_aggregator_configured")


def get_metrics_aggregator() -> MetricsAggregator:
    """Get the metrics aggregator instance.

    Raises:
        RuntimeError: If the aggregator has not been configured.
    """
    if _metrics is None:
        logger.error("metrics_aggregator_not_configured")
        raise RuntimeError(
            "MetricsAggregator not configured. Call set_metrics_aggregator() during startup."
        )
    return _metrics


def _to_message_response(message: Message) -> MessageResponse:
    return MessageResponse(
        message_id=message.message_id,
        owner_id=message.owner_id,
        content=message.content,
        image=message.image,
        error=message.error,
        layout=layout_to_schema(message.layout),
    )


# -----------------------------------------------------------------------------
# Generation and interactions
# -----------------------------------------------------------------------------


@router.post(
    "/api/imagine",
    response_model=ImagineResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a new generation",
    description="Create a message for the prompt and generate its image in the background.",
)
async def imagine(request: ImagineRequest) -> ImagineResponse:
    """Start a generation and return where to follow its progress.

    Args:
        request: The acting user, the prompt and an optional model.

    Returns:
        ImagineResponse with the message id and its WebSocket URL.

    Raises:
        HTTPException: If the model is not allowed or scheduling fails.
    """
    dispatcher = get_dispatcher()
    model = request.model or settings.default_model

    if model not in settings.allowed_models:
        logger.warning("imagine_model_rejected", user_id=request.user_id, model=model)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown model {model!r}; choose one of {settings.allowed_models}",
        )

    try:
        message = dispatcher.start_imagine(request.user_id, request.prompt, model)
    except Exception as e:
        logger.error("imagine_start_failed", user_id=request.user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start generation",
        ) from e

    logger.info(
        "imagine_accepted",
        user_id=request.user_id,
        message_id=message.message_id,
        model=model,
        prompt_length=len(request.prompt),
    )
    return ImagineResponse(
        message_id=message.message_id,
        websocket_url=f"/ws/{message.message_id}",
    )


@router.post(
    "/api/interactions",
    response_model=InteractionResponse,
    summary="Press a control",
    description=(
        "Run the follow-up a control encodes (upscale, variation or rating). "
        "Every press is acknowledged; failures are reported in the body."
    ),
)
async def interact(request: InteractionRequest) -> InteractionResponse:
    """Dispatch a control press and return its outcome."""
    dispatcher = get_dispatcher()
    result = await dispatcher.dispatch(
        InteractionEvent(
            message_id=request.message_id,
            control_id=request.control_id,
            user_id=request.user_id,
            glyph=request.glyph,
        )
    )

    reply = result.message
    return InteractionResponse(
        acknowledged=result.acknowledged,
        error=result.error,
        error_kind=result.error_kind,
        message_id=reply.message_id if reply else None,
        image=reply.image if reply else None,
        layout=layout_to_schema(reply.layout) if reply else [],
    )


@router.get(
    "/api/messages/{message_id}",
    response_model=MessageResponse,
    summary="Get a message",
    description="Get a message with its image, error and current controls.",
)
async def get_message(
    message_id: Annotated[str, Path(description="The message ID")],
) -> MessageResponse:
    """Return a message and its current layout.

    Raises:
        HTTPException: If the message does not exist.
    """
    message = get_dispatcher().messages.get(message_id)
    if message is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Message {message_id} not found",
        )
    return _to_message_response(message)


# -----------------------------------------------------------------------------
# Metrics
# -----------------------------------------------------------------------------


@router.get(
    "/api/metrics/{category}",
    summary="Pending metrics",
    description="Get the not yet flushed counters of a metrics category.",
)
async def get_pending_metrics(category: MetricsCategory) -> dict[str, Any]:
    """Return a copy of a category's pending data (empty if none)."""
    return get_metrics_aggregator().pending(category)


@router.post(
    "/api/metrics/flush",
    response_model=FlushResponse,
    summary="Flush metrics",
    description="Persist every pending metrics bucket now and clear the buffer.",
)
async def flush_metrics() -> FlushResponse:
    """Flush pending metrics and return the snapshots produced."""
    try:
        snapshots = await get_metrics_aggregator().flush()
    except Exception as e:
        logger.error("metrics_flush_route_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to flush metrics",
        ) from e

    return FlushResponse(
        snapshots=[MetricsSnapshotResponse(**snapshot.to_dict()) for snapshot in snapshots]
    )


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with metrics buffer status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Returns:
        HealthResponse with status, metrics switch, pending bucket count and
        the number of followed message channels.
    """
    pending_buckets = 0
    overall_status = "healthy"

    try:
        pending_buckets = len(get_metrics_aggregator().pending_categories())
    except RuntimeError:
        # Not configured yet (e.g., during startup)
        overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        timestamp=time.time(),
        metrics_enabled=settings.metrics_enabled,
        pending_metric_buckets=pending_buckets,
        active_channels=len(get_event_bus().get_active_channels()),
    )
