"""FastAPI application entry point for the Imagine backend.

This module initializes the FastAPI application with all middleware,
routers, and event handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router, set_dispatcher, set_metrics_aggregator
from api.websocket import websocket_router
from billing import BillingLedger
from config import configure_logging, settings
from dispatcher import ActionDispatcher
from events import get_event_bus
from generation import GenerationClient, JobOrchestrator, MockGenerationClient
from messages import MessageRegistry
from metrics import MetricsAggregator
from models.database import Store
from moderation import ModerationService

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Wires the store, metrics aggregator, generation client and dispatcher,
    starts the periodic metrics flush and message cleanup, and on shutdown cancels running
    generations and flushes whatever metrics are still pending.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_generation=settings.use_mock_generation,
        metrics_enabled=settings.metrics_enabled,
    )

    event_bus = get_event_bus()

    store: Store | None = None
    try:
        store = Store(settings.database_path)
        await store.init()
    except Exception as e:
        # Keep the API available even if persistence initialization fails.
        logger.warning("store_init_failed", error=str(e))
        store = None

    client = MockGenerationClient() if settings.use_mock_generation else GenerationClient()
    metrics = MetricsAggregator(store=store)
    messages = MessageRegistry(event_bus)
    dispatcher = ActionDispatcher(
        orchestrator=JobOrchestrator(client),
        messages=messages,
        metrics=metrics,
        billing=BillingLedger(store),
        store=store,
        event_bus=event_bus,
        moderation=ModerationService(client),
    )

    set_dispatcher(dispatcher)
    set_metrics_aggregator(metrics)

    app.state.dispatcher = dispatcher
    app.state.metrics = metrics
    app.state.store = store

    flush_task = metrics.start_flush_loop(settings.metrics_flush_interval_seconds)
    app.state.flush_task = flush_task
    app.state.cleanup_task = messages.start_cleanup_loop(
        settings.message_cleanup_interval_minutes * 60,
        settings.message_ttl_minutes * 60,
    )

    logger.info("resources_initialized")
    logger.info("application_started")

    yield

    logger.info("application_shutting_down")

    for task in (app.state.flush_task, app.state.cleanup_task):
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(Exception):
                await task

    await app.state.dispatcher.cancel_all()

    # Persist counters collected since the last periodic flush
    await app.state.metrics.flush()

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Imagine",
    description="Backend API for prompt-to-image generation with upscale, "
    "variation and rating follow-ups.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["imagine"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points to the API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Imagine API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
