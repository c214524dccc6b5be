"""Shared test fixtures for backend tests.

Provides an isolated EventBus, scripted generation clients, an in-memory
metrics aggregator and a fully wired dispatcher so tests never touch the
real generation service.
"""

import sys
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from controls import ...`` resolve correctly when running pytest
# from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from billing import BillingLedger  # noqa: E402
from dispatcher import ActionDispatcher  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import JobEvent  # noqa: E402
from generation.client import MockGenerationClient  # noqa: E402
from generation.orchestrator import JobOrchestrator  # noqa: E402
from messages import MessageRegistry  # noqa: E402
from metrics import MetricsAggregator  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


async def collect_events(event_bus: EventBus, channel_id: str) -> list[JobEvent]:
    """Subscribe to a channel and drain all buffered events."""
    queue = event_bus.subscribe(channel_id)
    events: list[JobEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Script Factories
# ---------------------------------------------------------------------------


def make_success_script(
    job_id: str = "job_1",
    image: str = "https://x/1.png",
    **final: Any,
) -> list[dict[str, Any]]:
    """A job that is queued, runs twice and finishes with one image."""
    return [
        {"id": job_id, "queued": 1},
        {"id": job_id, "status": 0.1},
        {"id": job_id, "status": 0.5},
        {"id": job_id, "done": True, "image": image, **final},
    ]


def make_error_script(error: str, job_id: str = "job_1") -> list[dict[str, Any]]:
    """A job that starts and then fails with a service error."""
    return [
        {"id": job_id, "status": 0.1},
        {"id": job_id, "error": error},
    ]


# ---------------------------------------------------------------------------
# Mock Store
# ---------------------------------------------------------------------------


def _make_mock_store() -> AsyncMock:
    """Create a mock Store whose writes succeed and reads find nothing.

    Callers can override return values per-test.
    """
    store = AsyncMock()
    store.insert_metrics = AsyncMock(return_value=True)
    store.save_dataset_entry = AsyncMock(return_value=True)
    store.get_dataset_entry = AsyncMock(return_value=None)
    store.update_dataset_entry = AsyncMock(return_value=True)
    store.record_expense = AsyncMock(return_value=True)
    return store


@pytest.fixture()
def mock_store() -> AsyncMock:
    """Provide a mock Store for each test."""
    return _make_mock_store()


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


@pytest.fixture()
def aggregator(mock_store: AsyncMock) -> MetricsAggregator:
    """An enabled MetricsAggregator persisting into the mock store."""
    return MetricsAggregator(store=mock_store, enabled=True)


@pytest.fixture()
def mock_client() -> MockGenerationClient:
    """A generation client with no scripts (the default script is used)."""
    return MockGenerationClient()


@pytest.fixture()
def registry(event_bus: EventBus) -> MessageRegistry:
    return MessageRegistry(event_bus)


def make_dispatcher(
    client: MockGenerationClient,
    registry: MessageRegistry,
    aggregator: MetricsAggregator,
    store: Any,
    event_bus: EventBus | None = None,
) -> ActionDispatcher:
    """Wire a dispatcher around the given collaborators (no moderation)."""
    return ActionDispatcher(
        orchestrator=JobOrchestrator(client),
        messages=registry,
        metrics=aggregator,
        billing=BillingLedger(store, cost_per_image=0.1),
        store=store,
        event_bus=event_bus,
    )
