"""Event system for streaming job progress to clients.

This package provides the event infrastructure between job execution and
connected clients. The event system is based on an async pub/sub pattern
using asyncio.Queue, with one channel per message.

Key Components:
    - EventType: Enum of all event types in the system
    - JobEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution

Usage:
    >>> from events import EventType, JobEvent, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("msg_123")
    >>> await bus.publish(JobEvent(
    ...     type=EventType.JOB_PROGRESS,
    ...     channel_id="msg_123",
    ...     job_id="job_1",
    ...     data={"status": 0.5, "queued": None},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    JobEvent,
)

__all__ = [
    "EventType",
    "JobEvent",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
