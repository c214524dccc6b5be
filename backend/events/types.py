"""Event type definitions for the Imagine event system.

This module defines the events that flow from job execution to connected
clients. Every job state change and every control layout edit produces an
event on the channel of the message it belongs to.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the Imagine system.

    Events are categorized by:
    - Job lifecycle: Queue position, progress and terminal outcome
    - Message state: Control layout replacement
    - Channel lifecycle: Sentinel emitted when a channel closes
    """

    # Job lifecycle
    JOB_QUEUED = "job_queued"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETE = "job_complete"
    JOB_FAILED = "job_failed"

    # Message state
    LAYOUT_UPDATED = "layout_updated"

    # Channel lifecycle
    CHANNEL_CLOSED = "channel_closed"


class JobEvent(BaseModel):
    """An event emitted while a message's job runs or its controls change.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - channel_id: The message this event belongs to
    - job_id: The job that produced this event (if applicable)
    - data: Event-specific payload

    Payload schemas by event type:

    JOB_QUEUED:
        - queued: int - Zero-based queue position

    JOB_PROGRESS:
        - status: float | None - Completion fraction

    JOB_COMPLETE:
        - done: bool - Always True
        - id: str - Service job id
        - images: list - Produced image URLs
        - image: str - First produced image
        - prompt: str | None - Prompt of a new generation
        - action: str | None - Follow-up action of the job

    JOB_FAILED:
        - done: bool - Always False
        - error: str - User-facing error message
        - error_kind: str - Classified failure

    LAYOUT_UPDATED:
        - layout: list - Rows of controls
        - reply_message_id: str - Message a follow-up result streams to (optional)
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    channel_id: str
    job_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "job_progress",
                    "timestamp": 1699876543.123,
                    "channel_id": "msg_abc123",
                    "job_id": "job_1",
                    "data": {"status": 0.5, "queued": None},
                }
            ]
        }
    }
