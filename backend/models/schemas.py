"""Pydantic schemas for API request/response models and service payloads.

This module defines the data models used by the HTTP API, the WebSocket
handlers and the wire format of the external generation service.
All models use Pydantic v2 with strict type validation.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ActionKind(StrEnum):
    """What a generation job does."""

    GENERATE = "generate"
    UPSCALE = "upscale"
    VARIATION = "variation"


class FollowUpKind(StrEnum):
    """Actions a user can trigger from a completed job's controls."""

    UPSCALE = "upscale"
    VARIATION = "variation"
    RATE = "rate"


class JobErrorKind(StrEnum):
    """Classified failure of a generation job."""

    RATE_LIMITED = "rate_limited"
    CONTENT_FLAGGED = "content_flagged"
    GENERIC = "generic"


class MetricsCategory(StrEnum):
    """Buckets of the metrics aggregator."""

    COOLDOWN = "cooldown"
    GUILDS = "guilds"
    USERS = "users"
    CHAT = "chat"
    IMAGE = "image"


class ControlStyle(StrEnum):
    """Emphasis style of an interactive control."""

    PRIMARY = "primary"
    SECONDARY = "secondary"


# -----------------------------------------------------------------------------
# Generation service wire format
# -----------------------------------------------------------------------------


class ServiceUpdate(BaseModel):
    """One streamed or terminal message from the generation service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = Field(default=None, description="Identifier of the running job")
    done: bool = Field(default=False, description="Whether the job reached a terminal state")
    queued: int | None = Field(default=None, ge=0, description="Zero-based queue position")
    status: float | None = Field(default=None, description="Completion fraction 0..1")
    image: str | None = Field(default=None, description="URL of the produced image")
    prompt: str | None = Field(default=None)
    action: ActionKind | None = Field(default=None)
    error: str | None = Field(default=None)
    job_id: str | None = Field(
        default=None,
        alias="jobId",
        description="Dataset identifier of the source job",
    )
    number: int | None = Field(default=None, description="Image index within the source job")


class GenerateJobRequest(BaseModel):
    """A new generation from a prompt."""

    prompt: str = Field(min_length=1, max_length=1000)
    model: str = Field(default="5.1")

    def to_payload(self) -> dict[str, Any]:
        return {"prompt": self.prompt, "model": self.model}


class FollowUpJobRequest(BaseModel):
    """An upscale or variation of an image from a previous job."""

    action: Literal[ActionKind.UPSCALE, ActionKind.VARIATION]
    source_job_id: str = Field(min_length=1)
    image_index: int = Field(ge=0, le=3)

    def to_payload(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "id": self.source_job_id,
            "number": self.image_index,
        }


JobRequest = GenerateJobRequest | FollowUpJobRequest


# -----------------------------------------------------------------------------
# API models
# -----------------------------------------------------------------------------


class ControlSchema(BaseModel):
    """A single interactive control as exposed by the API."""

    id: str = Field(description="Colon-delimited control identifier")
    label: str | None = Field(default=None, examples=["U1"])
    style: ControlStyle = Field(default=ControlStyle.SECONDARY)
    disabled: bool = Field(default=False)
    glyph: str | None = Field(default=None, examples=["😍"])


class ImagineRequest(BaseModel):
    """Request body for starting a new image generation."""

    user_id: str = Field(min_length=1, description="Acting user")
    prompt: str = Field(
        min_length=1,
        max_length=1000,
        description="The image prompt",
        examples=["a cat sitting on a windowsill, golden hour"],
    )
    model: str | None = Field(default=None, description="Model identifier", examples=["5.1"])


class ImagineResponse(BaseModel):
    """Response for an accepted generation request."""

    message_id: str = Field(examples=["msg_abc123def456"])
    websocket_url: str = Field(examples=["/ws/msg_abc123def456"])


class InteractionRequest(BaseModel):
    """A pressed control on a message."""

    message_id: str = Field(min_length=1)
    control_id: str = Field(min_length=1, examples=["upscale:42:job_1:0"])
    user_id: str = Field(min_length=1)
    glyph: str | None = Field(default=None, description="Glyph of the pressed control")


class InteractionResponse(BaseModel):
    """Outcome of a dispatched interaction."""

    acknowledged: bool = True
    error: str | None = None
    error_kind: JobErrorKind | None = None
    message_id: str | None = Field(default=None, description="Reply message, if one was created")
    image: str | None = None
    layout: list[list[ControlSchema]] = Field(default_factory=list)


class MessageResponse(BaseModel):
    """A message with its attached controls."""

    message_id: str
    owner_id: str
    content: str | None = None
    image: str | None = None
    error: str | None = None
    layout: list[list[ControlSchema]] = Field(default_factory=list)


class MetricsSnapshotResponse(BaseModel):
    """A persisted metrics snapshot."""

    type: MetricsCategory
    time: str = Field(description="ISO-8601 timestamp of the flush")
    data: dict[str, Any]


class FlushResponse(BaseModel):
    """Result of a manual metrics flush."""

    snapshots: list[MetricsSnapshotResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    metrics_enabled: bool = Field(default=True)
    pending_metric_buckets: int = Field(
        default=0,
        description="Categories with updates since the last flush",
    )
    active_channels: int = Field(
        default=0,
        description="Message channels with at least one connected subscriber",
    )
