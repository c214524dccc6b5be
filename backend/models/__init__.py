"""Models module for Pydantic schemas and persistence.

This module exposes the request/response models used by the API and the
wire models of the external generation service.
"""

from models.schemas import (
    ActionKind,
    ControlSchema,
    ControlStyle,
    FlushResponse,
    FollowUpJobRequest,
    FollowUpKind,
    GenerateJobRequest,
    HealthResponse,
    ImagineRequest,
    ImagineResponse,
    InteractionRequest,
    InteractionResponse,
    JobErrorKind,
    JobRequest,
    MessageResponse,
    MetricsCategory,
    MetricsSnapshotResponse,
    ServiceUpdate,
)

__all__ = [
    "ActionKind",
    "ControlSchema",
    "ControlStyle",
    "FlushResponse",
    "FollowUpJobRequest",
    "FollowUpKind",
    "GenerateJobRequest",
    "HealthResponse",
    "ImagineRequest",
    "ImagineResponse",
    "InteractionRequest",
    "InteractionResponse",
    "JobErrorKind",
    "JobRequest",
    "MessageResponse",
    "MetricsCategory",
    "MetricsSnapshotResponse",
    "ServiceUpdate",
]
