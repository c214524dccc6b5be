"""Generation job data types.

A GenerationJob is owned by the JobOrchestrator while it runs. Every state
change produces a new frozen instance; once a job is terminal (done or
failed) no further transitions are allowed.
"""

from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Any

from models.schemas import ActionKind, JobErrorKind


class JobState(StrEnum):
    """Lifecycle state of a generation job."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class JobTransitionError(RuntimeError):
    """Raised when a terminal job is asked to change state."""


@dataclass(frozen=True)
class GenerationJob:
    """One request to the generation service and its lifecycle.

    Attributes:
        id: Job identifier (assigned by the service once known).
        action: What the job does (generate, upscale, variation).
        prompt: The initiating prompt, if known.
        model: Model identifier used for the job.
        image_index: Per-image index for follow-up jobs.
        source_job_id: The job a follow-up was derived from.
        state: Current lifecycle state.
        queue_position: Zero-based position while queued.
        progress: Completion fraction 0..1 while running.
        images: Produced image URLs once done.
        error_kind: Classified failure once failed.
        raw_error: Unmodified service error message once failed.
    """

    id: str
    action: ActionKind
    prompt: str | None = None
    model: str | None = None
    image_index: int | None = None
    source_job_id: str | None = None
    state: JobState = JobState.QUEUED
    queue_position: int | None = None
    progress: float | None = None
    images: tuple[str, ...] = ()
    error_kind: JobErrorKind | None = None
    raw_error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.state in (JobState.DONE, JobState.FAILED)

    def _transition(self, **changes: Any) -> "GenerationJob":
        if self.terminal:
            raise JobTransitionError(f"Job {self.id} is already {self.state.value}")
        return replace(self, **changes)

    def queued(self, position: int) -> "GenerationJob":
        return self._transition(state=JobState.QUEUED, queue_position=position, progress=None)

    def running(self, fraction: float | None) -> "GenerationJob":
        return self._transition(state=JobState.RUNNING, queue_position=None, progress=fraction)

    def completed(self, images: tuple[str, ...], **details: Any) -> "GenerationJob":
        return self._transition(
            state=JobState.DONE,
            queue_position=None,
            progress=1.0,
            images=images,
            **details,
        )

    def failed(self, kind: JobErrorKind, raw_error: str) -> "GenerationJob":
        return self._transition(
            state=JobState.FAILED,
            queue_position=None,
            error_kind=kind,
            raw_error=raw_error,
        )


@dataclass(frozen=True)
class JobProgress:
    """Non-terminal progress notification. Never carries image data."""

    status: float | None = None
    queued: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "queued": self.queued}


@dataclass(frozen=True)
class JobResult:
    """Terminal outcome of a job, delivered exactly once and last.

    Attributes:
        job: The terminal job.
        done: True on success.
        images: Produced image URLs (success only).
        error: Short user-facing message (failure only).
        error_kind: Classified failure (failure only).
    """

    job: GenerationJob
    done: bool
    images: tuple[str, ...] = ()
    error: str | None = None
    error_kind: JobErrorKind | None = None

    @property
    def image(self) -> str | None:
        return self.images[0] if self.images else None

    def to_dict(self) -> dict[str, Any]:
        if not self.done:
            return {"done": False, "error": self.error, "error_kind": self.error_kind}
        return {
            "done": True,
            "id": self.job.id,
            "images": list(self.images),
            "image": self.image,
            "prompt": self.job.prompt,
            "action": None if self.job.action == ActionKind.GENERATE else self.job.action.value,
        }


JobUpdate = JobProgress | JobResult
