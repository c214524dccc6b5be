"""Image generation jobs.

This package wraps the external generation service:

    - GenerationClient: streams a job's raw updates over HTTP
    - MockGenerationClient: scripted updates for tests and offline runs
    - JobOrchestrator: ordered progress plus one classified terminal result
"""

from generation.client import (
    FilterResult,
    GenerationAPIError,
    GenerationClient,
    MockGenerationClient,
)
from generation.orchestrator import (
    JobOrchestrator,
    ProgressSink,
    classify_error,
    format_job_error,
)

__all__ = [
    "FilterResult",
    "GenerationAPIError",
    "GenerationClient",
    "MockGenerationClient",
    "JobOrchestrator",
    "ProgressSink",
    "classify_error",
    "format_job_error",
]
