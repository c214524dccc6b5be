"""Job orchestration against the generation service.

The JobOrchestrator turns the service's raw update stream into an ordered,
finite sequence of JobProgress notifications terminated by exactly one
JobResult. It performs no retries and has no side effects: metrics and
billing are the caller's concern.

Usage:
    >>> orchestrator = JobOrchestrator(GenerationClient())
    >>> result = await orchestrator.submit(
    ...     GenerateJobRequest(prompt="a cat", model="5.1"),
    ...     sink=render_progress,
    ... )
    >>> result.done
    True
"""

import contextlib
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import replace

import httpx
import structlog

from generation.client import GenerationAPIError, GenerationClient
from models.jobs import GenerationJob, JobProgress, JobResult, JobUpdate
from models.schemas import (
    ActionKind,
    GenerateJobRequest,
    JobErrorKind,
    JobRequest,
    ServiceUpdate,
)

logger = structlog.get_logger(__name__)

ProgressSink = Callable[[JobUpdate], Awaitable[None]]

# Substrings of the service's error messages, checked in this order
RATE_LIMIT_MARKER = "many images"
MODERATION_MARKER = "Flagged"

_ERROR_CLASSIFIERS: tuple[tuple[str, JobErrorKind], ...] = (
    (RATE_LIMIT_MARKER, JobErrorKind.RATE_LIMITED),
    (MODERATION_MARKER, JobErrorKind.CONTENT_FLAGGED),
)

STREAM_ENDED_MESSAGE = "The generation service closed the stream before the job finished"
NO_IMAGE_MESSAGE = "The generation finished without producing an image"


def classify_error(message: str) -> JobErrorKind:
    """Classify a raw service error message. First match wins."""
    for marker, kind in _ERROR_CLASSIFIERS:
        if marker in message:
            return kind
    return JobErrorKind.GENERIC


def format_job_error(kind: JobErrorKind, raw_message: str) -> str:
    """Render the short user-facing message for a failed job."""
    if kind == JobErrorKind.RATE_LIMITED:
        return (
            "**We are currently dealing with too much traffic**; "
            "*please try your request again later*."
        )
    if kind == JobErrorKind.CONTENT_FLAGGED:
        return (
            "**Your prompt was blocked by the moderation filters**; "
            "*please try out a different prompt*."
        )
    return f"**{raw_message}**; *please try your request again later*."


def _progress_key(progress: JobProgress) -> tuple[int, float]:
    """Logical position of a notification: queue phase first, then running."""
    if progress.queued is not None:
        return (0, -float(progress.queued))
    return (1, progress.status or 0.0)


class JobOrchestrator:
    """Runs generation jobs and streams their progress.

    Attributes:
        client: The generation service client.
    """

    def __init__(self, client: GenerationClient) -> None:
        self.client = client
        logger.info("job_orchestrator_initialized", client=type(client).__name__)

    @staticmethod
    def _new_job(request: JobRequest) -> GenerationJob:
        provisional_id = f"job_{uuid.uuid4().hex[:12]}"
        if isinstance(request, GenerateJobRequest):
            return GenerationJob(
                id=provisional_id,
                action=ActionKind.GENERATE,
                prompt=request.prompt,
                model=request.model,
            )
        return GenerationJob(
            id=provisional_id,
            action=request.action,
            image_index=request.image_index,
            source_job_id=request.source_job_id,
        )

    @staticmethod
    def _fail(job: GenerationJob, raw_message: str) -> JobResult:
        kind = classify_error(raw_message)
        failed = job.failed(kind, raw_message)
        logger.warning(
            "job_failed",
            job_id=failed.id,
            action=failed.action.value,
            error_kind=kind.value,
            error=raw_message,
        )
        return JobResult(
            job=failed,
            done=False,
            error=format_job_error(kind, raw_message),
            error_kind=kind,
        )

    @staticmethod
    def _complete(job: GenerationJob, update: ServiceUpdate) -> JobResult:
        images = (update.image,) if update.image else ()
        completed = job.completed(
            images,
            id=update.id or job.id,
            prompt=update.prompt or job.prompt,
            source_job_id=update.job_id or job.source_job_id,
            image_index=update.number if update.number is not None else job.image_index,
        )
        logger.info(
            "job_completed",
            job_id=completed.id,
            action=completed.action.value,
            images=len(images),
        )
        return JobResult(job=completed, done=True, images=images)

    async def stream(self, request: JobRequest) -> AsyncIterator[JobUpdate]:
        """Submit a job and yield its progress followed by the terminal result.

        Progress notifications are yielded in non-decreasing logical order;
        out-of-order updates from the service are dropped. The final item is
        always a single JobResult.

        Args:
            request: A new generation or a follow-up request.

        Yields:
            JobProgress items, then exactly one JobResult.
        """
        job = self._new_job(request)
        last_key: tuple[int, float] | None = None
        result: JobResult | None = None

        logger.info(
            "job_submitted",
            job_id=job.id,
            action=job.action.value,
            model=job.model,
            source_job_id=job.source_job_id,
        )

        try:
            updates = self.client.stream_imagine(request.to_payload())
            async with contextlib.aclosing(updates):
                async for update in updates:
                    if update.id and job.id != update.id and not job.terminal:
                        job = replace(job, id=update.id)

                    if update.error:
                        result = self._fail(job, update.error)
                        break

                    if update.done:
                        if update.image:
                            result = self._complete(job, update)
                        else:
                            result = self._fail(job, NO_IMAGE_MESSAGE)
                        break

                    progress = JobProgress(
                        status=None if update.queued is not None else update.status,
                        queued=update.queued,
                    )
                    key = _progress_key(progress)
                    if last_key is not None and key < last_key:
                        logger.debug(
                            "job_progress_out_of_order",
                            job_id=job.id,
                            status=progress.status,
                            queued=progress.queued,
                        )
                        continue
                    last_key = key

                    if progress.queued is not None:
                        job = job.queued(progress.queued)
                    else:
                        job = job.running(progress.status)
                    yield progress

        except GenerationAPIError as e:
            result = self._fail(job, e.message or str(e))
        except httpx.HTTPError as e:
            result = self._fail(job, str(e) or type(e).__name__)
        except Exception as e:
            logger.error(
                "job_stream_error",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            result = self._fail(job, str(e) or type(e).__name__)

        if result is None:
            result = self._fail(job, STREAM_ENDED_MESSAGE)

        yield result

    async def submit(
        self,
        request: JobRequest,
        sink: ProgressSink | None = None,
    ) -> JobResult:
        """Run a job to completion.

        Every progress notification and finally the terminal result are
        delivered to ``sink``. A failing sink is logged and never stops
        the job.

        Args:
            request: A new generation or a follow-up request.
            sink: Optional async callback receiving each update in order.

        Returns:
            The terminal JobResult.
        """
        result: JobResult | None = None

        async for update in self.stream(request):
            if isinstance(update, JobResult):
                result = update

            if sink is None:
                continue
            try:
                await sink(update)
            except Exception as e:
                logger.warning(
                    "job_progress_sink_failed",
                    terminal=isinstance(update, JobResult),
                    error=str(e),
                )

        if result is None:
            raise RuntimeError("Job stream ended without a terminal result")
        return result


