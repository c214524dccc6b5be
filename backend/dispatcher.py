"""Routing of user interactions to follow-up jobs and ratings.

Each interaction moves through ``Received -> Locked -> Submitted -> Settled``:

    Received   the control identifier is parsed and the message looked up
    Locked     the pressed control is emphasized and disabled, and the new
               layout is committed before anything is awaited
    Submitted  the follow-up job runs with progress published to the bus
    Settled    metrics, billing and the reply toolbar are applied

A press on a control that is already disabled is a duplicate and has no
effect beyond an acknowledgement. Side-effect failures (metrics, billing,
storage) are logged and never abort an interaction.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import structlog

from billing import BillingLedger
from config import settings
from controls import (
    RATE_ACTIONS,
    FollowUpRequest,
    MalformedControlId,
    RatingOption,
    activate_control,
    build_follow_up_controls,
    parse_control_id,
    rating_for_glyph,
)
from events import EventBus, EventType, JobEvent
from generation.orchestrator import JobOrchestrator, ProgressSink, format_job_error
from messages import Message, MessageRegistry
from metrics import MetricsAggregator, MetricsUpdateError
from models.database import Store
from models.jobs import JobProgress, JobResult, JobUpdate
from models.schemas import (
    ActionKind,
    FollowUpJobRequest,
    FollowUpKind,
    GenerateJobRequest,
    JobErrorKind,
)
from moderation import BLOCKED_PROMPT_MESSAGE, ModerationService

logger = structlog.get_logger(__name__)

MALFORMED_CONTROL_MESSAGE = "This control is no longer valid"
UNKNOWN_MESSAGE_MESSAGE = "This message no longer exists"

# One handler per follow-up kind
_HANDLERS: dict[FollowUpKind, str] = {
    FollowUpKind.UPSCALE: "_handle_job_follow_up",
    FollowUpKind.VARIATION: "_handle_job_follow_up",
    FollowUpKind.RATE: "_handle_rate",
}

_unhandled = set(FollowUpKind) - _HANDLERS.keys()
if _unhandled:
    raise RuntimeError(f"No interaction handler for: {sorted(_unhandled)}")


@dataclass(frozen=True)
class InteractionEvent:
    """A user pressed a control on a message.

    Attributes:
        message_id: The message the control belongs to.
        control_id: Identifier of the pressed control.
        user_id: The user who pressed it.
        glyph: Emoji shown on the control, if any.
    """

    message_id: str
    control_id: str
    user_id: str
    glyph: str | None = None


@dataclass(frozen=True)
class InteractionResult:
    """What the user gets back for an interaction.

    Every interaction is acknowledged. ``message`` is the reply message
    for a finished job, ``error`` the user-facing text for a failure.
    """

    acknowledged: bool = True
    error: str | None = None
    error_kind: JobErrorKind | None = None
    message: Message | None = None
    job_result: JobResult | None = None
    duplicate: bool = False


class ActionDispatcher:
    """Turns interactions and new prompts into jobs and side effects.

    Attributes:
        orchestrator: Runs generation jobs.
        messages: Registry holding every message and its layout.
        metrics: Usage counters.
        billing: Account charges for successful jobs.
        store: Rating record storage (optional).
        event_bus: Receives job progress events (optional).
        moderation: Prompt checks for new generations (optional).
        rating_options: The rating vocabulary.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        messages: MessageRegistry,
        metrics: MetricsAggregator,
        billing: BillingLedger,
        store: Store | None = None,
        event_bus: EventBus | None = None,
        moderation: ModerationService | None = None,
        rating_options: tuple[RatingOption, ...] = RATE_ACTIONS,
    ) -> None:
        self.orchestrator = orchestrator
        self.messages = messages
        self.metrics = metrics
        self.billing = billing
        self.store = store
        self.event_bus = event_bus
        self.moderation = moderation
        self.rating_options = rating_options
        self._tasks: dict[str, asyncio.Task[InteractionResult]] = {}

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def dispatch(self, event: InteractionEvent) -> InteractionResult:
        """Handle one control press.

        Args:
            event: The interaction.

        Returns:
            The acknowledgement, with a reply message or an error.
        """
        log = logger.bind(
            message_id=event.message_id,
            control_id=event.control_id,
            user_id=event.user_id,
        )

        try:
            request = parse_control_id(event.control_id)
        except MalformedControlId as e:
            log.warning("interaction_malformed_control", error=str(e))
            return InteractionResult(
                error=format_job_error(JobErrorKind.GENERIC, MALFORMED_CONTROL_MESSAGE),
                error_kind=JobErrorKind.GENERIC,
            )

        message = self.messages.get(event.message_id)
        if message is None:
            log.warning("interaction_message_not_found")
            return InteractionResult(
                error=format_job_error(JobErrorKind.GENERIC, UNKNOWN_MESSAGE_MESSAGE),
                error_kind=JobErrorKind.GENERIC,
            )

        log.info("interaction_received", kind=request.kind.value)
        handler = getattr(self, _HANDLERS[request.kind])
        return await handler(event, request, message)

    def create_message(self, user_id: str, prompt: str) -> Message:
        """Create the message a new generation will be shown in."""
        return self.messages.create(owner_id=user_id, content=prompt)

    def start_imagine(self, user_id: str, prompt: str, model: str | None = None) -> Message:
        """Create a message and run its generation in the background.

        Returns:
            The message whose channel will carry the job's events.
        """
        message = self.create_message(user_id, prompt)
        background_task = asyncio.create_task(
            self.imagine(user_id, prompt, model, message=message),
            name=f"imagine_{message.message_id}",
        )
        self._tasks[message.message_id] = background_task

        def _remove_task(
            t: asyncio.Task[InteractionResult], mid: str = message.message_id
        ) -> None:
            self._tasks.pop(mid, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error("imagine_task_failed", message_id=mid, error=str(t.exception()))

        background_task.add_done_callback(_remove_task)
        return message

    def get_active_job_count(self) -> int:
        return len(self._tasks)

    async def cancel_all(self) -> None:
        """Cancel every running background generation."""
        tasks = list(self._tasks.items())
        self._tasks.clear()
        for message_id, task in tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception) as e:
                if not isinstance(e, asyncio.CancelledError):
                    logger.error("imagine_task_cancel_failed", message_id=message_id, error=str(e))
        if tasks:
            logger.info("imagine_tasks_cancelled", count=len(tasks))

    async def imagine(
        self,
        user_id: str,
        prompt: str,
        model: str | None = None,
        message: Message | None = None,
    ) -> InteractionResult:
        """Run a new generation from a prompt.

        Args:
            user_id: The requesting user.
            prompt: The image prompt.
            model: Model identifier (defaults to ``settings.default_model``).
            message: An already created message to fill in; a new one is
                created otherwise.

        Returns:
            The message with its first toolbar, or the formatted error.
        """
        model = model or settings.default_model
        if message is None:
            message = self.create_message(user_id, prompt)

        if self.moderation is not None:
            verdict = await self.moderation.check_image_prompt(user_id, prompt, model)
            if verdict.blocked:
                message.error = BLOCKED_PROMPT_MESSAGE
                await self._publish(
                    EventType.JOB_FAILED,
                    message.message_id,
                    data={
                        "done": False,
                        "error": BLOCKED_PROMPT_MESSAGE,
                        "error_kind": JobErrorKind.CONTENT_FLAGGED,
                    },
                )
                return InteractionResult(
                    error=BLOCKED_PROMPT_MESSAGE,
                    error_kind=JobErrorKind.CONTENT_FLAGGED,
                    message=message,
                )

        logger.info("imagine_started", user_id=user_id, message_id=message.message_id, model=model)
        result = await self.orchestrator.submit(
            GenerateJobRequest(prompt=prompt, model=model),
            sink=self._progress_sink(message.message_id),
        )
        return await self._settle(message, user_id, result, metric_field="generation")

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _lock(self, message: Message, control_id: str) -> bool:
        """Activate the pressed control and commit the layout.

        Returns:
            False if the control is unknown or already disabled.
        """
        control = message.layout.find(control_id)
        if control is None or control.disabled:
            return False
        self.messages.edit_layout(message.message_id, activate_control(control_id, message.layout))
        return True

    async def _handle_job_follow_up(
        self,
        event: InteractionEvent,
        request: FollowUpRequest,
        message: Message,
    ) -> InteractionResult:
        if not self._lock(message, event.control_id):
            logger.info(
                "interaction_duplicate_ignored",
                message_id=message.message_id,
                control_id=event.control_id,
            )
            return InteractionResult(duplicate=True)

        reply = self.create_message(event.user_id, message.content or "")
        await self.messages.publish_layout(message.message_id, reply_message_id=reply.message_id)

        job_request = FollowUpJobRequest(
            action=ActionKind(request.kind.value),
            source_job_id=request.source_job_id,
            image_index=request.image_index,
        )
        result = await self.orchestrator.submit(
            job_request,
            sink=self._progress_sink(reply.message_id),
        )
        return await self._settle(reply, event.user_id, result, metric_field=request.kind.value)

    async def _handle_rate(
        self,
        event: InteractionEvent,
        request: FollowUpRequest,
        message: Message,
    ) -> InteractionResult:
        log = logger.bind(message_id=message.message_id, job_id=request.source_job_id)

        if event.user_id != request.user_id:
            log.debug("rating_ignored_not_owner", user_id=event.user_id)
            return InteractionResult()

        option = rating_for_glyph(event.glyph, self.rating_options)
        if option is None:
            log.warning("rating_unknown_glyph", glyph=event.glyph)
            return InteractionResult()

        if not self._lock(message, event.control_id):
            log.info("interaction_duplicate_ignored", control_id=event.control_id)
            return InteractionResult(duplicate=True)
        await self.messages.publish_layout(message.message_id)

        await self._record_metric({"rate": {option.value: "+1"}})

        if self.store is None:
            log.warning("rating_record_not_found", reason="no_store")
            return InteractionResult()

        record = await self.store.get_dataset_entry(request.source_job_id)
        if record is None:
            log.warning("rating_record_not_found")
            return InteractionResult()

        payload = {**record["data"], "rating": option.value}
        if not await self.store.update_dataset_entry(request.source_job_id, payload):
            log.error("rating_record_update_failed")
        else:
            log.info("rating_recorded", rating=option.value)
        return InteractionResult()

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    async def _settle(
        self,
        message: Message,
        user_id: str,
        result: JobResult,
        metric_field: str,
    ) -> InteractionResult:
        if not result.done:
            self.messages.attach_result(message.message_id, result.job, error=result.error)
            return InteractionResult(
                error=result.error,
                error_kind=result.error_kind,
                message=message,
                job_result=result,
            )

        await self._record_metric({metric_field: "+1"})
        await self._charge(user_id, result)
        await self._save_rating_record(user_id, result)

        layout = build_follow_up_controls(result.job, user_id, self.rating_options)
        self.messages.attach_result(message.message_id, result.job, layout=layout)
        await self.messages.publish_layout(message.message_id)

        return InteractionResult(message=message, job_result=result)

    async def _record_metric(self, updates: dict[str, Any]) -> None:
        try:
            await self.metrics.change_image_metric(updates)
        except MetricsUpdateError as e:
            logger.error("metrics_update_failed", category=e.category, fields=e.fields)

    async def _charge(self, user_id: str, result: JobResult) -> None:
        try:
            await self.billing.charge(user_id, result)
        except Exception as e:
            logger.error("billing_charge_failed", job_id=result.job.id, error=str(e))

    async def _save_rating_record(self, user_id: str, result: JobResult) -> None:
        if self.store is None:
            return
        job = result.job
        saved = await self.store.save_dataset_entry(
            job.id,
            {
                "user_id": user_id,
                "action": job.action.value,
                "prompt": job.prompt,
                "model": job.model,
                "images": list(result.images),
                "source_job_id": job.source_job_id,
                "image_index": job.image_index,
            },
        )
        if not saved:
            logger.error("rating_record_save_failed", job_id=job.id)

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    async def _publish(
        self,
        event_type: EventType,
        channel_id: str,
        data: dict[str, Any],
        job_id: str | None = None,
    ) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            JobEvent(type=event_type, channel_id=channel_id, job_id=job_id, data=data)
        )

    def _progress_sink(self, channel_id: str) -> ProgressSink:
        """Publish a job's updates on a message channel."""

        async def sink(update: JobUpdate) -> None:
            if isinstance(update, JobProgress):
                event_type = (
                    EventType.JOB_QUEUED if update.queued is not None else EventType.JOB_PROGRESS
                )
                await self._publish(event_type, channel_id, update.to_dict())
                return

            await self._publish(
                EventType.JOB_COMPLETE if update.done else EventType.JOB_FAILED,
                channel_id,
                update.to_dict(),
                job_id=update.job.id,
            )

        return sink
