"""In-memory registry of messages and their attached controls.

Every generated image lives in a message. A message's control layout is
only ever replaced as a whole; ``edit_layout`` commits the new layout
synchronously so that a later event for the same message always observes
it, and ``publish_layout`` announces it to connected clients.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field

import structlog

from config import settings
from controls import ControlLayout, layout_to_schema
from events import EventBus, EventType, JobEvent
from models.jobs import GenerationJob

logger = structlog.get_logger(__name__)


@dataclass
class Message:
    """A message shown to a user.

    Attributes:
        message_id: Unique identifier (e.g. "msg_abc123def456").
        owner_id: The user the message was created for.
        content: The prompt the message shows.
        layout: Controls attached to the message.
        job: The job whose result the message shows, once known.
        error: User-facing error, if the job failed.
        created_at: Unix timestamp of creation.
    """

    message_id: str
    owner_id: str
    content: str | None = None
    layout: ControlLayout = field(default_factory=ControlLayout)
    job: GenerationJob | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def image(self) -> str | None:
        if self.job is None or not self.job.images:
            return None
        return self.job.images[0]


class MessageRegistry:
    """Holds messages by id and publishes their layout changes.

    Attributes:
        event_bus: Optional bus receiving LAYOUT_UPDATED events.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self.event_bus = event_bus
        self._messages: dict[str, Message] = {}

    def create(self, owner_id: str, content: str | None = None) -> Message:
        message = Message(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            owner_id=owner_id,
            content=content,
        )
        self._messages[message.message_id] = message
        logger.debug("message_created", message_id=message.message_id, owner_id=owner_id)
        return message

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def _require(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise KeyError(f"Message {message_id} not found")
        return message

    def edit_layout(self, message_id: str, layout: ControlLayout) -> Message:
        """Replace a message's whole layout.

        Raises:
            KeyError: If the message does not exist.
        """
        message = self._require(message_id)
        message.layout = layout
        return message

    def attach_result(
        self,
        message_id: str,
        job: GenerationJob,
        layout: ControlLayout | None = None,
        error: str | None = None,
    ) -> Message:
        """Record a terminal job (and its toolbar or error) on a message.

        Raises:
            KeyError: If the message does not exist.
        """
        message = self._require(message_id)
        message.job = job
        message.error = error
        if layout is not None:
            message.layout = layout
        return message

    async def publish_layout(self, message_id: str, **extra: object) -> None:
        """Announce the current layout of a message on its channel."""
        message = self._require(message_id)
        if self.event_bus is None:
            return

        await self.event_bus.publish(
            JobEvent(
                type=EventType.LAYOUT_UPDATED,
                channel_id=message_id,
                job_id=message.job.id if message.job else None,
                data={
                    "layout": [
                        [control.model_dump(mode="json") for control in row]
                        for row in layout_to_schema(message.layout)
                    ],
                    **extra,
                },
            )
        )

    def __len__(self) -> int:
        return len(self._messages)

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def evict_expired(
        self, max_age_seconds: float, now: float | None = None
    ) -> list[str]:
        """Drop settled messages older than max_age_seconds.

        A message is settled once its job finished or it carries an error;
        messages still waiting on a job are kept. Each evicted message's
        channel is closed and its event history cleared.

        Returns:
            Ids of the evicted messages.
        """
        cutoff = (now if now is not None else time.time()) - max_age_seconds
        expired = [
            message_id
            for message_id, message in self._messages.items()
            if message.created_at < cutoff
            and (message.job is not None or message.error is not None)
        ]

        for message_id in expired:
            del self._messages[message_id]
            if self.event_bus is not None:
                await self.event_bus.close_channel(message_id)
                self.event_bus.clear_event_history(message_id)

        if expired:
            logger.info("messages_evicted", count=len(expired), remaining=len(self._messages))
        return expired

    def start_cleanup_loop(
        self,
        interval_seconds: float | None = None,
        max_age_seconds: float | None = None,
    ) -> asyncio.Task[None]:
        """Start a background task that evicts expired messages periodically.

        The task runs until cancelled (typically at application shutdown).
        """
        interval = interval_seconds or settings.message_cleanup_interval_minutes * 60
        max_age = max_age_seconds or settings.message_ttl_minutes * 60

        async def _loop() -> None:
            logger.info(
                "message_cleanup_loop_started",
                interval_seconds=interval,
                max_age_seconds=max_age,
            )
            while True:
                try:
                    await asyncio.sleep(interval)
                    await self.evict_expired(max_age)
                except asyncio.CancelledError:
                    logger.info("message_cleanup_loop_stopped")
                    return
                except Exception as e:
                    logger.error("message_cleanup_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="message_cleanup")
