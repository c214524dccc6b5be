"""Async event bus for per-message pub/sub communication.

This module provides an EventBus class that enables asynchronous
publish/subscribe communication between job execution and connected
clients (via WebSocket).

The event bus supports:
- Multiple subscribers per channel
- Async event delivery via asyncio.Queue
- Channel lifecycle management (closing a channel terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import EventType, JobEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for job events.

    The EventBus manages subscriptions per channel (one channel per
    message), allowing several WebSocket connections to follow the same
    job. Events are delivered via asyncio.Queue for non-blocking
    consumption, in the order they were published.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately. This handles the race condition where a
        job starts streaming before the WebSocket connects.

    Attributes:
        _subscribers: Dict mapping channel_id to list of subscriber queues
        _event_buffer: Dict mapping channel_id to list of buffered events
        _event_history: Dict mapping channel_id to its recent events
        _lock: Lock guarding the subscription registry
    """

    # Maximum number of events to retain per channel for replay on reconnect.
    MAX_HISTORY_PER_CHANNEL = 500
    # Maximum number of undelivered events held for a channel nobody follows.
    MAX_BUFFER_PER_CHANNEL = 500

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[JobEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[JobEvent]] = defaultdict(list)
        self._event_history: dict[str, list[JobEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, channel_id: str) -> asyncio.Queue[JobEvent]:
        """Subscribe to events for a channel.

        If there are buffered events for this channel they are delivered
        immediately to the new subscriber.

        Args:
            channel_id: The channel to subscribe to

        Returns:
            An asyncio.Queue that will receive JobEvent objects
        """
        queue: asyncio.Queue[JobEvent] = asyncio.Queue()
        buffered_events: list[JobEvent] = []

        with self._lock:
            self._subscribers[channel_id].append(queue)
            subscriber_count = len(self._subscribers[channel_id])

            if channel_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(channel_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            channel_id=channel_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, channel_id: str, queue: asyncio.Queue[JobEvent]) -> None:
        """Unsubscribe a queue from channel events.

        If the queue is not registered, this is a no-op.

        Args:
            channel_id: The channel to unsubscribe from
            queue: The queue to remove
        """
        with self._lock:
            if channel_id not in self._subscribers:
                return
            try:
                self._subscribers[channel_id].remove(queue)
            except ValueError:
                logger.warning("unsubscribe_queue_not_found", channel_id=channel_id)
                return

            subscriber_count = len(self._subscribers[channel_id])
            if not self._subscribers[channel_id]:
                del self._subscribers[channel_id]

        logger.info(
            "subscriber_removed",
            channel_id=channel_id,
            subscriber_count=subscriber_count,
        )

    async def publish(self, event: JobEvent) -> None:
        """Publish an event to all subscribers of its channel.

        If there are no subscribers, the event is buffered until a
        subscriber connects. All events except the close sentinel are
        also kept in the channel history for replay on reconnect.

        Args:
            event: The JobEvent to publish
        """
        with self._lock:
            if event.type != EventType.CHANNEL_CLOSED:
                history = self._event_history[event.channel_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_CHANNEL:
                    self._event_history[event.channel_id] = history[-self.MAX_HISTORY_PER_CHANNEL:]

            subscribers = list(self._subscribers.get(event.channel_id, []))

            if not subscribers:
                buffer = self._event_buffer[event.channel_id]
                buffer.append(event)
                if len(buffer) > self.MAX_BUFFER_PER_CHANNEL:
                    self._event_buffer[event.channel_id] = buffer[-self.MAX_BUFFER_PER_CHANNEL:]
                logger.debug(
                    "event_buffered",
                    channel_id=event.channel_id,
                    event_type=event.type.value,
                    buffer_size=len(self._event_buffer[event.channel_id]),
                )
                return

        # Publish with a timeout so a stalled consumer cannot block the job
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    channel_id=event.channel_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.error(
                    "event_delivery_failed",
                    channel_id=event.channel_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            channel_id=event.channel_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            job_id=event.job_id,
        )

    def get_event_history(self, channel_id: str) -> list[JobEvent]:
        """Get all stored events for a channel in chronological order."""
        with self._lock:
            return list(self._event_history.get(channel_id, []))

    async def close_channel(self, channel_id: str) -> None:
        """Close a channel and notify all subscribers.

        Puts a CHANNEL_CLOSED sentinel into each subscriber queue so that
        consumers can break out of their read loops, then removes all
        subscribers and buffered events. History is kept for reconnects.

        Args:
            channel_id: The channel to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(channel_id, [])
            buffered = self._event_buffer.pop(channel_id, [])

        for queue in queues_to_signal:
            await queue.put(
                JobEvent(
                    type=EventType.CHANNEL_CLOSED,
                    channel_id=channel_id,
                    data={"reason": "channel_closed"},
                )
            )

        logger.info(
            "channel_closed",
            channel_id=channel_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=len(buffered),
        )

    def get_active_channels(self) -> list[str]:
        """Get list of channels with active subscribers."""
        with self._lock:
            return list(self._subscribers.keys())

    def clear_event_history(self, channel_id: str) -> None:
        with self._lock:
            self._event_history.pop(channel_id, None)


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance.

    Creates the instance on first call (lazy initialization).

    Returns:
        The global EventBus instance
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
