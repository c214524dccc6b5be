"""WebSocket handler for real-time job event streaming.

Each message has a channel named after its id. Clients connect to
``/ws/{message_id}`` to follow queue position, progress, the terminal
outcome and control layout changes of that message.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import EventType, get_event_bus

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()


@websocket_router.websocket("/ws/{channel_id}")
async def websocket_endpoint(websocket: WebSocket, channel_id: str) -> None:
    """WebSocket endpoint for real-time event streaming.

    - Server -> Client: job and layout events of the channel
    - Client -> Server: ``ping`` commands, answered with ``pong``

    Args:
        websocket: The WebSocket connection.
        channel_id: The message id whose events are streamed.
    """
    await websocket.accept()

    logger.info("websocket_connected", channel_id=channel_id)

    event_bus = get_event_bus()

    # Subscribe before reading history so no event published in between is lost
    queue = event_bus.subscribe(channel_id)

    try:
        history = event_bus.get_event_history(channel_id)
        # The bus hands the same event objects to history and to queues
        replayed = {id(event) for event in history}
        if history:
            logger.info(
                "replaying_event_history",
                channel_id=channel_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", channel_id=channel_id)
                    return
                except Exception as e:
                    logger.error("websocket_replay_error", channel_id=channel_id, error=str(e))
                    return

        async def send_events() -> None:
            """Forward bus events to the client, skipping replayed ones."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.CHANNEL_CLOSED:
                        logger.info("channel_closed_sentinel", channel_id=channel_id)
                        break

                    # Buffered events can overlap with the replayed history
                    if id(event) in replayed:
                        logger.debug(
                            "event_skipped_duplicate",
                            channel_id=channel_id,
                            event_type=event.type.value,
                        )
                        continue

                    await websocket.send_json(event.model_dump(mode="json"))
                    logger.debug(
                        "event_sent",
                        channel_id=channel_id,
                        event_type=event.type.value,
                    )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", channel_id=channel_id)
            except Exception as e:
                logger.error("websocket_send_error", channel_id=channel_id, error=str(e))

        async def receive_commands() -> None:
            """Answer client pings until the client goes away."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", channel_id=channel_id)
                        continue

                    command_type = data.get("type")
                    if command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            channel_id=channel_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", channel_id=channel_id)
            except Exception as e:
                logger.error("websocket_receive_error", channel_id=channel_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", channel_id=channel_id)
    except Exception as e:
        logger.error("websocket_error", channel_id=channel_id, error=str(e))
    finally:
        event_bus.unsubscribe(channel_id, queue)
        logger.info("websocket_cleanup_complete", channel_id=channel_id)
