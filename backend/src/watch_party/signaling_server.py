import logging
from typing import Optional, Protocol, runtime_checkable

import anyio
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect
from ulid import ULID

from watch_party.messages import (
    ContentReferenceMessage,
    ErrorMessage,
    JoinMessage,
    LeaveMessage,
    PingMessage,
    PlaybackStateMessage,
    ReactionMessage,
    SignalMessage,
    WebSocketMessage,
)
from watch_party.session_registry.concurrent_websocket import ConcurrentWebSocket
from watch_party.session_registry.session_registry import SessionRegistry
from watch_party.session_registry.signaling_relay import SignalingRelay
from watch_party.session_registry.types import ConnectionId

logger = logging.getLogger(__name__)


@runtime_checkable
class ServerWebSocketProtocol(Protocol):
    """The async WebSocket interface serve_connection actually uses."""

    async def accept(self) -> None: ...
    async def send_text(self, data: str) -> None: ...
    async def receive_text(self) -> str: ...
    async def close(self) -> None: ...


async def serve_connection(
    websocket: ServerWebSocketProtocol,
    registry: SessionRegistry,
    relay: SignalingRelay,
    *,
    message_buffer_size: int = 256,
    connection_id: Optional[ConnectionId] = None,
) -> None:
    """
    Handle one client connection until it goes away.

    Whatever ends the connection (a clean disconnect or an unexpected
    error), the client is removed from its session the same way an
    explicit leave would.
    """
    await websocket.accept()

    connection_id = connection_id or ConnectionId(str(ULID()).lower())
    cws = ConcurrentWebSocket(websocket, message_buffer_size=message_buffer_size)

    logger.info(f"Client connected: {connection_id}")

    try:
        async with cws:
            await registry.connect(connection_id, cws)
            try:
                await _receive_loop(connection_id, cws, registry, relay)
            finally:
                with anyio.CancelScope(shield=True):
                    await registry.disconnect(connection_id)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception(f"Connection {connection_id} failed")

    logger.info(f"Client disconnected: {connection_id}")


async def _receive_loop(
    connection_id: ConnectionId,
    cws: ConcurrentWebSocket,
    registry: SessionRegistry,
    relay: SignalingRelay,
) -> None:
    while True:
        try:
            message = await cws.receive_message()
        except ValidationError as e:
            logger.warning(f"Invalid message from {connection_id}: {e}")
            await cws.send_message(
                ErrorMessage(
                    error_code="invalid_message",
                    message="Message could not be parsed",
                    session_id=registry.session_of(connection_id),
                )
            )
            continue

        await handle_client_message(connection_id, message, cws, registry, relay)


async def handle_client_message(
    connection_id: ConnectionId,
    message: WebSocketMessage,
    cws: ConcurrentWebSocket,
    registry: SessionRegistry,
    relay: SignalingRelay,
) -> None:
    if isinstance(message, SignalMessage):
        await relay.relay_signal(connection_id, message)
    elif isinstance(message, JoinMessage):
        await registry.join(connection_id, message.session_id)
    elif isinstance(message, LeaveMessage):
        await registry.leave(connection_id)
    elif isinstance(message, ContentReferenceMessage):
        await registry.set_content_reference(connection_id, message.reference)
    elif isinstance(message, PlaybackStateMessage):
        await registry.set_playback_state(connection_id, message.state)
    elif isinstance(message, ReactionMessage):
        await relay.relay_reaction(connection_id, message)
    elif isinstance(message, PingMessage):
        await cws.send_message(PingMessage())
    else:
        logger.warning(f"Unexpected {message.type} message from {connection_id}")
        await cws.send_message(
            ErrorMessage(
                error_code="unexpected_message",
                message=f"Clients may not send {message.type}",
                session_id=registry.session_of(connection_id),
            )
        )
