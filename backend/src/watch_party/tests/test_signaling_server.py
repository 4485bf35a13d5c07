from functools import partial

import anyio
import pytest

from watch_party.messages import (
    Envelope,
    ErrorMessage,
    JoinMessage,
    JoinedMessage,
    PingMessage,
    WebSocketMessage,
)
from watch_party.session_registry.session_registry import SessionRegistry
from watch_party.session_registry.signaling_relay import SignalingRelay
from watch_party.session_registry.types import ConnectionId, Role
from watch_party.signaling_server import serve_connection
from watch_party.tests.shared import PipeWebSocket, websocket_pipe

pytestmark = pytest.mark.anyio


async def send(ws: PipeWebSocket, message: WebSocketMessage) -> None:
    await ws.send_text(Envelope(message=message).model_dump_json())


async def receive(ws: PipeWebSocket) -> WebSocketMessage:
    with anyio.fail_after(1):
        return Envelope.model_validate_json(await ws.receive_text()).message


async def test_connection_lifecycle():
    registry = SessionRegistry()
    relay = SignalingRelay(registry)
    client, server = websocket_pipe()

    async with anyio.create_task_group() as tg:
        tg.start_soon(
            partial(
                serve_connection,
                server,
                registry,
                relay,
                connection_id=ConnectionId("a"),
            )
        )

        await send(client, JoinMessage(session_id="room"))
        joined = await receive(client)
        assert isinstance(joined, JoinedMessage)
        assert joined.role is Role.POLITE

        await send(client, PingMessage(type="ping"))
        assert (await receive(client)).type == "pong"

        await client.send_text("not json")
        error = await receive(client)
        assert isinstance(error, ErrorMessage)
        assert error.error_code == "invalid_message"
        assert error.session_id == "room"

        # Server-only message types are refused
        await send(client, JoinedMessage(session_id="room", role=Role.POLITE))
        error = await receive(client)
        assert isinstance(error, ErrorMessage)
        assert error.error_code == "unexpected_message"

        assert registry.connection_count() == 1

        await client.close()

    # Disconnecting behaves like leaving
    assert server.accepted
    assert registry.connection_count() == 0
    assert registry.session_count() == 0


async def test_unexpected_error_still_cleans_up():
    class ExplodingRelay(SignalingRelay):
        async def relay_signal(self, connection_id, message):
            raise RuntimeError("boom")

    registry = SessionRegistry()
    client, server = websocket_pipe()

    async with anyio.create_task_group() as tg:
        tg.start_soon(serve_connection, server, registry, ExplodingRelay(registry))

        await send(client, JoinMessage(session_id="room"))
        await receive(client)
        await client.send_text('{"message": {"type": "signal", "data": {}}}')

    assert registry.session_count() == 0
    assert registry.connection_count() == 0
