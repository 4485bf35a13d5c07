from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from starlette.websockets import WebSocketDisconnect
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from watch_party.client.session_client import SessionClient
from watch_party.negotiation.types import PeerFactory


class WebsocketsTransport:
    """Adapts a `websockets` client connection to the text websocket interface."""

    def __init__(self, connection: ClientConnection):
        self._connection = connection

    async def send_text(self, data: str) -> None:
        try:
            await self._connection.send(data)
        except ConnectionClosed as e:
            raise WebSocketDisconnect(code=_close_code(e)) from e

    async def receive_text(self) -> str:
        try:
            data = await self._connection.recv()
        except ConnectionClosed as e:
            raise WebSocketDisconnect(code=_close_code(e)) from e
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return data

    async def close(self) -> None:
        await self._connection.close()


def _close_code(error: ConnectionClosed) -> int:
    return error.rcvd.code if error.rcvd is not None else 1006


@asynccontextmanager
async def connect_session_client(
    url: str, peer_factory: PeerFactory, **client_kwargs: Any
) -> AsyncIterator[SessionClient]:
    """
    Opens a websocket to the signaling server at `url` (e.g.
    ws://localhost:3000/ws) and yields a started SessionClient on it.
    """
    async with connect(url) as connection:
        async with SessionClient(
            WebsocketsTransport(connection), peer_factory, **client_kwargs
        ) as client:
            yield client
