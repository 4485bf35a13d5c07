import contextlib
import logging

import anyio
import anyio.abc
from anyio import create_memory_object_stream
from anyio.streams.memory import MemoryObjectReceiveStream
from starlette.websockets import WebSocketDisconnect
from typing import Optional

from watch_party.session_registry.types import WebSocketProtocol
from watch_party.messages import Envelope, WebSocketMessage

logger = logging.getLogger(__name__)

# Upper bound on the close handshake of a connection that stopped reading
CLOSE_TIMEOUT_SECS = 5


class ConcurrentWebSocket:
    """
    Outbound queue in front of one websocket.

    Senders enqueue envelopes; a single writer task owns the socket and
    writes them out in queue order. The queue is bounded by
    `message_buffer_size`: `send_message` waits for room, while
    `send_message_nowait` raises `anyio.WouldBlock` so callers that must not
    wait (the session registry, under its lock) can give up on a peer that
    stopped reading and `abort` it.

        async with ConcurrentWebSocket(ws) as cws:
            await cws.send_message(model)
            model = await cws.receive_message()
    """

    def __init__(
        self,
        already_accepted_ws: WebSocketProtocol,
        *,
        message_buffer_size: int = 256,
    ):
        self._ws = already_accepted_ws
        self._outbox, self._outbox_reader = create_memory_object_stream[
            WebSocketMessage
        ](message_buffer_size)
        self._task_group: Optional[anyio.abc.TaskGroup] = None
        self._writer_scope: Optional[anyio.CancelScope] = None
        self._started = False
        self._closed = False
        self._aborted = False

    # ---------- lifecycle ----------
    async def start(self) -> "ConcurrentWebSocket":
        if self._started:
            return self

        # Kept open until aclose
        self._task_group = await anyio.create_task_group().__aenter__()

        self._task_group.start_soon(self._writer, self._outbox_reader)
        self._started = True
        return self

    async def aclose(self) -> None:
        """Flushes whatever is queued, closes the socket, and stops the writer."""
        if self._closed:
            return
        self._closed = True
        await self._outbox.aclose()

        if self._task_group is not None:
            await self._task_group.__aexit__(None, None, None)
            self._task_group = None

    def abort(self) -> None:
        """
        Drops everything queued and closes the socket without waiting for a
        stalled write. Safe to call from any task.
        """
        if self._aborted:
            return
        self._aborted = True
        self._outbox.close()
        if self._writer_scope is not None:
            self._writer_scope.cancel()

    async def __aenter__(self) -> "ConcurrentWebSocket":
        return await self.start()

    async def __aexit__(self, et, ev, tb) -> None:
        await self.aclose()

    @property
    def closed(self) -> bool:
        return self._closed or self._aborted

    async def _writer(self, outbox: MemoryObjectReceiveStream[WebSocketMessage]) -> None:
        with anyio.CancelScope() as self._writer_scope:
            async with outbox:
                async for message in outbox:
                    if self._aborted:
                        break
                    try:
                        await self._ws.send_text(
                            Envelope(message=message).model_dump_json()
                        )
                    except (
                        WebSocketDisconnect,
                        anyio.BrokenResourceError,
                        anyio.ClosedResourceError,
                    ) as e:
                        # Closing the outbox reader makes later sends fail fast
                        logger.debug(f"Stopped writing to closed websocket: {e!r}")
                        break

        with (
            anyio.move_on_after(CLOSE_TIMEOUT_SECS),
            contextlib.suppress(RuntimeError, WebSocketDisconnect),
        ):
            await self._ws.close()

    async def send_message(self, message: WebSocketMessage) -> None:
        await self._outbox.send(message)

    def send_message_nowait(self, message: WebSocketMessage) -> None:
        """
        Raises:
            anyio.WouldBlock: The queue is full.
            anyio.ClosedResourceError: The connection was closed or aborted.
            anyio.BrokenResourceError: The writer stopped.
        """
        self._outbox.send_nowait(message)

    async def receive_message(self) -> WebSocketMessage:
        raw = await self._ws.receive_text()
        return Envelope.model_validate_json(raw).message
