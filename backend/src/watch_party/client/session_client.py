import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

import anyio
import anyio.abc
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from watch_party.messages import (
    ContentReferenceMessage,
    ErrorMessage,
    FullMessage,
    JoinMessage,
    JoinedMessage,
    LeaveMessage,
    PartnerArrivedMessage,
    PartnerLeftMessage,
    PingMessage,
    PlaybackStateMessage,
    ReactionMessage,
    SignalMessage,
    WebSocketMessage,
)
from watch_party.negotiation.state_machine import NegotiationStateMachine
from watch_party.negotiation.types import (
    AnySignal,
    CandidateSignal,
    IceCandidate,
    LocalMediaSource,
    NegotiationFailed,
    PeerFactory,
    dump_signal,
    parse_signal,
)
from watch_party.session_registry.concurrent_websocket import ConcurrentWebSocket
from watch_party.session_registry.types import PlaybackState, Role, WebSocketProtocol

logger = logging.getLogger(__name__)

# Hook type definitions
OnJoinedHook = Callable[[JoinedMessage], Awaitable[None]]
OnFullHook = Callable[[FullMessage], Awaitable[None]]
OnPartnerArrivedHook = Callable[[PartnerArrivedMessage], Awaitable[None]]
OnPartnerLeftHook = Callable[[], Awaitable[None]]
OnContentReferenceHook = Callable[[str], Awaitable[None]]
OnPlaybackStateHook = Callable[[PlaybackState], Awaitable[None]]
OnReactionHook = Callable[[str], Awaitable[None]]
OnFaultHook = Callable[[NegotiationFailed], Awaitable[None]]


class SessionClient:
    """
    One participant's side of a session.

    Talks to the signaling server over a websocket and owns the negotiation
    state machine of the current pairing. A fresh machine is created each
    time a partner arrives and closed when the partner leaves.

    Usage:
        async with SessionClient(ws, peer_factory) as client:
            client.set_hooks(on_partner_arrived=...)
            await client.join("movie-night")
            await client.run()
    """

    def __init__(
        self,
        websocket: WebSocketProtocol,
        peer_factory: PeerFactory,
        *,
        local_media: Optional[LocalMediaSource] = None,
        max_negotiation_retries: int = 1,
        message_buffer_size: int = 256,
    ):
        self._cws = ConcurrentWebSocket(
            websocket, message_buffer_size=message_buffer_size
        )
        self._peer_factory = peer_factory
        self._local_media = local_media
        self._max_negotiation_retries = max_negotiation_retries

        self.session_id: Optional[str] = None
        self.role: Optional[Role] = None
        self.content_reference: Optional[str] = None
        self.playback_state: Optional[PlaybackState] = None
        self.negotiation: Optional[NegotiationStateMachine] = None

        self._negotiation_failures = 0
        self._task_group: anyio.abc.TaskGroup | None = None

        self._on_joined: Optional[OnJoinedHook] = None
        self._on_full: Optional[OnFullHook] = None
        self._on_partner_arrived: Optional[OnPartnerArrivedHook] = None
        self._on_partner_left: Optional[OnPartnerLeftHook] = None
        self._on_content_reference: Optional[OnContentReferenceHook] = None
        self._on_playback_state: Optional[OnPlaybackStateHook] = None
        self._on_reaction: Optional[OnReactionHook] = None
        self._on_fault: Optional[OnFaultHook] = None

    def set_hooks(
        self,
        on_joined: Optional[OnJoinedHook] = None,
        on_full: Optional[OnFullHook] = None,
        on_partner_arrived: Optional[OnPartnerArrivedHook] = None,
        on_partner_left: Optional[OnPartnerLeftHook] = None,
        on_content_reference: Optional[OnContentReferenceHook] = None,
        on_playback_state: Optional[OnPlaybackStateHook] = None,
        on_reaction: Optional[OnReactionHook] = None,
        on_fault: Optional[OnFaultHook] = None,
    ):
        """Set hook functions"""
        self._on_joined = on_joined
        self._on_full = on_full
        self._on_partner_arrived = on_partner_arrived
        self._on_partner_left = on_partner_left
        self._on_content_reference = on_content_reference
        self._on_playback_state = on_playback_state
        self._on_reaction = on_reaction
        self._on_fault = on_fault

    # ---------- lifecycle ----------
    async def start(self) -> "SessionClient":
        if self._task_group is not None:
            return self
        await self._cws.start()
        self._task_group = await anyio.create_task_group().__aenter__()
        return self

    async def aclose(self) -> None:
        await self._end_negotiation()

        if self._task_group is not None:
            self._task_group.cancel_scope.cancel()
            await self._task_group.__aexit__(None, None, None)
            self._task_group = None

        await self._cws.aclose()

    async def __aenter__(self) -> "SessionClient":
        return await self.start()

    async def __aexit__(self, et, ev, tb) -> None:
        await self.aclose()

    async def run(self) -> None:
        """Handle server messages until the server goes away."""
        try:
            while True:
                try:
                    message = await self._cws.receive_message()
                except ValidationError as e:
                    logger.warning(f"Dropping malformed server message: {e}")
                    continue
                await self.handle_message(message)
        except WebSocketDisconnect:
            logger.info("Disconnected from signaling server")
        finally:
            await self._end_negotiation()

    # ---------- commands ----------
    async def join(self, session_id: Optional[str] = None) -> None:
        await self._send(JoinMessage(session_id=session_id))

    async def leave(self) -> None:
        await self._end_negotiation()
        self.session_id = None
        self.role = None
        await self._send(LeaveMessage())

    async def set_content_reference(self, reference: str) -> None:
        self.content_reference = reference
        await self._send(ContentReferenceMessage(reference=reference))

    async def set_playback_state(self, state: PlaybackState) -> None:
        self.playback_state = state
        await self._send(PlaybackStateMessage(state=state))

    async def send_reaction(self, token: str) -> None:
        await self._send(ReactionMessage(token=token))

    async def add_local_media(self, tracks: Sequence[Any]) -> None:
        machine = self.negotiation
        if machine is None:
            logger.info("No partner yet; local media is added when one arrives")
            return
        await machine.add_local_media(tracks)

    async def send_local_candidate(self, candidate: IceCandidate) -> None:
        """Entry point for peers that trickle their local candidates."""
        machine = self.negotiation
        if machine is None or machine.closed:
            logger.debug("Dropping local candidate: no active negotiation")
            return
        await self._send_signal(CandidateSignal(candidate=candidate))

    # ---------- server messages ----------
    async def handle_message(self, message: WebSocketMessage) -> None:
        if isinstance(message, SignalMessage):
            await self._handle_signal(message)
        elif isinstance(message, JoinedMessage):
            await self._handle_joined(message)
        elif isinstance(message, PartnerArrivedMessage):
            await self._handle_partner_arrived(message)
        elif isinstance(message, PartnerLeftMessage):
            logger.info("Partner left")
            await self._end_negotiation()
            if self._on_partner_left:
                await self._on_partner_left()
        elif isinstance(message, FullMessage):
            logger.info(f"Session {message.session_id} is full")
            if self._on_full:
                await self._on_full(message)
        elif isinstance(message, ContentReferenceMessage):
            self.content_reference = message.reference
            if self._on_content_reference:
                await self._on_content_reference(message.reference)
        elif isinstance(message, PlaybackStateMessage):
            self.playback_state = message.state
            if self._on_playback_state:
                await self._on_playback_state(message.state)
        elif isinstance(message, ReactionMessage):
            if self._on_reaction:
                await self._on_reaction(message.token)
        elif isinstance(message, ErrorMessage):
            logger.warning(f"Server error {message.error_code}: {message.message}")
        elif isinstance(message, PingMessage):
            pass
        else:
            logger.warning(f"Unexpected message from server: {message.type}")

    async def _handle_joined(self, message: JoinedMessage) -> None:
        logger.info(f"Joined session {message.session_id} as {message.role}")
        self.session_id = message.session_id
        self.role = message.role
        self.content_reference = message.content_reference
        self.playback_state = message.playback_state
        if self._on_joined:
            await self._on_joined(message)

    async def _handle_partner_arrived(self, message: PartnerArrivedMessage) -> None:
        role = self.role
        if role is None or message.peer_role is not role.other:
            logger.error(
                f"Ignoring partner_arrived with peer role {message.peer_role} "
                f"while our role is {role}"
            )
            return

        logger.info(f"Partner arrived ({message.peer_role})")
        await self._end_negotiation()
        self._negotiation_failures = 0

        machine = NegotiationStateMachine(
            self._peer_factory(),
            role,
            send_signal=self._send_signal,
            on_failed=self._handle_negotiation_failed,
        )
        self.negotiation = machine

        tracks = await self._acquire_local_media()

        if self._on_partner_arrived:
            await self._on_partner_arrived(message)

        if tracks:
            await machine.add_local_media(tracks)
        else:
            await machine.negotiation_needed()

    async def _handle_signal(self, message: SignalMessage) -> None:
        machine = self.negotiation
        if machine is None:
            logger.info("Dropping signal: no partner")
            return

        try:
            payload = parse_signal(message.data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed signal: {e}")
            return

        await machine.handle_signal(payload)

    # ---------- negotiation plumbing ----------
    async def _acquire_local_media(self) -> list[Any]:
        if self._local_media is None:
            return []
        try:
            return list(await self._local_media())
        except Exception as e:
            logger.warning(f"Local media unavailable, negotiating without it: {e}")
            return []

    async def _handle_negotiation_failed(self, error: NegotiationFailed) -> None:
        self._negotiation_failures += 1
        machine = self.negotiation

        if (
            self._negotiation_failures <= self._max_negotiation_retries
            and machine is not None
            and not machine.closed
        ):
            logger.warning(f"{error}; renegotiating")
            assert self._task_group is not None, "SessionClient was not started"
            # Called from inside the machine, so retry from a separate task
            self._task_group.start_soon(self._retry_negotiation, machine)
            return

        logger.error(
            f"Negotiation failed after {self._negotiation_failures} attempt(s): {error}"
        )
        if self._on_fault:
            await self._on_fault(error)

    async def _retry_negotiation(self, machine: NegotiationStateMachine) -> None:
        if machine is not self.negotiation:
            return
        await machine.restart()

    async def _end_negotiation(self) -> None:
        machine = self.negotiation
        self.negotiation = None
        if machine is not None:
            with anyio.CancelScope(shield=True):
                await machine.close()

    async def _send_signal(
        self, payload: AnySignal
    ) -> None:
        await self._send(
            SignalMessage(session_id=self.session_id, data=dump_signal(payload))
        )

    async def _send(self, message: WebSocketMessage) -> None:
        try:
            await self._cws.send_message(message)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            logger.warning(f"Cannot send {message.type}, connection closed: {e!r}")
