import logging
import time
from typing import Callable, Optional

import anyio
import anyio.abc
from ulid import ULID

from watch_party.messages import (
    FullMessage,
    JoinedMessage,
    PartnerArrivedMessage,
    PartnerLeftMessage,
    ContentReferenceMessage,
    PlaybackStateMessage,
    WebSocketMessage,
)
from watch_party.session_registry.types import (
    MAX_PARTICIPANTS,
    ConnectionId,
    JoinResult,
    MessageSink,
    Participant,
    PlaybackState,
    Rejected,
    Role,
    Session,
    SessionId,
    SessionSnapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_IDLE_SESSION_TTL = 24 * 60 * 60


class SessionRegistry:
    """
    Authoritative map of sessions, their two participants and shared state.

    Every mutation and every lookup used for routing happens under one lock,
    so admission checks, role assignment and peer resolution always observe
    a consistent snapshot. Notifications produced by an operation are queued
    to the participants' sinks before the lock is released, without ever
    waiting on a transport: a connection whose queue is full is aborted.
    """

    def __init__(
        self,
        *,
        idle_session_ttl: float = DEFAULT_IDLE_SESSION_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.lock = anyio.Lock()

        self._sessions: dict[SessionId, Session] = {}
        self._connection_sessions: dict[ConnectionId, SessionId] = {}
        self._sinks: dict[ConnectionId, MessageSink] = {}

        self._idle_session_ttl = idle_session_ttl
        self._clock = clock

        self._background_tg: anyio.abc.TaskGroup | None = None

    # ---------- connections ----------
    async def connect(self, connection_id: ConnectionId, sink: MessageSink) -> None:
        async with self.lock:
            assert connection_id not in self._sinks, (
                f"{connection_id} is already connected"
            )
            self._sinks[connection_id] = sink

    async def disconnect(self, connection_id: ConnectionId) -> None:
        """Leave whatever session the connection is in and forget its sink."""
        async with self.lock:
            self._leave_locked(connection_id)
            self._sinks.pop(connection_id, None)

    # ---------- membership ----------
    async def join(
        self, connection_id: ConnectionId, requested_session_id: Optional[str] = None
    ) -> JoinResult | Rejected:
        session_id = (
            SessionId(requested_session_id)
            if requested_session_id
            else self._new_session_id()
        )

        async with self.lock:
            current = self._connection_sessions.get(connection_id)
            session = self._sessions.get(session_id)

            if current == session_id:
                assert session is not None
                participant = session.participants[connection_id]
                logger.info(f"{connection_id} is already in session {session_id}")
                self._send_joined(connection_id, session, participant.role)
                return self._join_result(session, participant.role)

            if session is not None and len(session.participants) >= MAX_PARTICIPANTS:
                logger.info(f"Session {session_id} is full, rejecting {connection_id}")
                self._send(connection_id, FullMessage(session_id=session_id))
                return Rejected(session_id=session_id)

            if current is not None:
                self._leave_locked(connection_id)
                # Leaving may have emptied and deleted the target
                session = self._sessions.get(session_id)

            if session is None:
                logger.info(f"Creating new session {session_id}")
                session = Session(session_id=session_id, created_at=self._clock())
                self._sessions[session_id] = session

            role = self._free_role(session)
            session.participants[connection_id] = Participant(
                connection_id=connection_id, joined_at=self._clock(), role=role
            )
            self._connection_sessions[connection_id] = session_id
            self._check_roles(session)

            logger.info(
                f"{connection_id} joined session {session_id} as {role} "
                f"({len(session.participants)}/{MAX_PARTICIPANTS})"
            )

            self._send_joined(connection_id, session, role)

            if len(session.participants) == MAX_PARTICIPANTS:
                # Existing participant first, then the newcomer
                for participant in sorted(
                    session.participants.values(),
                    key=lambda p: p.connection_id == connection_id,
                ):
                    peer = session.other_participant(participant.connection_id)
                    assert peer is not None
                    self._send(
                        participant.connection_id,
                        PartnerArrivedMessage(peer_role=peer.role),
                    )

            return self._join_result(session, role)

    async def leave(self, connection_id: ConnectionId) -> None:
        async with self.lock:
            self._leave_locked(connection_id)

    # ---------- shared state ----------
    async def set_content_reference(
        self, connection_id: ConnectionId, reference: str
    ) -> None:
        async with self.lock:
            session = self._session_of(connection_id)
            if session is None:
                logger.debug(f"Ignoring content reference from {connection_id}")
                return
            session.content_reference = reference
            self._send_to_peer(
                session, connection_id, ContentReferenceMessage(reference=reference)
            )

    async def set_playback_state(
        self, connection_id: ConnectionId, state: PlaybackState
    ) -> None:
        async with self.lock:
            session = self._session_of(connection_id)
            if session is None:
                logger.debug(f"Ignoring playback state from {connection_id}")
                return
            session.playback_state = state
            self._send_to_peer(
                session, connection_id, PlaybackStateMessage(state=state)
            )

    # ---------- routing ----------
    async def deliver_to_peer(
        self, connection_id: ConnectionId, message: WebSocketMessage
    ) -> bool:
        """
        Delivers the message unchanged to the other participant.

        Returns:
            False when the sender is in no session, has no peer, or the peer's
            connection is already gone.
        """
        async with self.lock:
            session = self._session_of(connection_id)
            if session is None:
                logger.info(
                    f"Dropping {message.type} from {connection_id}: not in a session"
                )
                return False
            return self._send_to_peer(session, connection_id, message)

    # ---------- views ----------
    def describe_session(self, session_id: str) -> Optional[SessionSnapshot]:
        session = self._sessions.get(SessionId(session_id))
        if session is None:
            return None
        return SessionSnapshot(
            session_id=session.session_id,
            created_at=session.created_at,
            participants=tuple(
                Participant(p.connection_id, p.joined_at, p.role)
                for p in session.participants.values()
            ),
            content_reference=session.content_reference,
            playback_state=session.playback_state,
        )

    def session_of(self, connection_id: ConnectionId) -> Optional[SessionId]:
        return self._connection_sessions.get(connection_id)

    def session_count(self) -> int:
        return len(self._sessions)

    def connection_count(self) -> int:
        return len(self._sinks)

    # ---------- garbage collection ----------
    async def sweep_idle_sessions(self) -> int:
        """
        Removes empty sessions older than the idle TTL.

        Empty sessions are normally deleted the moment their last participant
        leaves; anything found here was leaked.
        """
        async with self.lock:
            now = self._clock()
            stale = [
                session_id
                for session_id, session in self._sessions.items()
                if not session.participants
                and now - session.created_at > self._idle_session_ttl
            ]
            for session_id in stale:
                del self._sessions[session_id]

        if stale:
            logger.warning(f"Swept {len(stale)} leaked empty session(s): {stale}")
        return len(stale)

    async def start_background_services(self, sweep_interval: float) -> None:
        """
        Starts the periodic idle-session sweep.
        Call this once on app startup (FastAPI lifespan).
        """
        if self._background_tg is not None:
            return  # already started

        self._background_tg = await anyio.create_task_group().__aenter__()
        self._background_tg.start_soon(self._sweep_loop, sweep_interval)

    async def stop_background_services(self) -> None:
        if self._background_tg is None:
            return

        self._background_tg.cancel_scope.cancel()
        await self._background_tg.__aexit__(None, None, None)
        self._background_tg = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await anyio.sleep(interval)
            try:
                await self.sweep_idle_sessions()
            except Exception:
                # Never let a failed sweep kill the loop
                logger.exception("Idle session sweep failed")

    # ---------- internals (lock held) ----------
    def _leave_locked(self, connection_id: ConnectionId) -> None:
        session_id = self._connection_sessions.pop(connection_id, None)
        if session_id is None:
            return

        session = self._sessions[session_id]
        del session.participants[connection_id]
        logger.info(f"{connection_id} left session {session_id}")

        if not session.participants:
            logger.info(f"Removing empty session {session_id}")
            del self._sessions[session_id]
            return

        for participant in session.participants.values():
            self._send(participant.connection_id, PartnerLeftMessage())

    def _session_of(self, connection_id: ConnectionId) -> Optional[Session]:
        session_id = self._connection_sessions.get(connection_id)
        if session_id is None:
            return None
        return self._sessions[session_id]

    def _send_to_peer(
        self, session: Session, connection_id: ConnectionId, message: WebSocketMessage
    ) -> bool:
        peer = session.other_participant(connection_id)
        if peer is None:
            logger.info(
                f"Dropping {message.type} from {connection_id}: "
                f"no partner in session {session.session_id}"
            )
            return False
        return self._send(peer.connection_id, message)

    def _send(self, connection_id: ConnectionId, message: WebSocketMessage) -> bool:
        sink = self._sinks.get(connection_id)
        if sink is None:
            logger.debug(f"No sink for {connection_id}, dropping {message.type}")
            return False
        try:
            sink.send_message_nowait(message)
        except anyio.WouldBlock:
            # Never wait under the lock; a full queue means the client
            # stopped reading.
            logger.warning(
                f"{connection_id} is not keeping up, dropping its connection"
            )
            sink.abort()
            return False
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            logger.warning(
                f"Failed to deliver {message.type} to {connection_id}: {e!r}"
            )
            return False
        return True

    def _send_joined(
        self, connection_id: ConnectionId, session: Session, role: Role
    ) -> None:
        self._send(
            connection_id,
            JoinedMessage(
                session_id=session.session_id,
                role=role,
                content_reference=session.content_reference,
                playback_state=session.playback_state,
            ),
        )

    @staticmethod
    def _free_role(session: Session) -> Role:
        taken = {p.role for p in session.participants.values()}
        return Role.POLITE if Role.POLITE not in taken else Role.IMPOLITE

    @staticmethod
    def _check_roles(session: Session) -> None:
        roles = [p.role for p in session.participants.values()]
        assert len(roles) <= MAX_PARTICIPANTS, (
            f"Session {session.session_id} holds {len(roles)} participants"
        )
        assert len(roles) == len(set(roles)), (
            f"Session {session.session_id} has duplicate roles {roles}"
        )

    @staticmethod
    def _join_result(session: Session, role: Role) -> JoinResult:
        return JoinResult(
            session_id=session.session_id,
            role=role,
            content_reference=session.content_reference,
            playback_state=session.playback_state,
        )

    def _new_session_id(self) -> SessionId:
        session_id = SessionId(str(ULID()).lower())
        assert session_id not in self._sessions
        return session_id
