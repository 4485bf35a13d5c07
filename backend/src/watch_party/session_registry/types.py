from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal, NewType, Optional, Protocol, runtime_checkable, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from watch_party.messages import WebSocketMessage

#
## New Types
#
SessionId = NewType("SessionId", str)
ConnectionId = NewType("ConnectionId", str)

MAX_PARTICIPANTS = 2


class Role(StrEnum):
    """
    Negotiation role of a participant.

    The impolite side initiates offers and never yields on a collision,
    the polite side rolls back its own offer and answers instead.
    """

    POLITE = "polite"
    IMPOLITE = "impolite"

    @property
    def other(self) -> "Role":
        return Role.IMPOLITE if self is Role.POLITE else Role.POLITE


class PlaybackState(BaseModel):
    """Shared transport state of the content both participants are watching."""

    model_config = ConfigDict(frozen=True)

    is_playing: bool
    position_seconds: float = Field(ge=0)


@dataclass
class Participant:
    connection_id: ConnectionId
    joined_at: float
    role: Role


@dataclass
class Session:
    session_id: SessionId
    created_at: float
    participants: dict[ConnectionId, Participant] = field(default_factory=dict)
    content_reference: Optional[str] = None
    playback_state: Optional[PlaybackState] = None

    def other_participant(self, connection_id: ConnectionId) -> Optional[Participant]:
        for participant in self.participants.values():
            if participant.connection_id != connection_id:
                return participant
        return None


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only copy of a session handed out by the registry."""

    session_id: SessionId
    created_at: float
    participants: tuple[Participant, ...]
    content_reference: Optional[str]
    playback_state: Optional[PlaybackState]

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= MAX_PARTICIPANTS


@dataclass(frozen=True)
class JoinResult:
    session_id: SessionId
    role: Role
    content_reference: Optional[str] = None
    playback_state: Optional[PlaybackState] = None


@dataclass(frozen=True)
class Rejected:
    session_id: SessionId
    reason: Literal["full"] = "full"


@runtime_checkable
class WebSocketProtocol(Protocol):
    async def send_text(self, data: str) -> None: ...
    async def receive_text(self) -> str: ...
    async def close(self) -> None: ...


@runtime_checkable
class MessageSink(Protocol):
    """
    Outbound side of a transport connection, as seen by the registry.

    The registry holds its lock while queueing, so queueing never waits:
    a full queue raises `anyio.WouldBlock` and the registry aborts the
    connection instead.
    """

    def send_message_nowait(self, message: "WebSocketMessage") -> None: ...
    def abort(self) -> None: ...
