from datetime import datetime
from typing import Optional, Dict, Any, Literal, Annotated, Union

from pydantic import BaseModel, Field

from watch_party.session_registry.types import PlaybackState, Role

# WARNING: When adding new message types,
# be sure that type is unique across all message types.


class JoinMessage(BaseModel):
    """Request admission to a session, creating it when the id is omitted."""

    type: Literal["join"] = "join"
    timestamp: datetime = Field(default_factory=datetime.now)
    session_id: Optional[str] = Field(default=None, max_length=128)


class LeaveMessage(BaseModel):
    type: Literal["leave"] = "leave"
    timestamp: datetime = Field(default_factory=datetime.now)


class JoinedMessage(BaseModel):
    type: Literal["joined"] = "joined"
    timestamp: datetime = Field(default_factory=datetime.now)
    session_id: str
    role: Role
    content_reference: Optional[str] = None
    playback_state: Optional[PlaybackState] = None


class FullMessage(BaseModel):
    type: Literal["full"] = "full"
    timestamp: datetime = Field(default_factory=datetime.now)
    session_id: str


class PartnerArrivedMessage(BaseModel):
    type: Literal["partner_arrived"] = "partner_arrived"
    timestamp: datetime = Field(default_factory=datetime.now)
    peer_role: Role


class PartnerLeftMessage(BaseModel):
    type: Literal["partner_left"] = "partner_left"
    timestamp: datetime = Field(default_factory=datetime.now)


class SignalMessage(BaseModel):
    """
    Negotiation messages. Kept loose because the server only routes them,
    the clients' negotiation layer handles the details.
    """

    type: Literal["signal"] = "signal"
    timestamp: datetime = Field(default_factory=datetime.now)
    session_id: Optional[str] = None
    data: Dict[str, Any]


class ContentReferenceMessage(BaseModel):
    type: Literal["content_reference"] = "content_reference"
    timestamp: datetime = Field(default_factory=datetime.now)
    reference: str


class PlaybackStateMessage(BaseModel):
    type: Literal["playback_state"] = "playback_state"
    timestamp: datetime = Field(default_factory=datetime.now)
    state: PlaybackState


class ReactionMessage(BaseModel):
    type: Literal["reaction"] = "reaction"
    timestamp: datetime = Field(default_factory=datetime.now)
    token: str


class PingMessage(BaseModel):
    type: Literal["ping", "pong"] = "pong"
    timestamp: datetime = Field(default_factory=datetime.now)


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    timestamp: datetime = Field(default_factory=datetime.now)
    error_code: str
    message: str
    session_id: Optional[str] = None


WebSocketMessage = Union[
    JoinMessage,
    LeaveMessage,
    JoinedMessage,
    FullMessage,
    PartnerArrivedMessage,
    PartnerLeftMessage,
    SignalMessage,
    ContentReferenceMessage,
    PlaybackStateMessage,
    ReactionMessage,
    PingMessage,
    ErrorMessage,
]


class Envelope(BaseModel):
    message: Annotated[
        WebSocketMessage,
        Field(discriminator="type"),
    ]
