from enum import StrEnum
from typing import (
    Annotated,
    Any,
    Awaitable,
    Callable,
    Literal,
    Optional,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class SignalingPhase(StrEnum):
    IDLE = "idle"
    HAVE_LOCAL_OFFER = "have_local_offer"
    HAVE_REMOTE_OFFER = "have_remote_offer"
    STABLE = "stable"
    CLOSED = "closed"


class SessionDescription(BaseModel):
    """An offer or answer, opaque apart from its type."""

    model_config = ConfigDict(frozen=True)

    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    """Connectivity candidate in the shape browsers emit it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")


#
# Payloads carried in SignalMessage.data
#
class OfferSignal(BaseModel):
    type: Literal["offer"] = "offer"
    sdp: str

    def description(self) -> SessionDescription:
        return SessionDescription(type="offer", sdp=self.sdp)


class AnswerSignal(BaseModel):
    type: Literal["answer"] = "answer"
    sdp: str

    def description(self) -> SessionDescription:
        return SessionDescription(type="answer", sdp=self.sdp)


class CandidateSignal(BaseModel):
    type: Literal["candidate"] = "candidate"
    candidate: IceCandidate


class RestartSignal(BaseModel):
    """Sent by the polite side to have the impolite side offer afresh."""

    type: Literal["restart"] = "restart"


type AnySignal = OfferSignal | AnswerSignal | CandidateSignal | RestartSignal


SignalPayload = Annotated[
    Union[OfferSignal, AnswerSignal, CandidateSignal, RestartSignal],
    Field(discriminator="type"),
]

_signal_adapter: TypeAdapter[AnySignal] = TypeAdapter(SignalPayload)


def parse_signal(data: dict[str, Any]) -> AnySignal:
    """
    Raises:
        pydantic.ValidationError: If the payload is not a known signal.
    """
    return _signal_adapter.validate_python(data)


def dump_signal(payload: AnySignal) -> dict[str, Any]:
    return payload.model_dump(mode="json", by_alias=True)


class NegotiationFailed(Exception):
    """A peer operation failed while producing or applying negotiation state."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        super().__init__(f"{operation} failed: {cause!r}")
        self.operation = operation
        self.__cause__ = cause


class LocalResourceUnavailable(Exception):
    """Local media could not be acquired."""


@runtime_checkable
class PeerConnection(Protocol):
    """
    The media stack the state machine drives. Any failure is reported by
    raising; the state machine never inspects descriptions or candidates.
    """

    async def produce_offer(self) -> SessionDescription:
        """Creates an offer and applies it as the local description."""
        ...

    async def produce_answer(self) -> SessionDescription:
        """Creates an answer and applies it as the local description."""
        ...

    async def apply_remote_description(self, description: SessionDescription) -> None: ...
    async def rollback(self) -> None: ...
    async def add_candidate(self, candidate: IceCandidate) -> None: ...
    async def add_local_media(self, tracks: Sequence[Any]) -> None: ...
    async def close(self) -> None: ...


type SendSignal = Callable[[AnySignal], Awaitable[None]]
type OnNegotiationFailed = Callable[[NegotiationFailed], Awaitable[None]]
type PeerFactory = Callable[[], PeerConnection]
type LocalMediaSource = Callable[[], Awaitable[Sequence[Any]]]
