import logging
from typing import Callable, Optional, Sequence

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamTrack
from aiortc.sdp import candidate_from_sdp

from watch_party.negotiation.types import (
    IceCandidate,
    LocalMediaSource,
    LocalResourceUnavailable,
    SessionDescription,
)

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS: tuple[str, ...] = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)

type OnRemoteTrack = Callable[[MediaStreamTrack], None]


class AiortcPeer:
    """
    PeerConnection backed by aiortc.

    aiortc gathers candidates before a description is returned, so local
    candidates travel inside the SDP and are never trickled.
    """

    def __init__(
        self,
        *,
        ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS,
        on_remote_track: Optional[OnRemoteTrack] = None,
    ):
        self._configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers]
        )
        self._on_remote_track = on_remote_track
        self._local_tracks: list[MediaStreamTrack] = []
        self._pc = self._create_connection()

    def _create_connection(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._configuration)

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            logger.info(f"Received remote track: {track.kind}")
            if self._on_remote_track is not None:
                self._on_remote_track(track)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"Connection state: {pc.connectionState}")

        for track in self._local_tracks:
            pc.addTrack(track)
        return pc

    async def produce_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return SessionDescription(type="offer", sdp=self._pc.localDescription.sdp)

    async def produce_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return SessionDescription(type="answer", sdp=self._pc.localDescription.sdp)

    async def apply_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def rollback(self) -> None:
        # aiortc cannot roll a local description back; start over on a fresh
        # connection carrying the same local tracks.
        logger.info("Replacing peer connection to discard local offer")
        old = self._pc
        self._pc = self._create_connection()
        await old.close()

    async def add_candidate(self, candidate: IceCandidate) -> None:
        if not candidate.candidate:
            # End-of-candidates marker
            return

        ice_candidate = candidate_from_sdp(
            candidate.candidate.removeprefix("candidate:")
        )
        ice_candidate.sdpMid = candidate.sdp_mid
        ice_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice_candidate)

    async def add_local_media(self, tracks: Sequence[MediaStreamTrack]) -> None:
        for track in tracks:
            logger.info(f"Adding local track: {track.kind}")
            self._local_tracks.append(track)
            self._pc.addTrack(track)

    async def close(self) -> None:
        for track in self._local_tracks:
            track.stop()
        self._local_tracks.clear()
        await self._pc.close()


def media_player_source(
    file: str, format: Optional[str] = None, options: Optional[dict[str, str]] = None
) -> LocalMediaSource:
    """
    Local media from a device or file, e.g.
    media_player_source("/dev/video0", format="v4l2").
    """

    async def acquire() -> list[MediaStreamTrack]:
        try:
            player = MediaPlayer(file, format=format, options=options or {})
        except Exception as e:
            raise LocalResourceUnavailable(f"Cannot open {file}: {e}") from e
        return [track for track in (player.audio, player.video) if track is not None]

    return acquire
