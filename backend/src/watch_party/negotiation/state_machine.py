"""
Perfect-negotiation state machine run by each participant.

Turns the asynchronous, possibly colliding stream of offers, answers and
candidates coming from the other participant into one converged (and
renegotiable) peer connection. Roles decide collisions: the impolite side
keeps its own offer and ignores the remote one, the polite side rolls back
and answers. After a failure either side can `restart`; only the impolite
side ever re-offers.
"""

import logging
from typing import Any, Optional, Sequence

import anyio

from watch_party.negotiation.candidate_buffer import CandidateBuffer
from watch_party.negotiation.types import (
    AnySignal,
    AnswerSignal,
    CandidateSignal,
    IceCandidate,
    NegotiationFailed,
    OfferSignal,
    OnNegotiationFailed,
    PeerConnection,
    RestartSignal,
    SendSignal,
    SessionDescription,
    SignalingPhase,
)
from watch_party.session_registry.types import Role

logger = logging.getLogger(__name__)

# Phases from which a new offer may be produced or a remote offer accepted
# without a collision.
_SETTLED = (SignalingPhase.IDLE, SignalingPhase.STABLE)


class NegotiationStateMachine:
    def __init__(
        self,
        peer: PeerConnection,
        role: Role,
        send_signal: SendSignal,
        on_failed: Optional[OnNegotiationFailed] = None,
    ):
        self.peer = peer
        self.role = role
        self.phase = SignalingPhase.IDLE
        self.making_offer = False
        self.has_remote_description = False
        # Set while the last remote offer was discarded by the impolite side
        self.ignore_offer = False
        self.candidates = CandidateBuffer()

        self._send_signal = send_signal
        self._on_failed = on_failed

        # Serialises every operation on the peer, in arrival order.
        self._lock = anyio.Lock()

    @property
    def polite(self) -> bool:
        return self.role is Role.POLITE

    @property
    def closed(self) -> bool:
        return self.phase is SignalingPhase.CLOSED

    # ---------- local inputs ----------
    async def negotiation_needed(self) -> bool:
        """
        Renegotiation trigger, fired whenever tracks or transport parameters
        change. Only the impolite side turns it into an offer.

        Returns:
            True if an offer was sent.
        """
        if self.role is not Role.IMPOLITE:
            logger.debug("Negotiation needed; polite side waits for an offer")
            return False
        return await self.make_offer()

    async def make_offer(self) -> bool:
        """
        Produces and sends a local offer, whatever our role.

        Refused while another offer is being produced or a round is in
        flight.
        """
        if self.closed:
            logger.warning("Not offering: negotiation is closed")
            return False
        if self.making_offer or self.phase not in _SETTLED:
            logger.debug(
                f"Not offering: making_offer={self.making_offer} phase={self.phase}"
            )
            return False

        # Set before waiting on the lock so a remote offer arriving in the
        # meantime is seen as a collision.
        self.making_offer = True
        failure: Optional[NegotiationFailed] = None
        try:
            async with self._lock:
                if self.phase not in _SETTLED:
                    return False
                try:
                    offer = await self.peer.produce_offer()
                except Exception as e:
                    failure = NegotiationFailed("produce offer", e)
                else:
                    if self.closed:
                        return False
                    self.phase = SignalingPhase.HAVE_LOCAL_OFFER
                    logger.info(f"Sending offer ({self.role})")
                    await self._send_signal(OfferSignal(sdp=offer.sdp))
        finally:
            self.making_offer = False

        if failure is not None:
            await self._report([failure])
            return False
        return True

    async def add_local_media(self, tracks: Sequence[Any]) -> None:
        if self.closed:
            logger.warning("Not adding local media: negotiation is closed")
            return

        async with self._lock:
            try:
                await self.peer.add_local_media(tracks)
            except Exception as e:
                failure = NegotiationFailed("add local media", e)
            else:
                failure = None

        if failure is not None:
            await self._report([failure])
            return
        await self.negotiation_needed()

    async def restart(self) -> bool:
        """
        Starts negotiation over after a failure. The impolite side drops any
        outstanding offer and offers again; the polite side cannot offer, so
        it asks the impolite side to.

        Returns:
            True if an offer or a restart request was sent.
        """
        if self.closed:
            logger.warning("Not restarting: negotiation is closed")
            return False
        if self.polite:
            logger.info("Asking the impolite side to restart negotiation")
            await self._send_signal(RestartSignal())
            return True

        async with self._lock:
            failure = await self._discard_local_offer()
        if failure is not None:
            await self._report([failure])
            return False
        return await self.make_offer()

    async def close(self) -> None:
        """
        Terminal. State is torn down before the first suspension point, so
        nothing in flight can act on this negotiation afterwards.
        """
        if self.closed:
            return
        self.phase = SignalingPhase.CLOSED
        self.making_offer = False
        self.candidates.clear()
        logger.info(f"Negotiation closed ({self.role})")

        try:
            await self.peer.close()
        except Exception:
            logger.exception("Failed to close peer connection")

    # ---------- remote inputs ----------
    async def handle_signal(self, payload: AnySignal) -> None:
        if self.closed:
            logger.warning(f"Ignoring {payload.type}: negotiation is closed")
            return

        if isinstance(payload, OfferSignal):
            await self._handle_offer(payload.description())
        elif isinstance(payload, AnswerSignal):
            await self._handle_answer(payload.description())
        elif isinstance(payload, CandidateSignal):
            await self._handle_candidate(payload.candidate)
        elif isinstance(payload, RestartSignal):
            if self.polite:
                logger.warning("Ignoring restart request: polite side never offers")
                return
            await self.restart()
        else:
            logger.warning(f"Unknown signal: {payload!r}")

    async def _handle_offer(self, description: SessionDescription) -> None:
        collision = self.making_offer or self.phase not in _SETTLED
        self.ignore_offer = not self.polite and collision
        if self.ignore_offer:
            logger.info("Ignoring colliding offer; impolite side keeps its own")
            return

        async with self._lock:
            failures = await self._accept_offer(description)
        await self._report(failures)

    async def _accept_offer(
        self, description: SessionDescription
    ) -> list[NegotiationFailed]:
        if self.closed:
            logger.warning("Ignoring offer: negotiation is closed")
            return []

        if self.phase not in _SETTLED:
            logger.info(f"Rolling back from {self.phase} to accept remote offer")
            try:
                await self.peer.rollback()
            except Exception as e:
                return [NegotiationFailed("rollback", e)]
            self.phase = self._settled_phase()

        had_remote_description = self.has_remote_description
        try:
            await self.peer.apply_remote_description(description)
        except Exception as e:
            return [NegotiationFailed("apply remote offer", e)]
        if self.closed:
            return []
        self.has_remote_description = True
        self.phase = SignalingPhase.HAVE_REMOTE_OFFER

        failures = await self._drain_candidates()

        try:
            answer = await self.peer.produce_answer()
        except Exception as e:
            failure = NegotiationFailed("produce answer", e)
            await self._abandon_remote_offer(had_remote_description)
            return [failure, *failures]
        if self.closed:
            return failures

        self.phase = SignalingPhase.STABLE
        logger.info(f"Sending answer ({self.role})")
        await self._send_signal(AnswerSignal(sdp=answer.sdp))
        return failures

    async def _handle_answer(self, description: SessionDescription) -> None:
        async with self._lock:
            failures = await self._accept_answer(description)
        await self._report(failures)

    async def _accept_answer(
        self, description: SessionDescription
    ) -> list[NegotiationFailed]:
        if self.closed:
            logger.warning("Ignoring answer: negotiation is closed")
            return []
        if self.phase is not SignalingPhase.HAVE_LOCAL_OFFER:
            # Stale or duplicate answer
            logger.info(f"Ignoring answer in phase {self.phase}")
            return []

        try:
            await self.peer.apply_remote_description(description)
        except Exception as e:
            failure = NegotiationFailed("apply remote answer", e)
            # Drop the unanswerable offer so a retry can start over.
            try:
                await self.peer.rollback()
            except Exception:
                logger.exception("Rollback after failed answer failed")
            else:
                self.phase = self._settled_phase()
            return [failure]
        if self.closed:
            return []

        self.has_remote_description = True
        self.phase = SignalingPhase.STABLE
        return await self._drain_candidates()

    async def _handle_candidate(self, candidate: IceCandidate) -> None:
        async with self._lock:
            if self.closed:
                return
            if not self.has_remote_description:
                self.candidates.push(candidate)
                logger.debug(f"Buffered candidate ({len(self.candidates)} pending)")
                return
            failure = await self._apply_candidate(candidate)

        if failure is not None:
            await self._report([failure])

    # ---------- helpers (lock held) ----------
    async def _drain_candidates(self) -> list[NegotiationFailed]:
        pending = self.candidates.drain()
        if pending:
            logger.info(f"Applying {len(pending)} buffered candidate(s)")

        failures: list[NegotiationFailed] = []
        for candidate in pending:
            if self.closed:
                break
            failure = await self._apply_candidate(candidate)
            if failure is not None:
                failures.append(failure)
        return failures

    async def _apply_candidate(
        self, candidate: IceCandidate
    ) -> Optional[NegotiationFailed]:
        try:
            await self.peer.add_candidate(candidate)
        except Exception as e:
            if self.ignore_offer:
                # Candidates of an offer we chose to ignore may not apply
                logger.debug(f"Ignoring candidate failure: {e!r}")
                return None
            return NegotiationFailed("add candidate", e)
        return None

    async def _discard_local_offer(self) -> Optional[NegotiationFailed]:
        if self.phase is not SignalingPhase.HAVE_LOCAL_OFFER:
            return None
        logger.info("Discarding outstanding local offer")
        try:
            await self.peer.rollback()
        except Exception as e:
            return NegotiationFailed("rollback", e)
        self.phase = self._settled_phase()
        return None

    async def _abandon_remote_offer(self, had_remote_description: bool) -> None:
        """Back to the settled phase after a remote offer could not be answered."""
        try:
            await self.peer.rollback()
        except Exception:
            logger.exception("Rollback of unanswered offer failed")
            return
        self.has_remote_description = had_remote_description
        self.phase = self._settled_phase()

    def _settled_phase(self) -> SignalingPhase:
        if self.has_remote_description:
            return SignalingPhase.STABLE
        return SignalingPhase.IDLE

    # ---------- failure reporting (lock released) ----------
    async def _report(self, failures: list[NegotiationFailed]) -> None:
        if not failures:
            return
        first, *rest = failures
        for failure in rest:
            logger.warning(f"Additional negotiation failure: {failure}")

        logger.warning(f"Negotiation failed ({self.role}): {first}")
        if self._on_failed is not None:
            await self._on_failed(first)
