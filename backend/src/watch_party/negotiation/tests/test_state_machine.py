import anyio
import pytest

from watch_party.negotiation.state_machine import NegotiationStateMachine
from watch_party.negotiation.types import (
    AnySignal,
    AnswerSignal,
    CandidateSignal,
    NegotiationFailed,
    OfferSignal,
    RestartSignal,
    SignalingPhase,
)
from watch_party.session_registry.types import Role
from watch_party.tests.shared import FakePeer, candidate, settle

pytestmark = pytest.mark.anyio


class Side:
    """A machine plus everything it sent and every failure it reported."""

    def __init__(self, role: Role, name: str):
        self.peer = FakePeer(name)
        self.sent: list[AnySignal] = []
        self.failures: list[NegotiationFailed] = []
        self.machine = NegotiationStateMachine(
            self.peer, role, send_signal=self._send, on_failed=self._failed
        )

    async def _send(self, payload):
        self.sent.append(payload)

    async def _failed(self, error: NegotiationFailed):
        self.failures.append(error)

    def last_sent(self, kind: type):
        return [p for p in self.sent if isinstance(p, kind)][-1]


@pytest.fixture
def polite() -> Side:
    return Side(Role.POLITE, "a")


@pytest.fixture
def impolite() -> Side:
    return Side(Role.IMPOLITE, "b")


async def test_impolite_side_offers_when_negotiation_is_needed(impolite: Side):
    assert await impolite.machine.negotiation_needed()

    assert impolite.machine.phase is SignalingPhase.HAVE_LOCAL_OFFER
    assert impolite.sent == [OfferSignal(sdp="offer-b-1")]
    assert impolite.machine.making_offer is False


async def test_polite_side_waits_for_an_offer(polite: Side):
    assert not await polite.machine.negotiation_needed()

    assert polite.machine.phase is SignalingPhase.IDLE
    assert polite.sent == []
    assert "produce_offer" not in polite.peer.calls


async def test_offer_answer_round_reaches_stable(polite: Side, impolite: Side):
    await impolite.machine.negotiation_needed()
    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))

    assert polite.machine.phase is SignalingPhase.STABLE
    answer = polite.last_sent(AnswerSignal)
    assert answer.sdp == "answer-a-to-offer-b-1"

    await impolite.machine.handle_signal(answer)

    assert impolite.machine.phase is SignalingPhase.STABLE
    assert impolite.peer.remote_descriptions[-1].sdp == answer.sdp


async def test_renegotiation_after_stable(polite: Side, impolite: Side):
    await impolite.machine.negotiation_needed()
    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))
    await impolite.machine.handle_signal(polite.last_sent(AnswerSignal))

    # Track change on the impolite side
    await impolite.machine.add_local_media(["video"])
    assert impolite.last_sent(OfferSignal).sdp == "offer-b-2"

    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))
    await impolite.machine.handle_signal(polite.last_sent(AnswerSignal))

    assert polite.machine.phase is SignalingPhase.STABLE
    assert impolite.machine.phase is SignalingPhase.STABLE
    assert polite.peer.rollbacks == 0
    assert impolite.peer.local_media == ["video"]


@pytest.mark.parametrize("polite_receives_first", [True, False])
async def test_glare_resolves_to_impolite_offer(
    polite: Side, impolite: Side, polite_receives_first: bool
):
    # Both sides offer at the same instant
    assert await polite.machine.make_offer()
    assert await impolite.machine.make_offer()
    polite_offer = polite.last_sent(OfferSignal)
    impolite_offer = impolite.last_sent(OfferSignal)

    if polite_receives_first:
        await polite.machine.handle_signal(impolite_offer)
        await impolite.machine.handle_signal(polite_offer)
    else:
        await impolite.machine.handle_signal(polite_offer)
        await polite.machine.handle_signal(impolite_offer)

    # Impolite side ignored the polite offer entirely
    assert impolite.machine.ignore_offer
    assert impolite.peer.remote_descriptions == []
    assert impolite.machine.phase is SignalingPhase.HAVE_LOCAL_OFFER

    # Polite side rolled back and answered the impolite offer
    assert polite.peer.rollbacks == 1
    assert polite.machine.phase is SignalingPhase.STABLE
    assert polite.peer.remote_descriptions[-1].sdp == impolite_offer.sdp

    await impolite.machine.handle_signal(polite.last_sent(AnswerSignal))

    assert impolite.machine.phase is SignalingPhase.STABLE
    assert impolite.peer.remote_descriptions[-1].sdp == "answer-a-to-offer-b-1"
    assert polite.failures == [] and impolite.failures == []


async def test_glare_while_polite_offer_is_still_being_produced(
    polite: Side, impolite: Side
):
    polite.peer.offer_gate = anyio.Event()

    async with anyio.create_task_group() as tg:
        tg.start_soon(polite.machine.make_offer)
        await settle()
        assert polite.machine.making_offer

        await impolite.machine.make_offer()
        tg.start_soon(polite.machine.handle_signal, impolite.last_sent(OfferSignal))
        await settle()

        # The remote offer waits for the local offer to finish
        assert polite.peer.remote_descriptions == []

        polite.peer.offer_gate.set()

    assert [p.type for p in polite.sent] == ["offer", "answer"]
    assert polite.peer.rollbacks == 1
    assert polite.machine.phase is SignalingPhase.STABLE

    await impolite.machine.handle_signal(polite.last_sent(OfferSignal))
    await impolite.machine.handle_signal(polite.last_sent(AnswerSignal))
    assert impolite.machine.phase is SignalingPhase.STABLE


async def test_impolite_ignores_offer_while_making_its_own(
    polite: Side, impolite: Side
):
    impolite.peer.offer_gate = anyio.Event()

    async with anyio.create_task_group() as tg:
        tg.start_soon(impolite.machine.make_offer)
        await settle()

        await polite.machine.make_offer()
        await impolite.machine.handle_signal(polite.last_sent(OfferSignal))
        assert impolite.machine.ignore_offer

        impolite.peer.offer_gate.set()

    assert impolite.peer.remote_descriptions == []
    assert impolite.machine.phase is SignalingPhase.HAVE_LOCAL_OFFER
    assert [p.type for p in impolite.sent] == ["offer"]


async def test_second_offer_is_refused_while_one_is_outstanding(impolite: Side):
    impolite.peer.offer_gate = anyio.Event()

    async with anyio.create_task_group() as tg:
        tg.start_soon(impolite.machine.make_offer)
        await settle()

        assert not await impolite.machine.negotiation_needed()
        impolite.peer.offer_gate.set()

    assert impolite.peer.calls.count("produce_offer") == 1
    # Still waiting for an answer
    assert not await impolite.machine.negotiation_needed()


async def test_candidates_before_offer_are_buffered_then_applied_in_order(
    polite: Side, impolite: Side
):
    for n in range(1, 4):
        await polite.machine.handle_signal(CandidateSignal(candidate=candidate(n)))

    assert polite.peer.candidates == []
    assert len(polite.machine.candidates) == 3

    await impolite.machine.negotiation_needed()
    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))

    assert polite.peer.candidates == [candidate(1), candidate(2), candidate(3)]
    assert len(polite.machine.candidates) == 0
    first_candidate = polite.peer.calls.index("add_candidate")
    assert polite.peer.calls.index("apply_remote_description") < first_candidate

    # Later candidates go straight through
    await polite.machine.handle_signal(CandidateSignal(candidate=candidate(4)))
    assert polite.peer.candidates[-1] == candidate(4)


async def test_candidates_wait_for_the_answer_on_the_offering_side(
    polite: Side, impolite: Side
):
    await impolite.machine.negotiation_needed()
    await impolite.machine.handle_signal(CandidateSignal(candidate=candidate(1)))
    assert impolite.peer.candidates == []

    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))
    await impolite.machine.handle_signal(polite.last_sent(AnswerSignal))

    assert impolite.peer.candidates == [candidate(1)]


async def test_answer_outside_have_local_offer_is_ignored(
    polite: Side, impolite: Side
):
    await polite.machine.handle_signal(AnswerSignal(sdp="stale"))
    assert polite.peer.remote_descriptions == []
    assert polite.machine.phase is SignalingPhase.IDLE

    await impolite.machine.negotiation_needed()
    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))
    answer = polite.last_sent(AnswerSignal)
    await impolite.machine.handle_signal(answer)

    # Retransmitted answer
    await impolite.machine.handle_signal(answer)
    assert len(impolite.peer.remote_descriptions) == 1
    assert impolite.failures == []


async def test_close_is_terminal(polite: Side):
    await polite.machine.handle_signal(CandidateSignal(candidate=candidate(1)))
    await polite.machine.close()

    assert polite.machine.phase is SignalingPhase.CLOSED
    assert len(polite.machine.candidates) == 0
    assert polite.peer.closed

    await polite.machine.handle_signal(OfferSignal(sdp="late"))
    await polite.machine.handle_signal(CandidateSignal(candidate=candidate(2)))
    assert not await polite.machine.make_offer()

    assert polite.peer.remote_descriptions == []
    assert polite.peer.candidates == []
    assert polite.sent == []

    # Closing twice is harmless
    await polite.machine.close()
    assert polite.peer.calls.count("close") == 1


async def test_close_while_offer_is_produced_sends_nothing(impolite: Side):
    impolite.peer.offer_gate = anyio.Event()

    async with anyio.create_task_group() as tg:
        tg.start_soon(impolite.machine.negotiation_needed)
        await settle()
        await impolite.machine.close()
        impolite.peer.offer_gate.set()

    assert impolite.sent == []
    assert impolite.machine.phase is SignalingPhase.CLOSED


async def test_failed_offer_is_reported(impolite: Side):
    impolite.peer.fail = {"produce_offer"}

    assert not await impolite.machine.negotiation_needed()

    assert impolite.machine.phase is SignalingPhase.IDLE
    assert impolite.machine.making_offer is False
    assert [f.operation for f in impolite.failures] == ["produce offer"]
    assert isinstance(impolite.failures[0].__cause__, RuntimeError)

    # Nothing is stuck, a retry goes through
    impolite.peer.fail = set()
    assert await impolite.machine.negotiation_needed()


async def test_failed_answer_rolls_back_local_offer(polite: Side, impolite: Side):
    await impolite.machine.negotiation_needed()
    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))

    impolite.peer.fail = {"apply_remote_description"}
    await impolite.machine.handle_signal(polite.last_sent(AnswerSignal))

    assert [f.operation for f in impolite.failures] == ["apply remote answer"]
    assert impolite.peer.rollbacks == 1
    assert impolite.machine.phase is SignalingPhase.IDLE

    impolite.peer.fail = set()
    assert await impolite.machine.negotiation_needed()


async def test_failed_remote_offer_is_reported(polite: Side, impolite: Side):
    polite.peer.fail = {"apply_remote_description"}
    await impolite.machine.negotiation_needed()
    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))

    assert [f.operation for f in polite.failures] == ["apply remote offer"]
    assert polite.machine.phase is SignalingPhase.IDLE
    assert polite.sent == []


async def test_candidate_failures_of_ignored_offer_are_tolerated(
    polite: Side, impolite: Side
):
    await polite.machine.make_offer()
    await impolite.machine.make_offer()
    await impolite.machine.handle_signal(polite.last_sent(OfferSignal))
    await impolite.machine.handle_signal(CandidateSignal(candidate=candidate(1)))

    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))
    impolite.peer.fail = {"add_candidate"}
    await impolite.machine.handle_signal(polite.last_sent(AnswerSignal))

    assert impolite.machine.phase is SignalingPhase.STABLE
    assert impolite.failures == []


async def test_candidate_failure_is_reported(polite: Side, impolite: Side):
    await impolite.machine.negotiation_needed()
    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))

    polite.peer.fail = {"add_candidate"}
    await polite.machine.handle_signal(CandidateSignal(candidate=candidate(1)))

    assert [f.operation for f in polite.failures] == ["add candidate"]


async def test_unanswerable_offer_rolls_polite_side_back(
    polite: Side, impolite: Side
):
    polite.peer.fail = {"produce_answer"}
    await impolite.machine.negotiation_needed()
    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))

    assert [f.operation for f in polite.failures] == ["produce answer"]
    assert polite.peer.rollbacks == 1
    assert polite.machine.phase is SignalingPhase.IDLE
    assert not polite.machine.has_remote_description


async def test_polite_restart_has_impolite_side_offer_again(
    polite: Side, impolite: Side
):
    polite.peer.fail = {"produce_answer"}
    await impolite.machine.negotiation_needed()
    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))
    polite.peer.fail = set()

    assert await polite.machine.restart()
    assert polite.sent == [RestartSignal()]

    # Impolite side drops its unanswered offer and makes a new one
    await impolite.machine.handle_signal(polite.last_sent(RestartSignal))
    assert impolite.peer.rollbacks == 1
    assert impolite.last_sent(OfferSignal).sdp == "offer-b-2"

    await polite.machine.handle_signal(impolite.last_sent(OfferSignal))
    await impolite.machine.handle_signal(polite.last_sent(AnswerSignal))

    assert polite.machine.phase is SignalingPhase.STABLE
    assert impolite.machine.phase is SignalingPhase.STABLE


async def test_restart_request_is_ignored_by_polite_side(polite: Side):
    await polite.machine.handle_signal(RestartSignal())

    assert polite.sent == []
    assert polite.machine.phase is SignalingPhase.IDLE
