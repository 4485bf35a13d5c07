from collections import deque

from watch_party.negotiation.types import IceCandidate


class CandidateBuffer:
    """
    Holds candidates that arrived before a remote description was applied.

    Candidates come back out of `drain` in the order they were pushed.
    """

    def __init__(self):
        self._pending: deque[IceCandidate] = deque()

    def push(self, candidate: IceCandidate) -> None:
        self._pending.append(candidate)

    def drain(self) -> list[IceCandidate]:
        drained = list(self._pending)
        self._pending.clear()
        return drained

    def clear(self) -> None:
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)
