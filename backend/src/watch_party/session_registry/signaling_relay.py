import logging

from watch_party.messages import ReactionMessage, SignalMessage
from watch_party.session_registry.session_registry import SessionRegistry
from watch_party.session_registry.types import ConnectionId

logger = logging.getLogger(__name__)


class SignalingRelay:
    """
    Routes opaque messages to the other participant of the sender's session.

    Nothing here looks inside a signal's payload; the negotiation semantics
    live entirely on the clients. When there is nobody to route to the
    message is dropped and the sender is never told.
    """

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def relay_signal(
        self, connection_id: ConnectionId, message: SignalMessage
    ) -> bool:
        delivered = await self.registry.deliver_to_peer(connection_id, message)
        if delivered:
            logger.debug(f"Forwarded signal from {connection_id}")
        return delivered

    async def relay_reaction(
        self, connection_id: ConnectionId, message: ReactionMessage
    ) -> bool:
        return await self.registry.deliver_to_peer(connection_id, message)
