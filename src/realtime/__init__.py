"""Realtime sync layer: change feeds, reconnection, polling, optimism, presence."""
from .broadcast import BroadcastChannel
from .broker import BrokerChannel, RealtimeBroker
from .change_feed import ChangeFeedClient, FeedHandle, PayloadError, TableCodec
from .collection import MaterializedCollection
from .events import ChangeEvent, ChangeKind, ChannelStatus, ConnectionState, Partition
from .optimistic import OptimisticMutationTracker
from .polling import PollingFallback
from .presence import PresenceAggregator
from .reconnection import BackoffStrategy, ReconnectPolicy, ReconnectionSupervisor, SupervisorState
from .session_sync import Participant, SessionSync

__all__ = [
    "BackoffStrategy",
    "BroadcastChannel",
    "BrokerChannel",
    "ChangeEvent",
    "ChangeFeedClient",
    "ChangeKind",
    "ChannelStatus",
    "ConnectionState",
    "FeedHandle",
    "MaterializedCollection",
    "OptimisticMutationTracker",
    "Participant",
    "Partition",
    "PayloadError",
    "PollingFallback",
    "PresenceAggregator",
    "RealtimeBroker",
    "ReconnectPolicy",
    "ReconnectionSupervisor",
    "SessionSync",
    "SupervisorState",
    "TableCodec",
]
