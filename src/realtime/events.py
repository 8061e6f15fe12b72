"""
Event and state types shared by every sync component.

Raw broker payloads are normalized into ChangeEvent at the change-feed
boundary; nothing past that boundary sees an untyped payload.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class ChangeKind(str, Enum):
    """Kind of row change reported by the store."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChannelStatus(str, Enum):
    """Status signals emitted by the realtime broker for a channel."""
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    CLOSED = "CLOSED"
    TIMED_OUT = "TIMED_OUT"


class ConnectionState(str, Enum):
    """Public connection state of one partition, drives the UI indicator."""
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DEGRADED_POLLING = "DEGRADED_POLLING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ChangeEvent(Generic[T]):
    """
    A normalized change for one entity.

    Attributes:
        kind: INSERT, UPDATE or DELETE.
        entity: The entity after the change. For DELETE it is the removed
            entity, or None when the store only reported its key.
        previous: The entity before the change, when known.
        key: Identifier of the entity; always set.
    """
    kind: ChangeKind
    entity: Optional[T]
    previous: Optional[T] = None
    key: Optional[str] = None


@dataclass(frozen=True)
class Partition:
    """One entity type of one session: the unit of subscription."""
    session_id: str
    table: str

    @property
    def key(self) -> str:
        return f"{self.table}_{self.session_id}"

    @property
    def channel_name(self) -> str:
        return self.key

    @property
    def row_filter(self) -> str:
        return f"session_id=eq.{self.session_id}"

    @property
    def filters(self) -> dict:
        return {"session_id": self.session_id}


EventCallback = Callable[[ChangeEvent], Any]
StatusCallback = Callable[[ChannelStatus], Any]


__all__ = [
    "ChangeKind",
    "ChannelStatus",
    "ConnectionState",
    "ChangeEvent",
    "Partition",
    "EventCallback",
    "StatusCallback",
]
