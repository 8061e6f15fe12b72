"""
Interfaces for the managed realtime broker.

The broker is external infrastructure (Supabase Realtime in production, an
in-process fake in tests). Only ChangeFeedClient, BroadcastChannel and the
ReconnectionSupervisor talk to it.
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict

RawCallback = Callable[[Dict[str, Any]], Any]
RawStatusCallback = Callable[[str], Any]


class BrokerChannel(ABC):
    """
    A named channel on the broker.

    Change listeners are registered before subscribe(); broadcast listeners
    may be added at any time. The status callback passed to subscribe()
    receives SUBSCRIBED, CHANNEL_ERROR, CLOSED or TIMED_OUT.
    Change payloads look like ``{"eventType": "INSERT", "new": {...}, "old": {...}}``.
    Broadcast payloads look like ``{"event": "typing", "payload": {...}}``.
    """

    name: str

    @abstractmethod
    def on_postgres_changes(
        self,
        table: str,
        event: str,
        row_filter: str,
        callback: RawCallback,
    ) -> "BrokerChannel":
        """Register a change listener for a table (event may be '*')."""
        pass

    @abstractmethod
    def on_broadcast(self, event: str, callback: RawCallback) -> "BrokerChannel":
        """Register a listener for broadcast messages with the given event name."""
        pass

    @abstractmethod
    async def subscribe(self, status_callback: RawStatusCallback) -> None:
        """Join the channel. Status arrives asynchronously through the callback."""
        pass

    @abstractmethod
    async def send_broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        """Send a broadcast to the other subscribers of this channel."""
        pass

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Leave the channel and drop every listener."""
        pass


class RealtimeBroker(ABC):
    """Factory for broker channels."""

    @abstractmethod
    def channel(self, name: str) -> BrokerChannel:
        """Create a new, not yet subscribed channel object."""
        pass

    async def close(self) -> None:
        """Release the broker connection, if any."""
        return None


__all__ = [
    "BrokerChannel",
    "RealtimeBroker",
    "RawCallback",
    "RawStatusCallback",
]
