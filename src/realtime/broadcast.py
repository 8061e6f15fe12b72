"""
Ephemeral publish/subscribe channel scoped to a session.

Used for typing presence only. No persistence, no delivery or ordering
guarantee; senders do not receive their own messages. Consumers must be
idempotent to duplicates and tolerant of loss.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .broker import BrokerChannel, RealtimeBroker
from .scope import LifecycleScope

logger = logging.getLogger(__name__)

BroadcastCallback = Callable[[Dict[str, Any]], Any]


class BroadcastChannel:
    """Fire-and-forget broadcast over broker channels, one per partition key."""

    def __init__(self, broker: RealtimeBroker, scope: Optional[LifecycleScope] = None):
        self.broker = broker
        self._scope = scope or LifecycleScope("broadcast")
        self._channels: Dict[str, BrokerChannel] = {}
        self._listeners: Dict[Tuple[str, str], List[BroadcastCallback]] = {}
        self._statuses: Dict[str, str] = {}

    def status(self, partition_key: str) -> Optional[str]:
        """Last broker status reported for a partition key."""
        return self._statuses.get(partition_key)

    async def subscribe(
        self,
        partition_key: str,
        event_name: str,
        callback: BroadcastCallback,
    ) -> None:
        """
        Receive payloads published on partition_key under event_name.

        The first subscription for a partition key joins the broker channel;
        later ones reuse it.
        """
        listeners = self._listeners.setdefault((partition_key, event_name), [])
        listeners.append(callback)

        channel = self._channels.get(partition_key)
        joined = channel is not None
        if channel is None:
            channel = self.broker.channel(partition_key)
            self._channels[partition_key] = channel

        if len(listeners) == 1:
            channel.on_broadcast(event_name, self._dispatcher(partition_key, event_name))

        if not joined:
            await channel.subscribe(self._status_recorder(partition_key))

    async def rejoin(self, partition_key: str) -> None:
        """Replace the channel for a partition key, keeping its listeners."""
        old = self._channels.pop(partition_key, None)
        if old is not None:
            try:
                await old.unsubscribe()
            except Exception as e:
                logger.debug(f"Error while leaving broadcast channel {partition_key}: {e}")

        channel = self.broker.channel(partition_key)
        self._channels[partition_key] = channel
        for key, event_name in list(self._listeners):
            if key == partition_key:
                channel.on_broadcast(event_name, self._dispatcher(partition_key, event_name))
        await channel.subscribe(self._status_recorder(partition_key))
        logger.info(f"Rejoined broadcast channel {partition_key}")

    def _status_recorder(self, partition_key: str) -> Callable[[str], None]:
        def _on_status(status: str) -> None:
            self._statuses[partition_key] = status
            logger.debug(f"Broadcast channel {partition_key} status: {status}")
        return _on_status

    def _dispatcher(self, partition_key: str, event_name: str) -> BroadcastCallback:
        def _dispatch(message: Dict[str, Any]) -> None:
            payload = message.get("payload") if isinstance(message, dict) else None
            if not isinstance(payload, dict):
                logger.debug(f"Ignoring broadcast without payload on {partition_key}")
                return
            for callback in list(self._listeners.get((partition_key, event_name), [])):
                try:
                    callback(payload)
                except Exception as e:
                    logger.exception(f"Broadcast listener failed on {partition_key}: {e}")
        return _dispatch

    def publish(self, partition_key: str, event_name: str, payload: Dict[str, Any]) -> None:
        """Send a payload without waiting; failures are logged and dropped."""
        channel = self._channels.get(partition_key)
        if channel is None:
            channel = self.broker.channel(partition_key)
            self._channels[partition_key] = channel
            self._scope.spawn(channel.subscribe(self._status_recorder(partition_key)))

        self._scope.spawn(
            self._send(channel, partition_key, event_name, payload),
            name=f"broadcast:{partition_key}:{event_name}",
        )

    async def _send(
        self,
        channel: BrokerChannel,
        partition_key: str,
        event_name: str,
        payload: Dict[str, Any],
    ) -> None:
        try:
            await channel.send_broadcast(event_name, payload)
        except Exception as e:
            logger.debug(f"Broadcast '{event_name}' on {partition_key} dropped: {e}")

    async def close(self) -> None:
        """Leave every channel and cancel pending sends."""
        await self._scope.close()
        for key, channel in list(self._channels.items()):
            try:
                await channel.unsubscribe()
            except Exception as e:
                logger.warning(f"Error while leaving broadcast channel {key}: {e}")
        self._channels.clear()
        self._listeners.clear()


__all__ = ["BroadcastChannel", "BroadcastCallback"]
