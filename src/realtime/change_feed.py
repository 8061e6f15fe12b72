"""
Change-feed client for one session-scoped partition.

Wraps a broker channel subscription and turns raw change payloads into
ChangeEvent objects. Status transitions are reported through a callback,
never raised: the ReconnectionSupervisor decides what to do with them.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

from .broker import BrokerChannel, RealtimeBroker
from .events import (
    ChangeEvent,
    ChangeKind,
    ChannelStatus,
    EventCallback,
    Partition,
    StatusCallback,
)
from .scope import LifecycleScope

logger = logging.getLogger(__name__)

ALL_KINDS = (ChangeKind.INSERT, ChangeKind.UPDATE, ChangeKind.DELETE)


class PayloadError(ValueError):
    """A broker payload could not be normalized."""
    pass


@dataclass(frozen=True)
class TableCodec:
    """How rows of one table become entities."""
    table: str
    key_column: str
    decode: Callable[[Dict[str, Any]], Any]


@dataclass
class FeedHandle:
    """A live subscription returned by ChangeFeedClient.subscribe()."""
    partition: Partition
    channel: BrokerChannel
    event_kinds: tuple
    active: bool = True
    status: Optional[ChannelStatus] = field(default=None)


def normalize_payload(codec: TableCodec, payload: Dict[str, Any]) -> ChangeEvent:
    """
    Validate a raw change payload and decode it into a ChangeEvent.

    Raises:
        PayloadError: if the payload is missing required parts.
    """
    if not isinstance(payload, dict):
        raise PayloadError(f"Expected a dict payload, got {type(payload).__name__}")

    try:
        kind = ChangeKind(str(payload.get("eventType", "")).upper())
    except ValueError:
        raise PayloadError(f"Unknown event type: {payload.get('eventType')!r}")

    new_row = payload.get("new") or {}
    old_row = payload.get("old") or {}

    try:
        if kind == ChangeKind.DELETE:
            key = old_row.get(codec.key_column)
            if key is None:
                raise PayloadError("DELETE payload without a key")
            try:
                entity = codec.decode(old_row)
            except (KeyError, TypeError, ValueError):
                # Only the primary key is replicated for deletes by default.
                entity = None
            return ChangeEvent(kind=kind, entity=entity, key=str(key))

        key = new_row.get(codec.key_column)
        if key is None:
            raise PayloadError(f"{kind.value} payload without a key")
        entity = codec.decode(new_row)
        previous = None
        if kind == ChangeKind.UPDATE and old_row:
            try:
                previous = codec.decode(old_row)
            except (KeyError, TypeError, ValueError):
                previous = None
        return ChangeEvent(kind=kind, entity=entity, previous=previous, key=str(key))
    except PayloadError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise PayloadError(f"Could not decode {codec.table} row: {e}")


class ChangeFeedClient:
    """
    Subscribes to change feeds, one broker channel per partition.

    A second subscribe() for the same partition replaces the first: the old
    channel is torn down before the new one is opened, so no duplicate
    channels are ever live.
    """

    def __init__(self, broker: RealtimeBroker, codecs: Iterable[TableCodec]):
        """
        Args:
            broker: Realtime broker that creates channels.
            codecs: One codec per table this client may subscribe to.
        """
        self.broker = broker
        self._codecs: Dict[str, TableCodec] = {c.table: c for c in codecs}
        self._handles: Dict[str, FeedHandle] = {}
        self._scope = LifecycleScope("change-feed")

    @property
    def live_partitions(self) -> list:
        return [key for key, handle in self._handles.items() if handle.active]

    def handle_for(self, partition: Partition) -> Optional[FeedHandle]:
        return self._handles.get(partition.key)

    async def subscribe(
        self,
        partition: Partition,
        on_event: EventCallback,
        on_status: Optional[StatusCallback] = None,
        event_kinds: Iterable[ChangeKind] = ALL_KINDS,
    ) -> FeedHandle:
        """
        Open the change feed for a partition.

        Args:
            partition: Session and table to follow.
            on_event: Called with each normalized ChangeEvent.
            on_status: Called with each ChannelStatus reported by the broker.
            event_kinds: Which change kinds to receive.

        Returns:
            The handle of the new subscription.
        """
        codec = self._codecs.get(partition.table)
        if codec is None:
            raise ValueError(f"No codec registered for table {partition.table}")

        existing = self._handles.get(partition.key)
        if existing is not None:
            logger.debug(f"Replacing existing feed for {partition.key}")
            await self.unsubscribe(existing)

        kinds = tuple(event_kinds)
        channel = self.broker.channel(partition.channel_name)
        handle = FeedHandle(partition=partition, channel=channel, event_kinds=kinds)
        self._handles[partition.key] = handle

        def _on_change(payload: Dict[str, Any]) -> None:
            if not handle.active:
                return
            try:
                event = normalize_payload(codec, payload)
            except PayloadError as e:
                logger.warning(f"Dropping malformed change on {partition.key}: {e}")
                return
            if event.kind not in kinds:
                return
            self._invoke(on_event, event, partition)

        def _on_status(raw_status: str) -> None:
            if not handle.active:
                return
            try:
                status = ChannelStatus(raw_status)
            except ValueError:
                logger.debug(f"Ignoring unknown status {raw_status!r} on {partition.key}")
                return
            handle.status = status
            logger.debug(f"Feed {partition.key} status: {status.value}")
            if on_status is not None:
                self._invoke(on_status, status, partition)

        event_name = "*" if set(kinds) == set(ALL_KINDS) else None
        if event_name:
            channel.on_postgres_changes(partition.table, event_name, partition.row_filter, _on_change)
        else:
            for kind in kinds:
                channel.on_postgres_changes(partition.table, kind.value, partition.row_filter, _on_change)

        await channel.subscribe(_on_status)
        logger.info(f"Subscribed change feed {partition.key}")
        return handle

    async def unsubscribe(self, handle: FeedHandle) -> None:
        """Release a subscription. Safe to call more than once."""
        if not handle.active:
            return
        handle.active = False
        if self._handles.get(handle.partition.key) is handle:
            del self._handles[handle.partition.key]
        try:
            await handle.channel.unsubscribe()
        except Exception as e:
            logger.warning(f"Error while leaving {handle.partition.key}: {e}")
        logger.info(f"Unsubscribed change feed {handle.partition.key}")

    async def close(self) -> None:
        for handle in list(self._handles.values()):
            await self.unsubscribe(handle)
        await self._scope.close()

    def _invoke(self, callback: Callable[[Any], Any], value: Any, partition: Partition) -> None:
        """Call a consumer callback; coroutine results run in the client's scope."""
        try:
            result = callback(value)
            if asyncio.iscoroutine(result):
                self._scope.spawn(result, name=f"feed:{partition.key}")
        except Exception as e:
            logger.exception(f"Consumer callback failed for {partition.key}: {e}")


__all__ = [
    "ALL_KINDS",
    "ChangeFeedClient",
    "FeedHandle",
    "PayloadError",
    "TableCodec",
    "normalize_payload",
]
