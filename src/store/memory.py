"""
In-process backend: a table store plus a realtime broker.

InMemoryStore keeps rows in dicts and reports every committed write to an
InMemoryBroker, which delivers change payloads and broadcasts to subscribed
channels on the next loop iteration, the way a remote broker would. Both
sides support fault injection so connection loss, silent subscriptions and
hanging writes can be reproduced without a network.
"""
import asyncio
import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..realtime.broker import BrokerChannel, RawCallback, RawStatusCallback, RealtimeBroker
from .base import NotFoundError, Row, Store, StoreError, StoreUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_PRIMARY_KEYS: Dict[str, Tuple[str, ...]] = {
    "sessions": ("session_id",),
    "merchants": ("session_id", "merchant_id"),
    "orders": ("order_id",),
    "chat_messages": ("message_id",),
}

# child table -> (column, parent table, parent column)
DEFAULT_FOREIGN_KEYS: Dict[str, Tuple[str, str, str]] = {
    "merchants": ("session_id", "sessions", "session_id"),
    "orders": ("session_id", "sessions", "session_id"),
    "chat_messages": ("session_id", "sessions", "session_id"),
}


def parse_row_filter(row_filter: Optional[str]) -> Optional[Tuple[str, str]]:
    """Parse a 'column=eq.value' filter into (column, value)."""
    if not row_filter:
        return None
    column, _, expr = row_filter.partition("=")
    op, _, value = expr.partition(".")
    if op != "eq":
        raise ValueError(f"Unsupported filter operator: {op}")
    return column, value


def _matches(row: Row, filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(str(row.get(col)) == str(val) for col, val in filters.items())


class InMemoryChannel(BrokerChannel):
    """A channel on the in-memory broker."""

    def __init__(self, broker: "InMemoryBroker", name: str):
        self.broker = broker
        self.name = name
        self.subscribed = False
        self._changes: List[Tuple[str, str, Optional[Tuple[str, str]], RawCallback]] = []
        self._broadcasts: Dict[str, List[RawCallback]] = {}
        self._status_callback: Optional[RawStatusCallback] = None

    def on_postgres_changes(self, table, event, row_filter, callback) -> "InMemoryChannel":
        self._changes.append((table, event, parse_row_filter(row_filter), callback))
        return self

    def on_broadcast(self, event, callback) -> "InMemoryChannel":
        self._broadcasts.setdefault(event, []).append(callback)
        return self

    async def subscribe(self, status_callback: RawStatusCallback) -> None:
        self._status_callback = status_callback
        self.broker.subscribe_count += 1
        outcome = self.broker._join_outcome()
        if outcome == "SUBSCRIBED":
            self.subscribed = True
            self.broker._channels.append(self)
        if outcome is not None:
            self.broker._schedule(status_callback, outcome)

    async def send_broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.subscribed or self.broker.offline:
            raise ConnectionError(f"Channel {self.name} is not connected")
        self.broker._broadcast(self, event, payload)

    async def unsubscribe(self) -> None:
        was_subscribed = self.subscribed
        self._leave()
        self._changes.clear()
        self._broadcasts.clear()
        if was_subscribed and self._status_callback is not None:
            self.broker._schedule(self._status_callback, "CLOSED")

    def _leave(self) -> None:
        self.subscribed = False
        if self in self.broker._channels:
            self.broker._channels.remove(self)

    def _deliver_change(self, table: str, payload: Dict[str, Any]) -> None:
        event_type = payload["eventType"]
        row = payload.get("new") or payload.get("old") or {}
        for listen_table, listen_event, row_filter, callback in self._changes:
            if listen_table != table:
                continue
            if listen_event not in ("*", event_type):
                continue
            if row_filter is not None and str(row.get(row_filter[0])) != row_filter[1]:
                continue
            self.broker._schedule(callback, copy.deepcopy(payload))

    def _deliver_broadcast(self, event: str, message: Dict[str, Any]) -> None:
        for callback in self._broadcasts.get(event, []):
            self.broker._schedule(callback, copy.deepcopy(message))


class InMemoryBroker(RealtimeBroker):
    """
    Realtime broker living in the current event loop.

    Fault injection:
        fail_next_subscribes(n): the next n joins report CHANNEL_ERROR.
        silent_subscribes: joins never report a status (provokes TIMED_OUT).
        drop_channels(): every joined channel reports CHANNEL_ERROR then CLOSED.
        go_offline() / go_online(): drop everything and refuse joins meanwhile.
    """

    def __init__(self):
        self._channels: List[InMemoryChannel] = []
        self.offline = False
        self.silent_subscribes = False
        self._failing_subscribes = 0
        self.subscribe_count = 0

    def channel(self, name: str) -> InMemoryChannel:
        return InMemoryChannel(self, name)

    def live_channels(self, name: Optional[str] = None) -> List[InMemoryChannel]:
        return [c for c in self._channels if name is None or c.name == name]

    # --- Fault injection ---

    def fail_next_subscribes(self, count: int) -> None:
        self._failing_subscribes = count

    def drop_channels(self, status: str = "CHANNEL_ERROR") -> None:
        for channel in list(self._channels):
            channel._leave()
            if channel._status_callback is not None:
                self._schedule(channel._status_callback, status)
                self._schedule(channel._status_callback, "CLOSED")
        logger.info(f"Dropped every channel with {status}")

    def go_offline(self) -> None:
        self.offline = True
        self.drop_channels()

    def go_online(self) -> None:
        self.offline = False

    # --- Delivery ---

    def _join_outcome(self) -> Optional[str]:
        if self.offline:
            return "CHANNEL_ERROR"
        if self._failing_subscribes > 0:
            self._failing_subscribes -= 1
            return "CHANNEL_ERROR"
        if self.silent_subscribes:
            return None
        return "SUBSCRIBED"

    def _schedule(self, callback: Callable[[Any], Any], value: Any) -> None:
        asyncio.get_running_loop().call_soon(callback, value)

    def publish_change(
        self,
        table: str,
        event_type: str,
        new: Optional[Row] = None,
        old: Optional[Row] = None,
    ) -> None:
        """Deliver a row change to every joined channel listening for it."""
        if self.offline:
            return
        payload = {
            "schema": "public",
            "table": table,
            "eventType": event_type,
            "new": new or {},
            "old": old or {},
        }
        for channel in list(self._channels):
            channel._deliver_change(table, payload)

    def _broadcast(self, sender: InMemoryChannel, event: str, payload: Dict[str, Any]) -> None:
        message = {"type": "broadcast", "event": event, "payload": payload}
        for channel in list(self._channels):
            if channel is not sender and channel.name == sender.name:
                channel._deliver_broadcast(event, message)

    async def close(self) -> None:
        for channel in list(self._channels):
            channel._leave()


class InMemoryStore(Store):
    """
    Tables of rows with primary keys, foreign keys and creation timestamps.

    Fault injection:
        offline: every call raises StoreUnavailableError.
        hang_writes: writes block until cancelled (a store that never answers).
        fail_next_write(error): the next write raises `error`.
    """

    def __init__(
        self,
        broker: Optional[InMemoryBroker] = None,
        primary_keys: Optional[Dict[str, Tuple[str, ...]]] = None,
        foreign_keys: Optional[Dict[str, Tuple[str, str, str]]] = None,
    ):
        self.broker = broker
        self.primary_keys = DEFAULT_PRIMARY_KEYS if primary_keys is None else primary_keys
        self.foreign_keys = DEFAULT_FOREIGN_KEYS if foreign_keys is None else foreign_keys
        self._tables: Dict[str, List[Row]] = {}
        self._last_timestamp: Optional[datetime] = None
        self._next_error: Optional[Exception] = None

        self.offline = False
        self.hang_writes = False
        self.write_count = 0

    def rows(self, table: str) -> List[Row]:
        """Direct view of a table, for assertions."""
        return [copy.deepcopy(r) for r in self._tables.get(table, [])]

    def seed(self, table: str, rows: List[Row]) -> None:
        """Load rows without constraint checks or change events."""
        stored = self._tables.setdefault(table, [])
        for row in rows:
            row = copy.deepcopy(row)
            row.setdefault("created_at", self._timestamp())
            stored.append(row)

    def fail_next_write(self, error: Exception) -> None:
        self._next_error = error

    # --- Store API ---

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
    ) -> List[Row]:
        self._check_online()
        await asyncio.sleep(0)
        rows = [copy.deepcopy(r) for r in self._tables.get(table, []) if _matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by) or ""), reverse=not ascending)
        return rows

    async def insert(self, table: str, rows: Union[Row, List[Row]]) -> None:
        await self._before_write()
        batch = [rows] if isinstance(rows, dict) else list(rows)
        prepared = []
        for row in batch:
            row = copy.deepcopy(row)
            row.setdefault("created_at", self._timestamp())
            self._check_foreign_key(table, row)
            self._check_unique(table, row, prepared)
            prepared.append(row)

        stored = self._tables.setdefault(table, [])
        for row in prepared:
            stored.append(row)
            self._publish(table, "INSERT", new=row)

    async def update(self, table: str, filters: Dict[str, Any], patch: Row) -> int:
        await self._before_write()
        matched = 0
        for index, row in enumerate(self._tables.get(table, [])):
            if not _matches(row, filters):
                continue
            updated = {**row, **copy.deepcopy(patch)}
            self._tables[table][index] = updated
            matched += 1
            self._publish(table, "UPDATE", new=updated, old=row)
        return matched

    async def delete(self, table: str, filters: Dict[str, Any]) -> None:
        await self._before_write()
        kept, removed = [], []
        for row in self._tables.get(table, []):
            (removed if _matches(row, filters) else kept).append(row)
        self._tables[table] = kept
        for row in removed:
            self._publish(table, "DELETE", old=row)

    # --- Internals ---

    def _check_online(self) -> None:
        if self.offline:
            raise StoreUnavailableError("Store is offline")

    async def _before_write(self) -> None:
        self._check_online()
        self.write_count += 1
        if self._next_error is not None:
            error, self._next_error = self._next_error, None
            raise error
        if self.hang_writes:
            await asyncio.Event().wait()
        await asyncio.sleep(0)

    def _timestamp(self) -> str:
        # Strictly increasing so creation order is never ambiguous.
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now.isoformat()

    def _check_foreign_key(self, table: str, row: Row) -> None:
        fk = self.foreign_keys.get(table)
        if fk is None:
            return
        column, parent, parent_column = fk
        value = row.get(column)
        if not any(r.get(parent_column) == value for r in self._tables.get(parent, [])):
            raise NotFoundError(
                f'insert or update on table "{table}" violates foreign key constraint',
                code="23503",
            )

    def _check_unique(self, table: str, row: Row, pending: List[Row]) -> None:
        columns = self.primary_keys.get(table)
        if not columns:
            return
        key = tuple(row.get(c) for c in columns)
        for existing in self._tables.get(table, []) + pending:
            if tuple(existing.get(c) for c in columns) == key:
                raise StoreError(
                    f'duplicate key value violates unique constraint "{table}_pkey"',
                    code="23505",
                )

    def _publish(self, table: str, event_type: str, new: Optional[Row] = None, old: Optional[Row] = None) -> None:
        if self.broker is not None:
            self.broker.publish_change(table, event_type, new=new, old=old)


__all__ = [
    "InMemoryBroker",
    "InMemoryChannel",
    "InMemoryStore",
    "parse_row_filter",
]
