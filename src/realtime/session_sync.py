"""
Session-scoped sync facade.

SessionSync composes the change feeds, supervisors, polling fallbacks,
optimistic tracker and presence aggregator of one ordering session into the
single object UI code attaches to:

    async with SessionSync(session_id, Participant("Budi"), store, broker) as sync:
        sync.subscribe(lambda s: render(s.orders, s.messages, s.connection_status))
        await sync.create_order("Budi", [OrderItem(nasi_goreng, 2)])
        await sync.send_message("@Sari mau pesan apa?")

Connection problems never raise from here; they only move
connection_status. Write failures raise a MutationError and are also
appended to `errors`.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..core.config import Settings, settings as default_settings
from ..core.errors import MutationError, MutationNotFoundError
from ..ordering.models import (
    CHAT_MESSAGES_TABLE,
    ORDERS_TABLE,
    ChatMessage,
    Order,
    OrderItem,
    TypingSignal,
    extract_mentions,
    utcnow,
)
from ..store.base import Store
from .broadcast import BroadcastChannel
from .broker import RealtimeBroker
from .change_feed import ChangeFeedClient, TableCodec
from .collection import MaterializedCollection
from .events import ChangeEvent, ConnectionState, EventCallback, Partition
from .optimistic import OptimisticMutationTracker, guarded_write
from .polling import PollingFallback, diff_snapshots
from .presence import PresenceAggregator
from .reconnection import ReconnectPolicy, ReconnectionSupervisor
from .scope import LifecycleScope

logger = logging.getLogger(__name__)

ORDER_CODEC = TableCodec(ORDERS_TABLE, "order_id", Order.from_row)
CHAT_CODEC = TableCodec(CHAT_MESSAGES_TABLE, "message_id", ChatMessage.from_row)

TYPING_EVENT = "typing"

# Worst state wins when partitions disagree.
_STATE_SEVERITY = {
    ConnectionState.CONNECTED: 0,
    ConnectionState.CONNECTING: 1,
    ConnectionState.DEGRADED_POLLING: 2,
    ConnectionState.FAILED: 3,
}

SyncListener = Callable[["SessionSync"], Any]


@dataclass(frozen=True)
class Participant:
    """Who is using this client. Passed in explicitly, never read from globals."""
    display_name: str


def typing_channel_key(session_id: str) -> str:
    return f"typing_{session_id}"


class PartitionSync:
    """Collection, supervisor and polling fallback for one partition."""

    def __init__(
        self,
        partition: Partition,
        codec: TableCodec,
        store: Store,
        feed: ChangeFeedClient,
        collection: MaterializedCollection,
        on_event: EventCallback,
        policy: ReconnectPolicy,
        poll_interval: float,
    ):
        self.partition = partition
        self.codec = codec
        self.store = store
        self.collection = collection
        self.on_event = on_event
        self.fallback = PollingFallback(
            fetch=self.fetch,
            on_event=on_event,
            key=collection.key_of,
            interval=poll_interval,
            baseline=self.baseline,
            name=partition.key,
        )
        self.supervisor = ReconnectionSupervisor(
            partition,
            feed,
            on_event,
            policy=policy,
            fallback=self.fallback,
        )
        self.last_load_error: Optional[Exception] = None

    @property
    def state(self) -> ConnectionState:
        return self.supervisor.connection_state

    def baseline(self) -> List[Any]:
        """Confirmed entities only; provisional ones are not in the store yet."""
        return [e for e in self.collection.items if not getattr(e, "optimistic", False)]

    async def fetch(self) -> List[Any]:
        rows = await self.store.select(
            self.partition.table,
            self.partition.filters,
            order_by="created_at",
        )
        entities = []
        for row in rows:
            try:
                entities.append(self.codec.decode(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping undecodable {self.partition.table} row: {e}")
        return entities

    async def load(self) -> bool:
        """
        Fetch the partition and apply the differences to the collection.

        The baseline is taken before the fetch starts. Keys that a live event
        touched while the fetch was in flight are left alone, since the
        collection already holds something newer than the fetched rows.
        """
        key = self.collection.key_of
        previous = {key(e): e for e in self.baseline()}
        seen = {key(e): e for e in self.collection.items}
        try:
            entities = await self.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_load_error = e
            logger.warning(f"Initial load of {self.partition.key} failed: {e}")
            return False

        self.last_load_error = None
        current = {key(e): e for e in entities}
        for event in diff_snapshots(previous, current):
            if self.collection.get(event.key) is not seen.get(event.key):
                logger.debug(f"Keeping live {event.key} over loaded rows for {self.partition.key}")
                continue
            self.on_event(event)
        self.fallback.prime(entities)
        logger.debug(f"Loaded {len(entities)} row(s) for {self.partition.key}")
        return True


class SessionSync:
    """
    Realtime view of one ordering session.

    Orders and chat messages are each one partition with their own
    supervisor; typing presence rides an ephemeral broadcast channel.
    """

    def __init__(
        self,
        session_id: str,
        participant: Participant,
        store: Store,
        broker: RealtimeBroker,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            session_id: The ordering session to follow.
            participant: The local user; their own typing is never reported.
            store: Store used for reads and writes.
            broker: Realtime broker for change feeds and broadcasts.
            config: Tunables; defaults to the module settings.
            clock: Monotonic clock used by typing presence.
        """
        self.session_id = session_id
        self.participant = participant
        self.store = store
        self.broker = broker
        self.config = config or default_settings

        policy = ReconnectPolicy.from_settings(self.config)
        self._scope = LifecycleScope(f"session:{session_id}")
        self._listeners: List[SyncListener] = []
        self._started = False
        self._closed = False
        self.errors: List[MutationError] = []

        self._feed = ChangeFeedClient(broker, [ORDER_CODEC, CHAT_CODEC])

        self._orders = MaterializedCollection()
        self._messages = MaterializedCollection()
        self._tracker = OptimisticMutationTracker(
            self._messages,
            deadline=self.config.optimistic_deadline,
            write_timeout=self.config.write_timeout,
            on_change=self._notify,
        )
        self._tracker.add_failure_listener(self._record_error)

        self._order_sync = PartitionSync(
            Partition(session_id, ORDERS_TABLE),
            ORDER_CODEC,
            store,
            self._feed,
            self._orders,
            self._on_order_event,
            policy,
            self.config.polling_interval,
        )
        self._chat_sync = PartitionSync(
            Partition(session_id, CHAT_MESSAGES_TABLE),
            CHAT_CODEC,
            store,
            self._feed,
            self._messages,
            self._on_chat_event,
            policy,
            self.config.polling_interval,
        )
        for part in self.partitions:
            part.supervisor.add_listener(self._state_listener(part))

        self._broadcast = BroadcastChannel(broker)
        self._presence = PresenceAggregator(
            local_user=participant.display_name,
            window=self.config.typing_window,
            sweep_interval=self.config.typing_sweep_interval,
            clock=clock,
            on_change=lambda users: self._notify(),
        )

    # --- Read surface ---

    @property
    def partitions(self) -> List[PartitionSync]:
        return [self._order_sync, self._chat_sync]

    @property
    def orders(self) -> List[Order]:
        return self._orders.items

    @property
    def messages(self) -> List[ChatMessage]:
        return self._messages.items

    @property
    def typing_users(self) -> List[str]:
        return self._presence.active_users

    @property
    def partition_states(self) -> Dict[str, ConnectionState]:
        return {part.partition.table: part.state for part in self.partitions}

    @property
    def connection_status(self) -> ConnectionState:
        """The worst state across partitions."""
        return max(self.partition_states.values(), key=_STATE_SEVERITY.__getitem__)

    def subscribe(self, listener: SyncListener) -> Callable[[], None]:
        """Call listener(self) after every visible change; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _unsubscribe

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info(
            f"Starting sync for session {self.session_id} as {self.participant.display_name}"
        )
        for part in self.partitions:
            await part.supervisor.start()
        await self._broadcast.subscribe(
            typing_channel_key(self.session_id),
            TYPING_EVENT,
            self._presence.handle_payload,
        )
        self._presence.start()
        await self.reload()

    async def close(self) -> None:
        """Tear down every subscription, timer and task."""
        if self._closed:
            return
        self._closed = True
        await self._scope.close()
        for part in self.partitions:
            await part.supervisor.stop()
        await self._feed.close()
        await self._broadcast.close()
        await self._presence.stop()
        await self._tracker.close()
        self._listeners.clear()
        logger.info(f"Closed sync for session {self.session_id}")

    async def __aenter__(self) -> "SessionSync":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def refresh(self) -> None:
        """Manual reconnect: resets backoff on every partition and reloads."""
        for part in self.partitions:
            await part.supervisor.refresh()
        await self.reload()

    async def reload(self) -> None:
        """Re-read every partition from the store."""
        for part in self.partitions:
            await part.load()

    # --- Orders ---

    async def create_order(
        self,
        customer_name: str,
        items: Iterable[OrderItem],
        notes: Optional[str] = None,
    ) -> Order:
        """Write a new order. The total is computed from the items."""
        order = Order.create(customer_name, items, notes=notes)
        if not order.items:
            raise ValueError("An order needs at least one item")

        await self._guarded(
            lambda: self.store.insert(ORDERS_TABLE, order.to_row(self.session_id)),
            key=order.id,
        )
        if self._orders.upsert(self._orders.get(order.id) or order):
            self._notify()
        logger.info(f"Order {order.id} created for {customer_name}: {order.total}")
        return self._orders.get(order.id) or order

    async def update_order(
        self,
        order_id: str,
        items: Optional[Iterable[OrderItem]] = None,
        customer_name: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """Replace an order's items, name or notes; the total is recomputed."""
        current = self._orders.get(order_id)
        if current is None:
            error = MutationNotFoundError("Order no longer exists", key=order_id)
            self._record_error(error)
            raise error

        updated = Order.create(
            customer_name if customer_name is not None else current.customer_name,
            items if items is not None else current.items,
            notes=notes if notes is not None else current.notes,
            order_id=current.id,
            created_at=current.created_at,
        )
        row = updated.to_row(self.session_id)
        patch = {k: row[k] for k in ("customer_name", "notes", "total", "items")}

        matched = await self._guarded(
            lambda: self.store.update(ORDERS_TABLE, {"order_id": order_id}, patch),
            key=order_id,
        )
        if matched == 0:
            if self._orders.remove(order_id) is not None:
                self._notify()
            error = MutationNotFoundError("Order no longer exists", key=order_id)
            self._record_error(error)
            raise error

        if self._orders.upsert(updated):
            self._notify()
        return updated

    async def delete_order(self, order_id: str) -> None:
        await self._guarded(
            lambda: self.store.delete(ORDERS_TABLE, {"order_id": order_id}),
            key=order_id,
        )
        if self._orders.remove(order_id) is not None:
            self._notify()
        logger.info(f"Order {order_id} deleted")

    # --- Chat ---

    async def send_message(self, body: str) -> ChatMessage:
        """Show the message immediately, then write it. Mentions are extracted from the body."""
        body = body.strip()
        if not body:
            raise ValueError("Message is empty")

        def build(key: str) -> ChatMessage:
            return ChatMessage(
                id=key,
                sender_name=self.participant.display_name,
                body=body,
                created_at=utcnow(),
                mentions=tuple(extract_mentions(body)),
            )

        async def write(message: ChatMessage) -> None:
            await self.store.insert(CHAT_MESSAGES_TABLE, message.to_row(self.session_id))

        try:
            message = await self._tracker.submit(build, write)
        except MutationError as e:
            self._record_error(e)
            raise
        self.send_typing(False)
        return message

    def send_typing(self, typing: bool = True) -> None:
        """Broadcast a typing start or stop signal. Never raises, never persisted."""
        signal = TypingSignal(
            sender_name=self.participant.display_name,
            typing=typing,
            timestamp=time.time(),
        )
        self._broadcast.publish(
            typing_channel_key(self.session_id),
            TYPING_EVENT,
            signal.to_payload(),
        )

    # --- Internals ---

    async def _guarded(self, write: Callable[[], Any], key: str) -> Any:
        try:
            return await guarded_write(write, self.config.write_timeout, key=key)
        except MutationError as e:
            self._record_error(e)
            raise

    def _on_order_event(self, event: ChangeEvent) -> None:
        if self._orders.apply(event):
            self._notify()

    def _on_chat_event(self, event: ChangeEvent) -> None:
        # The tracker notifies through on_change.
        self._tracker.handle_event(event)

    def _state_listener(self, part: PartitionSync) -> Callable[[ConnectionState], None]:
        degraded = {"seen": False}

        def _on_state(state: ConnectionState) -> None:
            if state in (ConnectionState.DEGRADED_POLLING, ConnectionState.FAILED):
                degraded["seen"] = True
            elif state == ConnectionState.CONNECTED and degraded["seen"]:
                # Catch up on anything written between the last poll and the resubscribe.
                degraded["seen"] = False
                self._scope.spawn(part.load(), name=f"catch-up:{part.partition.key}")
                if part is self._chat_sync:
                    self._scope.spawn(
                        self._broadcast.rejoin(typing_channel_key(self.session_id)),
                        name=f"rejoin:typing_{self.session_id}",
                    )
            self._notify()
        return _on_state

    def _record_error(self, error: MutationError) -> None:
        if any(error is known for known in self.errors):
            return
        self.errors.append(error)
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.exception(f"Sync listener failed: {e}")


__all__ = [
    "CHAT_CODEC",
    "ORDER_CODEC",
    "Participant",
    "PartitionSync",
    "SessionSync",
    "typing_channel_key",
]
