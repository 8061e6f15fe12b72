"""
End-to-end tests for SessionSync over the in-memory store and broker.

Two clients share one store and broker, the way two browser tabs share a
Supabase project.
"""
import asyncio

import pytest

from src.core.errors import DeliveryExpiredError, MutationNotFoundError
from src.ordering.models import Order, OrderItem
from src.realtime.events import ConnectionState
from src.realtime.session_sync import Participant, SessionSync
from src.store.memory import InMemoryStore


async def open_sync(store, broker, config, name, session_id="s1"):
    sync = SessionSync(session_id, Participant(name), store, broker, config=config)
    await sync.start()
    return sync


async def connected(sync, eventually):
    await eventually(lambda: sync.connection_status == ConnectionState.CONNECTED)


# ============================================================================
# Order Tests
# ============================================================================

class TestOrders:
    """Order writes and their propagation."""

    @pytest.mark.asyncio
    async def test_order_reaches_other_client(self, store, broker, fast_settings, nasi_goreng, eventually):
        budi = await open_sync(store, broker, fast_settings, "Budi")
        sari = await open_sync(store, broker, fast_settings, "Sari")
        await connected(budi, eventually)
        await connected(sari, eventually)

        order = await budi.create_order("Budi", [OrderItem(nasi_goreng, 2)])
        await eventually(lambda: len(sari.orders) == 1)
        await asyncio.sleep(0.02)

        assert order.total == 30000
        assert sari.orders[0].id == order.id
        assert sari.orders[0].total == 30000
        assert sari.orders[0].customer_name == "Budi"
        assert [o.id for o in budi.orders] == [order.id]
        assert len(store.rows("orders")) == 1
        await budi.close()
        await sari.close()

    @pytest.mark.asyncio
    async def test_order_without_items_rejected(self, store, broker, fast_settings):
        sync = await open_sync(store, broker, fast_settings, "Budi")

        with pytest.raises(ValueError):
            await sync.create_order("Budi", [])

        assert store.write_count == 0
        await sync.close()

    @pytest.mark.asyncio
    async def test_update_and_delete_propagate(self, store, broker, fast_settings, nasi_goreng, es_teh, eventually):
        budi = await open_sync(store, broker, fast_settings, "Budi")
        sari = await open_sync(store, broker, fast_settings, "Sari")
        await connected(sari, eventually)

        order = await budi.create_order("Budi", [OrderItem(nasi_goreng, 2)])
        await eventually(lambda: len(sari.orders) == 1)

        updated = await budi.update_order(order.id, items=[OrderItem(nasi_goreng, 1), OrderItem(es_teh, 2)])
        assert updated.total == 21000
        await eventually(lambda: sari.orders[0].total == 21000)
        assert len(sari.orders[0].items) == 2

        await budi.delete_order(order.id)
        await eventually(lambda: sari.orders == [])
        assert budi.orders == []
        await budi.close()
        await sari.close()

    @pytest.mark.asyncio
    async def test_update_notes_keeps_items(self, store, broker, fast_settings, nasi_goreng):
        sync = await open_sync(store, broker, fast_settings, "Budi")
        order = await sync.create_order("Budi", [OrderItem(nasi_goreng, 2)])

        updated = await sync.update_order(order.id, notes="tanpa sambal")

        assert updated.notes == "tanpa sambal"
        assert updated.total == 30000
        assert store.rows("orders")[0]["notes"] == "tanpa sambal"
        await sync.close()

    @pytest.mark.asyncio
    async def test_update_unknown_order(self, store, broker, fast_settings):
        sync = await open_sync(store, broker, fast_settings, "Budi")

        with pytest.raises(MutationNotFoundError):
            await sync.update_order("missing", notes="x")

        assert len(sync.errors) == 1
        await sync.close()

    @pytest.mark.asyncio
    async def test_update_after_remote_delete(self, store, broker, fast_settings, nasi_goreng):
        sync = await open_sync(store, broker, fast_settings, "Budi")
        order = await sync.create_order("Budi", [OrderItem(nasi_goreng, 1)])

        await store.delete("orders", {"order_id": order.id})
        with pytest.raises(MutationNotFoundError):
            await sync.update_order(order.id, notes="pedas")

        assert sync.orders == []
        await sync.close()

    @pytest.mark.asyncio
    async def test_existing_orders_loaded_on_start(self, store, broker, fast_settings, nasi_goreng):
        existing = Order.create("Sari", [OrderItem(nasi_goreng, 1)], order_id="o1")
        store.seed("orders", [existing.to_row("s1")])

        sync = await open_sync(store, broker, fast_settings, "Budi")

        assert [o.id for o in sync.orders] == ["o1"]
        await sync.close()


# ============================================================================
# Chat Tests
# ============================================================================

class TestChat:
    """Chat messages, mentions and optimistic delivery."""

    @pytest.mark.asyncio
    async def test_message_with_mentions(self, store, broker, fast_settings, eventually):
        budi = await open_sync(store, broker, fast_settings, "Budi")
        sari = await open_sync(store, broker, fast_settings, "Sari")
        await connected(sari, eventually)

        sent = await budi.send_message("  @Sari mau pesan apa?  ")
        await eventually(lambda: len(sari.messages) == 1)
        await asyncio.sleep(0.02)

        received = sari.messages[0]
        assert received.id == sent.id
        assert received.body == "@Sari mau pesan apa?"
        assert received.mentions == ("Sari",)
        assert received.sender_name == "Budi"
        assert len(budi.messages) == 1
        assert budi.messages[0].optimistic is False
        await budi.close()
        await sari.close()

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, store, broker, fast_settings):
        sync = await open_sync(store, broker, fast_settings, "Budi")

        with pytest.raises(ValueError):
            await sync.send_message("   ")

        assert sync.messages == []
        await sync.close()

    @pytest.mark.asyncio
    async def test_undelivered_message_expires(self, store, broker, fast_settings, eventually):
        config = fast_settings.model_copy(update={"optimistic_deadline": 0.1, "write_timeout": 0.3})
        sync = await open_sync(store, broker, config, "Budi")
        store.hang_writes = True

        task = asyncio.create_task(sync.send_message("hi"))
        await eventually(lambda: len(sync.messages) == 1)
        assert sync.messages[0].optimistic is True

        await eventually(lambda: sync.messages == [])
        with pytest.raises(DeliveryExpiredError):
            await task

        assert len(sync.errors) == 1
        assert str(sync.errors[0]) == "Message not delivered, try again"
        await sync.close()

    @pytest.mark.asyncio
    async def test_messages_keep_creation_order(self, store, broker, fast_settings, eventually):
        budi = await open_sync(store, broker, fast_settings, "Budi")
        sari = await open_sync(store, broker, fast_settings, "Sari")
        await connected(sari, eventually)

        for body in ("satu", "dua", "tiga"):
            await budi.send_message(body)
        await eventually(lambda: len(sari.messages) == 3)

        assert [m.body for m in sari.messages] == ["satu", "dua", "tiga"]
        await budi.close()
        await sari.close()


# ============================================================================
# Missing Session Tests
# ============================================================================

class TestMissingSession:
    """Writes against a session that does not exist."""

    @pytest.mark.asyncio
    async def test_order_on_missing_session(self, store, broker, fast_settings, nasi_goreng):
        sync = await open_sync(store, broker, fast_settings, "Budi", session_id="gone")

        with pytest.raises(MutationNotFoundError):
            await sync.create_order("Budi", [OrderItem(nasi_goreng, 1)])

        assert sync.orders == []
        assert isinstance(sync.errors[0], MutationNotFoundError)
        await sync.close()

    @pytest.mark.asyncio
    async def test_message_on_missing_session(self, store, broker, fast_settings):
        sync = await open_sync(store, broker, fast_settings, "Budi", session_id="gone")

        with pytest.raises(MutationNotFoundError):
            await sync.send_message("hi")

        assert sync.messages == []
        assert len(sync.errors) == 1
        await sync.close()


# ============================================================================
# Typing Tests
# ============================================================================

class TestTyping:
    """Typing presence between clients."""

    @pytest.mark.asyncio
    async def test_typing_reaches_others_only(self, store, broker, fast_settings, eventually):
        budi = await open_sync(store, broker, fast_settings, "Budi")
        sari = await open_sync(store, broker, fast_settings, "Sari")
        await eventually(lambda: len(broker.live_channels("typing_s1")) == 2)

        budi.send_typing()
        await eventually(lambda: sari.typing_users == ["Budi"])
        assert budi.typing_users == []

        await budi.send_message("sudah pesan")
        await eventually(lambda: sari.typing_users == [])
        await budi.close()
        await sari.close()

    @pytest.mark.asyncio
    async def test_typing_while_offline_never_raises(self, store, broker, fast_settings):
        sync = await open_sync(store, broker, fast_settings, "Budi")
        broker.go_offline()

        sync.send_typing()
        await asyncio.sleep(0.01)

        await sync.close()


# ============================================================================
# Connection Tests
# ============================================================================

class TestConnection:
    """Degraded mode, recovery and teardown."""

    @pytest.mark.asyncio
    async def test_polling_keeps_view_current_while_offline(
        self, store, broker, fast_settings, nasi_goreng, eventually
    ):
        config = fast_settings.model_copy(update={"reconnect_max_attempts": 100, "reconnect_max_delay": 0.05})
        sync = await open_sync(store, broker, config, "Sari")
        await connected(sync, eventually)

        broker.go_offline()
        await eventually(lambda: sync.connection_status == ConnectionState.DEGRADED_POLLING)

        order = Order.create("Budi", [OrderItem(nasi_goreng, 2)])
        await store.insert("orders", order.to_row("s1"))
        await eventually(lambda: [o.id for o in sync.orders] == [order.id])

        broker.go_online()
        await connected(sync, eventually)
        assert sync.partition_states == {
            "orders": ConnectionState.CONNECTED,
            "chat_messages": ConnectionState.CONNECTED,
        }
        assert len(broker.live_channels("orders_s1")) == 1
        await sync.close()

    @pytest.mark.asyncio
    async def test_catch_up_after_reconnect(self, store, broker, fast_settings, nasi_goreng, eventually):
        config = fast_settings.model_copy(update={"polling_interval": 10.0, "reconnect_max_attempts": 100})
        sync = await open_sync(store, broker, config, "Sari")
        await connected(sync, eventually)

        broker.go_offline()
        await eventually(lambda: sync.connection_status == ConnectionState.DEGRADED_POLLING)
        order = Order.create("Budi", [OrderItem(nasi_goreng, 1)])
        await store.insert("orders", order.to_row("s1"))
        broker.go_online()

        await eventually(lambda: len(sync.orders) == 1)
        assert sync.orders[0].id == order.id
        await sync.close()

    @pytest.mark.asyncio
    async def test_refresh_after_giving_up(self, store, broker, fast_settings, eventually):
        config = fast_settings.model_copy(update={"reconnect_max_attempts": 2})
        broker.go_offline()
        sync = await open_sync(store, broker, config, "Sari")

        await eventually(lambda: sync.connection_status == ConnectionState.FAILED)

        broker.go_online()
        await sync.refresh()
        await connected(sync, eventually)
        await sync.close()

    @pytest.mark.asyncio
    async def test_close_releases_channels(self, store, broker, fast_settings, eventually):
        sync = await open_sync(store, broker, fast_settings, "Budi")
        await connected(sync, eventually)
        assert broker.live_channels() != []

        await sync.close()
        await sync.close()
        await asyncio.sleep(0.02)

        assert broker.live_channels() == []

    @pytest.mark.asyncio
    async def test_context_manager(self, store, broker, fast_settings, eventually):
        async with SessionSync("s1", Participant("Budi"), store, broker, config=fast_settings) as sync:
            await connected(sync, eventually)

        assert broker.live_channels() == []


# ============================================================================
# Load Interleaving Tests
# ============================================================================

class GatedStore(InMemoryStore):
    """In-memory store whose next select on `hold_table` waits on a gate after reading its rows."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.hold_table = None
        self.held = False
        self.gate = asyncio.Event()

    async def select(self, table, filters=None, order_by=None, ascending=True):
        rows = await super().select(table, filters, order_by=order_by, ascending=ascending)
        if table == self.hold_table:
            self.hold_table = None
            self.held = True
            await self.gate.wait()
        return rows


@pytest.fixture
def gated_store(broker):
    store = GatedStore(broker=broker)
    store.seed("sessions", [{"session_id": "s1", "session_name": "Makan Siang"}])
    return store


class TestLoadInterleaving:
    """Live changes that land while a reload is still reading the store."""

    async def hold_reload(self, store, sync, table, eventually):
        store.hold_table = table
        task = asyncio.create_task(sync.reload())
        await eventually(lambda: store.held)
        return task

    @pytest.mark.asyncio
    async def test_order_inserted_during_reload_survives(
        self, gated_store, broker, fast_settings, nasi_goreng, eventually
    ):
        budi = await open_sync(gated_store, broker, fast_settings, "Budi")
        sari = await open_sync(gated_store, broker, fast_settings, "Sari")
        await connected(budi, eventually)
        await connected(sari, eventually)

        reload = await self.hold_reload(gated_store, sari, "orders", eventually)
        order = await budi.create_order("Budi", [OrderItem(nasi_goreng, 1)])
        await eventually(lambda: [o.id for o in sari.orders] == [order.id])
        gated_store.gate.set()
        await reload

        assert [o.id for o in sari.orders] == [order.id]
        assert [r["order_id"] for r in gated_store.rows("orders")] == [order.id]
        await budi.close()
        await sari.close()

    @pytest.mark.asyncio
    async def test_local_order_during_reload_survives(self, gated_store, broker, fast_settings, nasi_goreng, eventually):
        sync = await open_sync(gated_store, broker, fast_settings, "Budi")
        await connected(sync, eventually)

        reload = await self.hold_reload(gated_store, sync, "orders", eventually)
        order = await sync.create_order("Budi", [OrderItem(nasi_goreng, 2)])
        gated_store.gate.set()
        await reload
        await asyncio.sleep(0.02)

        assert [o.id for o in sync.orders] == [order.id]
        await sync.close()

    @pytest.mark.asyncio
    async def test_own_message_echo_during_reload_kept_once(self, gated_store, broker, fast_settings, eventually):
        sync = await open_sync(gated_store, broker, fast_settings, "Sari")
        await connected(sync, eventually)

        reload = await self.hold_reload(gated_store, sync, "chat_messages", eventually)
        sent = await sync.send_message("titip es teh")
        await eventually(lambda: [m.optimistic for m in sync.messages] == [False])
        gated_store.gate.set()
        await reload
        await asyncio.sleep(0.02)

        assert [m.id for m in sync.messages] == [sent.id]
        assert sync.messages[0].optimistic is False
        await sync.close()

    @pytest.mark.asyncio
    async def test_order_deleted_during_reload_stays_deleted(
        self, gated_store, broker, fast_settings, nasi_goreng, eventually
    ):
        budi = await open_sync(gated_store, broker, fast_settings, "Budi")
        sari = await open_sync(gated_store, broker, fast_settings, "Sari")
        await connected(budi, eventually)
        await connected(sari, eventually)
        order = await budi.create_order("Budi", [OrderItem(nasi_goreng, 1)])
        await eventually(lambda: len(sari.orders) == 1)

        reload = await self.hold_reload(gated_store, sari, "orders", eventually)
        await budi.delete_order(order.id)
        await eventually(lambda: sari.orders == [])
        gated_store.gate.set()
        await reload

        assert sari.orders == []
        assert gated_store.rows("orders") == []
        await budi.close()
        await sari.close()


# ============================================================================
# Listener Tests
# ============================================================================

class TestListeners:
    """subscribe() and its unsubscribe function."""

    @pytest.mark.asyncio
    async def test_listener_called_until_unsubscribed(self, store, broker, fast_settings, nasi_goreng):
        sync = await open_sync(store, broker, fast_settings, "Budi")
        calls = []
        unsubscribe = sync.subscribe(calls.append)

        await sync.create_order("Budi", [OrderItem(nasi_goreng, 1)])
        assert calls and calls[-1] is sync

        unsubscribe()
        unsubscribe()
        count = len(calls)
        await sync.create_order("Budi", [OrderItem(nasi_goreng, 1)])
        await asyncio.sleep(0.01)

        assert len(calls) == count
        await sync.close()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_sync(self, store, broker, fast_settings, nasi_goreng):
        sync = await open_sync(store, broker, fast_settings, "Budi")

        def broken(_):
            raise RuntimeError("render failed")

        sync.subscribe(broken)
        order = await sync.create_order("Budi", [OrderItem(nasi_goreng, 1)])

        assert [o.id for o in sync.orders] == [order.id]
        await sync.close()
