"""
Tests for the materialized collection and the polling fallback.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.ordering.models import ChatMessage, Order, OrderItem
from src.realtime.collection import MaterializedCollection
from src.realtime.events import ChangeEvent, ChangeKind
from src.realtime.polling import PollingFallback, diff_snapshots

T0 = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


def message(message_id, body="hi", seconds=0):
    return ChatMessage(
        id=message_id,
        sender_name="Budi",
        body=body,
        created_at=T0 + timedelta(seconds=seconds),
    )


# ============================================================================
# MaterializedCollection Tests
# ============================================================================

class TestMaterializedCollection:
    """Tests for MaterializedCollection."""

    def test_items_ordered_by_creation(self):
        collection = MaterializedCollection()
        collection.upsert(message("b", seconds=2))
        collection.upsert(message("a", seconds=1))
        collection.upsert(message("c", seconds=1))

        assert [m.id for m in collection.items] == ["a", "c", "b"]

    def test_upsert_replaces_by_key(self):
        collection = MaterializedCollection()

        assert collection.upsert(message("m1", "hi")) is True
        assert collection.upsert(message("m1", "hi")) is False
        assert collection.upsert(message("m1", "halo")) is True

        assert len(collection) == 1
        assert collection.get("m1").body == "halo"

    def test_apply_events(self):
        collection = MaterializedCollection()

        collection.apply(ChangeEvent(ChangeKind.INSERT, message("m1"), key="m1"))
        collection.apply(ChangeEvent(ChangeKind.UPDATE, message("m1", "edited"), key="m1"))
        assert collection.get("m1").body == "edited"

        assert collection.apply(ChangeEvent(ChangeKind.DELETE, None, key="m1")) is True
        assert collection.apply(ChangeEvent(ChangeKind.DELETE, None, key="m1")) is False
        assert "m1" not in collection

    def test_duplicate_insert_events_keep_one_entity(self):
        collection = MaterializedCollection()
        event = ChangeEvent(ChangeKind.INSERT, message("m1"), key="m1")

        collection.apply(event)
        collection.apply(event)

        assert len(collection) == 1


# ============================================================================
# Diff Tests
# ============================================================================

class TestDiffSnapshots:
    """Tests for diff_snapshots."""

    def test_insert_update_delete(self):
        previous = {"a": message("a"), "b": message("b")}
        current = {"a": message("a", "edited"), "c": message("c")}

        events = {e.key: e for e in diff_snapshots(previous, current)}

        assert events["a"].kind == ChangeKind.UPDATE
        assert events["a"].previous.body == "hi"
        assert events["c"].kind == ChangeKind.INSERT
        assert events["b"].kind == ChangeKind.DELETE

    def test_identical_snapshots(self):
        snapshot = {"a": message("a")}

        assert diff_snapshots(snapshot, dict(snapshot)) == []


# ============================================================================
# PollingFallback Tests
# ============================================================================

class TestPollingFallback:
    """Tests for PollingFallback."""

    @pytest.mark.asyncio
    async def test_poll_once_emits_only_differences(self):
        rows = [message("a")]
        events = []
        fallback = PollingFallback(fetch=AsyncMock(side_effect=lambda: list(rows)), on_event=events.append)

        await fallback.poll_once()
        await fallback.poll_once()
        rows.append(message("b", seconds=1))
        await fallback.poll_once()

        assert [(e.kind, e.key) for e in events] == [
            (ChangeKind.INSERT, "a"),
            (ChangeKind.INSERT, "b"),
        ]

    @pytest.mark.asyncio
    async def test_baseline_primes_snapshot_on_start(self, eventually):
        known = message("a")
        fetch = AsyncMock(return_value=[known])
        events = []
        fallback = PollingFallback(
            fetch=fetch,
            on_event=events.append,
            interval=10,
            baseline=lambda: [known],
        )

        fallback.start()
        await eventually(lambda: fetch.await_count == 1)
        await fallback.aclose()

        assert events == []

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        fallback = PollingFallback(fetch=AsyncMock(return_value=[]), on_event=lambda e: None, interval=10)

        fallback.start()
        task = fallback._task
        fallback.start()

        assert fallback._task is task
        await fallback.aclose()
        assert not fallback.is_running

    @pytest.mark.asyncio
    async def test_polls_every_interval_until_stopped(self, eventually):
        fallback = PollingFallback(fetch=AsyncMock(return_value=[]), on_event=lambda e: None, interval=0.02)

        fallback.start()
        await eventually(lambda: fallback.poll_count >= 3)
        fallback.stop()
        count = fallback.poll_count
        await asyncio.sleep(0.06)

        assert fallback.poll_count == count

    @pytest.mark.asyncio
    async def test_fetch_errors_do_not_stop_polling(self, eventually):
        calls = []

        async def fetch():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("offline")
            return [message("a")]

        events = []
        fallback = PollingFallback(fetch=fetch, on_event=events.append, interval=0.01)

        first = await fallback.poll_once()
        assert first == []
        assert isinstance(fallback.last_error, ConnectionError)

        fallback.start()
        await eventually(lambda: len(events) == 1)
        await fallback.aclose()

        assert fallback.last_error is None

    @pytest.mark.asyncio
    async def test_converges_to_store_state(self, store, nasi_goreng, eventually):
        collection = MaterializedCollection()

        async def fetch():
            rows = await store.select("orders", {"session_id": "s1"}, order_by="created_at")
            return [Order.from_row(r) for r in rows]

        fallback = PollingFallback(fetch=fetch, on_event=collection.apply, interval=0.02)
        fallback.start()

        first = Order.create("Budi", [OrderItem(nasi_goreng, 2)], order_id="o1")
        second = Order.create("Sari", [OrderItem(nasi_goreng, 1)], order_id="o2")
        await store.insert("orders", [first.to_row("s1"), second.to_row("s1")])
        await eventually(lambda: len(collection) == 2)

        await store.update("orders", {"order_id": "o1"}, {"notes": "pedas"})
        await store.delete("orders", {"order_id": "o2"})
        await eventually(lambda: len(collection) == 1 and collection.get("o1").notes == "pedas")
        await fallback.aclose()

        stored = await store.select("orders", {"session_id": "s1"})
        assert [o.id for o in collection.items] == [r["order_id"] for r in stored]
