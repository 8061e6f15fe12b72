"""Pytest fixtures for Group Order Sync tests."""
import asyncio
from typing import Callable

import pytest

from src.core.config import Settings
from src.ordering.models import MenuItem
from src.store.memory import InMemoryBroker, InMemoryStore

SESSION_ID = "s1"


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll predicate until it holds; fail the test after timeout seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# --- Backend Fixtures ---

@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def store(broker: InMemoryBroker) -> InMemoryStore:
    """In-memory store wired to the broker, with session s1 already created."""
    store = InMemoryStore(broker=broker)
    store.seed("sessions", [{"session_id": SESSION_ID, "session_name": "Makan Siang"}])
    return store


@pytest.fixture
def eventually() -> Callable:
    return wait_until


# --- Settings Fixtures ---

@pytest.fixture
def fast_settings() -> Settings:
    """Settings scaled down so timing tests finish in well under a second."""
    return Settings(
        backend="memory",
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.3,
        reconnect_max_attempts=5,
        subscribe_timeout=0.2,
        polling_interval=0.05,
        write_timeout=0.5,
        optimistic_deadline=0.3,
        typing_window=5.0,
        typing_sweep_interval=1.0,
    )


# --- Domain Fixtures ---

@pytest.fixture
def nasi_goreng() -> MenuItem:
    return MenuItem(
        id="merchant_1_1",
        name="Nasi Goreng",
        price=15000,
        merchant_id="merchant_1",
        category="Makanan Utama",
    )


@pytest.fixture
def es_teh() -> MenuItem:
    return MenuItem(
        id="merchant_2_5",
        name="Es Teh",
        price=3000,
        merchant_id="merchant_2",
        category="Minuman",
    )
