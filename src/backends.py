"""Backend selection from settings."""
import logging
from typing import Optional, Tuple

from .core.config import Settings, settings as default_settings
from .integrations.catalog import CatalogClient
from .integrations.supabase import SupabaseRealtimeBroker, SupabaseRestStore
from .ordering.sessions import SessionService
from .realtime.broker import RealtimeBroker
from .store.base import Store
from .store.memory import InMemoryBroker, InMemoryStore

logger = logging.getLogger(__name__)

BACKENDS = ("supabase", "memory")


def create_backend(config: Optional[Settings] = None) -> Tuple[Store, RealtimeBroker]:
    """Build the store and broker named by `config.backend`."""
    config = config or default_settings
    backend = config.backend.lower()

    if backend == "memory":
        broker = InMemoryBroker()
        return InMemoryStore(broker=broker), broker

    if backend == "supabase":
        if not config.supabase_anon_key:
            logger.warning("GROUP_ORDER_SUPABASE_ANON_KEY is not set, requests will be rejected")
        store = SupabaseRestStore(
            url=config.supabase_url,
            api_key=config.supabase_anon_key,
            schema=config.supabase_schema,
            timeout=config.write_timeout,
        )
        broker = SupabaseRealtimeBroker(
            url=config.supabase_url,
            api_key=config.supabase_anon_key,
            schema=config.supabase_schema,
            heartbeat_interval=config.heartbeat_interval,
            connect_timeout=config.subscribe_timeout,
        )
        return store, broker

    raise ValueError(f"Unknown backend {config.backend!r}, expected one of {BACKENDS}")


def create_session_service(store: Store, config: Optional[Settings] = None) -> SessionService:
    config = config or default_settings
    catalog = CatalogClient(
        proxy_url=config.catalog_proxy_url,
        timeout=config.catalog_timeout,
        requests_per_minute=config.catalog_requests_per_minute,
    )
    return SessionService(store, catalog=catalog, default_name=config.default_session_name)
