"""Configuration settings for Group Order Sync."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Backend selection: "supabase" talks to a real project, "memory" runs in-process
    backend: str = "supabase"

    # Supabase project
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""
    supabase_schema: str = "public"

    # Merchant catalog proxy
    catalog_proxy_url: str = "https://gofood-get-restaurant.zeabur.app"
    catalog_timeout: float = 30.0
    catalog_requests_per_minute: int = 30

    # Reconnection (seconds)
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_max_attempts: int = 5
    subscribe_timeout: float = 10.0
    heartbeat_interval: float = 25.0

    # Polling fallback
    polling_interval: float = 3.0

    # Writes and optimistic mutations
    write_timeout: float = 10.0
    optimistic_deadline: float = 15.0

    # Typing presence
    typing_window: float = 5.0
    typing_sweep_interval: float = 1.0

    log_level: str = "INFO"
    default_session_name: Optional[str] = None

    class Config:
        env_prefix = "GROUP_ORDER_"
        env_file = ".env"


settings = Settings()
