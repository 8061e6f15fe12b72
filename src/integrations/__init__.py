"""External service integrations: Supabase and the merchant catalog proxy."""
from .catalog import CatalogClient, CatalogError

__all__ = ["CatalogClient", "CatalogError"]
