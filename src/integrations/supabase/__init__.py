"""Supabase adapters: PostgREST store and Realtime broker."""
from .realtime import SupabaseRealtimeBroker
from .rest import SupabaseRestStore

__all__ = ["SupabaseRealtimeBroker", "SupabaseRestStore"]
