"""Store interface. The in-process backend lives in src.store.memory."""
from .base import NotFoundError, Row, Store, StoreError, StoreTimeoutError, StoreUnavailableError

__all__ = [
    "Row",
    "Store",
    "StoreError",
    "NotFoundError",
    "StoreTimeoutError",
    "StoreUnavailableError",
]
