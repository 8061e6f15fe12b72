"""
Store interface consumed by the sync layer.

The store is a managed relational database exposed through a small
query/insert API. Filters are equality matches on columns.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

Row = Dict[str, Any]


class StoreError(Exception):
    """Base exception for store failures."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class NotFoundError(StoreError):
    """The row, or the session a row refers to, does not exist."""
    pass


class StoreTimeoutError(StoreError):
    """The store did not answer in time."""
    pass


class StoreUnavailableError(StoreError):
    """The store could not be reached."""
    pass


class Store(ABC):
    """Asynchronous access to store tables."""

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
    ) -> List[Row]:
        """Return rows matching every filter, optionally ordered by a column."""
        pass

    @abstractmethod
    async def insert(self, table: str, rows: Union[Row, List[Row]]) -> None:
        """Insert one row or a batch of rows."""
        pass

    @abstractmethod
    async def update(self, table: str, filters: Dict[str, Any], patch: Row) -> int:
        """Apply a patch to every row matching the filters; returns how many matched."""
        pass

    @abstractmethod
    async def delete(self, table: str, filters: Dict[str, Any]) -> None:
        """Delete every row matching the filters."""
        pass

    async def close(self) -> None:
        """Release connections, if any."""
        return None


__all__ = [
    "Row",
    "Store",
    "StoreError",
    "NotFoundError",
    "StoreTimeoutError",
    "StoreUnavailableError",
]
