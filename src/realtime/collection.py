"""Materialized, creation-ordered view of one partition."""
import logging
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from .events import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MaterializedCollection(Generic[T]):
    """
    Entities of one partition keyed by id, read back in creation order.

    Upserting a known key replaces the entity in place; the collection never
    holds two entities with the same key.
    """

    def __init__(
        self,
        key: Callable[[T], str] = lambda e: e.id,
        sort_key: Callable[[T], Any] = lambda e: e.created_at,
    ):
        self._key = key
        self._sort_key = sort_key
        self._entities: Dict[str, T] = {}
        self.version = 0

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, key: str) -> bool:
        return key in self._entities

    def key_of(self, entity: T) -> str:
        return self._key(entity)

    def get(self, key: str) -> Optional[T]:
        return self._entities.get(key)

    @property
    def items(self) -> List[T]:
        """Entities ordered by creation time ascending, ties by key."""
        return sorted(
            self._entities.values(),
            key=lambda e: (self._sort_key(e), self._key(e)),
        )

    def upsert(self, entity: T) -> bool:
        """Insert or replace; returns True when the collection changed."""
        key = self._key(entity)
        if self._entities.get(key) == entity:
            return False
        self._entities[key] = entity
        self.version += 1
        return True

    def remove(self, key: str) -> Optional[T]:
        removed = self._entities.pop(key, None)
        if removed is not None:
            self.version += 1
        return removed

    def replace_all(self, entities: Iterable[T]) -> None:
        self._entities = {self._key(e): e for e in entities}
        self.version += 1

    def apply(self, event: ChangeEvent) -> bool:
        """Apply a change event; returns True when the collection changed."""
        if event.kind == ChangeKind.DELETE:
            key = event.key or (self._key(event.entity) if event.entity is not None else None)
            if key is None:
                logger.debug("DELETE event without key ignored")
                return False
            return self.remove(key) is not None

        if event.entity is None:
            return False
        return self.upsert(event.entity)

    def clear(self) -> None:
        self._entities.clear()
        self.version += 1


__all__ = ["MaterializedCollection"]
