"""
Optimistic mutation tracking.

Bridges "user pressed send" and "the store has it". A provisional entity is
shown immediately with optimistic=True and later either confirmed (write
acknowledged or echo received, whichever comes first), or removed (write
failed or deadline expired). Reconciliation is always a replace by
idempotency key, never an append.
"""
import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from ..core.errors import (
    DeliveryExpiredError,
    MutationError,
    MutationFailedError,
    MutationNotFoundError,
    MutationTimeoutError,
)
from ..store.base import NotFoundError, StoreTimeoutError
from .collection import MaterializedCollection
from .events import ChangeEvent, ChangeKind
from .scope import LifecycleScope

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DEADLINE = 15.0
DEFAULT_WRITE_TIMEOUT = 10.0

FailureListener = Callable[[MutationError], Any]


def new_idempotency_key() -> str:
    """Random 128-bit key rendered as hex."""
    return uuid.uuid4().hex


def mark_optimistic(entity: Any, flag: bool) -> Any:
    """Return a copy of a dataclass entity with its optimistic flag set."""
    if getattr(entity, "optimistic", flag) == flag:
        return entity
    return dataclasses.replace(entity, optimistic=flag)


async def guarded_write(
    write: Callable[[], Awaitable[Any]],
    timeout: float,
    key: Optional[str] = None,
) -> Any:
    """
    Run a store write under a hard timeout, translating store failures.

    Raises:
        MutationTimeoutError: no answer within `timeout` seconds.
        MutationNotFoundError: the session or row no longer exists.
        MutationFailedError: any other failure.
    """
    try:
        return await asyncio.wait_for(write(), timeout=timeout)
    except (asyncio.TimeoutError, StoreTimeoutError) as e:
        logger.warning(f"Write {key or ''} timed out after {timeout}s")
        raise MutationTimeoutError(key=key, cause=e)
    except NotFoundError as e:
        logger.warning(f"Write {key or ''} rejected, target missing: {e}")
        raise MutationNotFoundError(key=key, cause=e)
    except MutationError:
        raise
    except Exception as e:
        logger.error(f"Write {key or ''} failed: {e}")
        raise MutationFailedError(str(e) or None, key=key, cause=e)


@dataclass
class PendingMutation:
    """A provisional entity waiting for confirmation."""
    key: str
    entity: Any
    started_at: float
    deadline: Optional[asyncio.TimerHandle] = None


class OptimisticMutationTracker(Generic[T]):
    """
    Applies create mutations optimistically to a MaterializedCollection.

    Feed events for the tracked partition must go through handle_event() so
    that an echo can settle its pending mutation.
    """

    def __init__(
        self,
        collection: MaterializedCollection,
        deadline: float = DEFAULT_DEADLINE,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        on_change: Optional[Callable[[], Any]] = None,
        mark: Callable[[Any, bool], Any] = mark_optimistic,
    ):
        """
        Args:
            collection: The visible collection the provisional entities live in.
            deadline: Seconds before an unconfirmed entity is withdrawn.
            write_timeout: Hard timeout for the store write itself.
            on_change: Called whenever the collection was modified here.
            mark: Returns a copy of an entity with the optimistic flag set.
        """
        self.collection = collection
        self.deadline = deadline
        self.write_timeout = write_timeout
        self._on_change = on_change
        self._mark = mark

        self._scope = LifecycleScope("optimistic")
        self._pending: Dict[str, PendingMutation] = {}
        self._failure_listeners: List[FailureListener] = []
        self.failures: List[MutationError] = []
        self._expired: Dict[str, DeliveryExpiredError] = {}

    @property
    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def add_failure_listener(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    async def submit(
        self,
        build: Callable[[str], T],
        write: Callable[[T], Awaitable[Any]],
    ) -> T:
        """
        Show an entity right away, then write it to the store.

        Args:
            build: Builds the entity from a fresh idempotency key.
            write: Coroutine function performing the store write.

        Returns:
            The entity with its optimistic flag cleared.

        Raises:
            MutationTimeoutError: the write did not finish within write_timeout.
            MutationNotFoundError: the session no longer exists.
            MutationFailedError: any other store failure.
        """
        key = new_idempotency_key()
        provisional = self._mark(build(key), True)
        if self.collection.key_of(provisional) != key:
            raise ValueError("build() must use the idempotency key as the entity id")

        loop = asyncio.get_running_loop()
        pending = PendingMutation(key=key, entity=provisional, started_at=loop.time())
        pending.deadline = self._scope.call_later(self.deadline, self._expire, key)
        self._pending[key] = pending
        self.collection.upsert(provisional)
        self._changed()

        try:
            await guarded_write(lambda: write(provisional), self.write_timeout, key=key)
        except MutationError as e:
            self._rollback(key)
            expired = self._expired.pop(key, None)
            if expired is not None:
                raise expired from e
            raise
        except BaseException:
            self._rollback(key)
            raise
        self._expired.pop(key, None)

        return self._acknowledge(key, provisional)

    def handle_event(self, event: ChangeEvent) -> bool:
        """Apply an authoritative event, settling a matching pending mutation."""
        if event.kind != ChangeKind.DELETE and event.key in self._pending:
            pending = self._pending.pop(event.key)
            self._scope.cancel_timer(pending.deadline)
            logger.debug(f"Pending mutation {event.key} settled by echo")

        changed = self.collection.apply(event)
        if changed:
            self._changed()
        return changed

    def _acknowledge(self, key: str, provisional: T) -> T:
        pending = self._pending.pop(key, None)
        current = self.collection.get(key)
        if pending is None:
            # Echo already replaced it, or the deadline withdrew it.
            return current if current is not None else self._mark(provisional, False)

        self._scope.cancel_timer(pending.deadline)
        confirmed = self._mark(current if current is not None else provisional, False)
        if self.collection.upsert(confirmed):
            self._changed()
        return confirmed

    def _rollback(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        self._scope.cancel_timer(pending.deadline)
        if self.collection.remove(key) is not None:
            self._changed()

    def _expire(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        logger.warning(f"Optimistic entity {key} expired after {self.deadline}s")
        if self.collection.remove(key) is not None:
            self._changed()

        error = DeliveryExpiredError(key=key)
        self._expired[key] = error
        self.failures.append(error)
        for listener in list(self._failure_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.exception(f"Failure listener raised: {e}")

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    async def close(self) -> None:
        """Cancel every deadline timer. Provisional entities stay as they are."""
        await self._scope.close()
        self._pending.clear()
        self._expired.clear()


__all__ = [
    "OptimisticMutationTracker",
    "PendingMutation",
    "new_idempotency_key",
    "mark_optimistic",
    "guarded_write",
    "DEFAULT_DEADLINE",
    "DEFAULT_WRITE_TIMEOUT",
]
