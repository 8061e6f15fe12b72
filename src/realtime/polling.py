"""
Polling fallback for a partition whose change feed is down.

Periodically re-fetches the whole partition, diffs it by id against the last
known snapshot and emits only the differences, using the same ChangeEvent
shape as the change feed so consumers do not care where events come from.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from .events import ChangeEvent, ChangeKind, EventCallback

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL = 3.0


def diff_snapshots(
    previous: Dict[str, Any],
    current: Dict[str, Any],
) -> List[ChangeEvent]:
    """Events that turn `previous` into `current` (both keyed by id)."""
    events: List[ChangeEvent] = []
    for key, entity in current.items():
        before = previous.get(key)
        if before is None:
            events.append(ChangeEvent(kind=ChangeKind.INSERT, entity=entity, key=key))
        elif before != entity:
            events.append(
                ChangeEvent(kind=ChangeKind.UPDATE, entity=entity, previous=before, key=key)
            )
    for key, entity in previous.items():
        if key not in current:
            events.append(ChangeEvent(kind=ChangeKind.DELETE, entity=entity, key=key))
    return events


class PollingFallback:
    """
    Time-based re-fetch of one partition.

    start() is idempotent: calling it while running never creates a second
    timer. The first fetch happens immediately, then every `interval` seconds.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Iterable[T]]],
        on_event: EventCallback,
        key: Callable[[T], str] = lambda e: e.id,
        interval: float = DEFAULT_POLL_INTERVAL,
        baseline: Optional[Callable[[], Iterable[T]]] = None,
        name: str = "partition",
    ):
        """
        Args:
            fetch: Coroutine function returning every entity of the partition.
            on_event: Receives the ChangeEvents produced by each diff.
            key: Extracts the id of an entity.
            interval: Seconds between fetches.
            baseline: Returns the consumer's current view; used to seed the
                snapshot whenever polling starts.
            name: Label used in logs.
        """
        self._fetch = fetch
        self._on_event = on_event
        self._key = key
        self.interval = interval
        self._baseline = baseline
        self.name = name

        self._snapshot: Dict[str, T] = {}
        self._task: Optional[asyncio.Task] = None
        self.poll_count = 0
        self.last_error: Optional[Exception] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def prime(self, entities: Iterable[T]) -> None:
        """Replace the last known snapshot without emitting anything."""
        self._snapshot = {self._key(e): e for e in entities}

    def start(self, interval: Optional[float] = None) -> None:
        """Begin polling. No-op if already running."""
        if interval is not None:
            self.interval = interval
        if self.is_running:
            return

        if self._baseline is not None:
            self.prime(self._baseline())

        logger.info(f"Polling fallback started for {self.name} every {self.interval}s")
        self._task = asyncio.create_task(self._run(), name=f"poll:{self.name}")

    def stop(self) -> None:
        """Cancel the polling timer."""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
            logger.info(f"Polling fallback stopped for {self.name}")
        self._task = None

    async def aclose(self) -> None:
        """Stop and wait for the polling task to unwind."""
        task = self._task
        self.stop()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> List[ChangeEvent]:
        """Fetch once, emit the differences and return them."""
        self.poll_count += 1
        try:
            fetched = list(await self._fetch())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = e
            logger.warning(f"Polling fetch failed for {self.name}: {e}")
            return []

        self.last_error = None
        current = {self._key(e): e for e in fetched}
        events = diff_snapshots(self._snapshot, current)
        self._snapshot = current

        if events:
            logger.debug(f"Polling {self.name}: {len(events)} change(s)")
        for event in events:
            try:
                self._on_event(event)
            except Exception as e:
                logger.exception(f"Polling consumer failed for {self.name}: {e}")
        return events


__all__ = ["PollingFallback", "diff_snapshots", "DEFAULT_POLL_INTERVAL"]
