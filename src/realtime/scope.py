"""
Lifecycle scope for timers and background tasks.

Every timer or task a component starts is created through its scope, so
closing the scope cancels all of them. Nothing fires against torn-down state.
"""
import asyncio
import logging
from typing import Any, Callable, Coroutine, List, Optional, Set

logger = logging.getLogger(__name__)


class LifecycleScope:
    """Tracks timer handles and tasks and cancels them on close()."""

    def __init__(self, name: str = "scope"):
        self.name = name
        self._timers: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of live timers and tasks."""
        return len(self._timers) + len(self._tasks)

    def call_later(
        self,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
    ) -> Optional[asyncio.TimerHandle]:
        """Schedule callback after delay seconds; returns None once closed."""
        if self._closed:
            logger.debug(f"[{self.name}] call_later ignored, scope closed")
            return None

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def _fire() -> None:
            self._timers.discard(handle)
            if not self._closed:
                callback(*args)

        handle = loop.call_later(delay, _fire)
        self._timers.add(handle)
        return handle

    def cancel_timer(self, handle: Optional[asyncio.TimerHandle]) -> None:
        if handle is None:
            return
        handle.cancel()
        self._timers.discard(handle)

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> Optional[asyncio.Task]:
        """Run a coroutine as a task owned by this scope."""
        if self._closed:
            coro.close()
            return None

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.name}] background task {task.get_name()} failed: {exc}")

    async def close(self) -> None:
        """Cancel every timer and task, then wait for the tasks to finish."""
        self._closed = True

        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()

        current = asyncio.current_task()
        tasks: List[asyncio.Task] = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"[{self.name}] task ended with {e!r} during close")
        self._tasks.clear()


__all__ = ["LifecycleScope"]
