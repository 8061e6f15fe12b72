"""
Typing presence aggregation.

Keeps a time-windowed set of who is typing, fed by broadcast signals.
Nothing here is persisted; a fresh aggregator starts empty.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..ordering.models import TypingSignal

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 5.0
DEFAULT_SWEEP_INTERVAL = 1.0


class PresenceAggregator:
    """
    Who is typing right now.

    A start signal upserts (sender, now); a stop signal removes the sender; a
    periodic sweep drops entries older than the window in case a stop signal
    was lost. The local user is never reported.
    """

    def __init__(
        self,
        local_user: Optional[str] = None,
        window: float = DEFAULT_WINDOW,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[Callable[[List[str]], Any]] = None,
    ):
        self.local_user = local_user
        self.window = window
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._on_change = on_change
        self._active: Dict[str, float] = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def active_users(self) -> List[str]:
        """Typing users other than the local one, in the order they started."""
        ordered = sorted(self._active.items(), key=lambda kv: kv[1])
        return [name for name, _ in ordered if name != self.local_user]

    def last_seen(self, sender: str) -> Optional[float]:
        return self._active.get(sender)

    def handle_signal(self, signal: TypingSignal) -> None:
        """Apply a start or stop signal."""
        before = self.active_users
        if signal.typing:
            self._active[signal.sender_name] = self._clock()
        else:
            self._active.pop(signal.sender_name, None)
        self._notify_if_changed(before)

    def handle_payload(self, payload: Dict[str, Any]) -> None:
        """Broadcast entry point; malformed payloads are ignored."""
        try:
            signal = TypingSignal.from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring malformed typing payload: {e}")
            return
        self.handle_signal(signal)

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """Drop entries older than the window; returns the expired senders."""
        now = self._clock() if now is None else now
        before = self.active_users
        expired = [name for name, seen in self._active.items() if now - seen >= self.window]
        for name in expired:
            del self._active[name]
        if expired:
            logger.debug(f"Typing expired for {expired}")
        self._notify_if_changed(before)
        return expired

    def start(self) -> None:
        """Start the background sweep. No-op if already running."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._sweep_loop(), name="presence-sweep")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def clear(self) -> None:
        before = self.active_users
        self._active.clear()
        self._notify_if_changed(before)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def _notify_if_changed(self, before: List[str]) -> None:
        after = self.active_users
        if after != before and self._on_change is not None:
            try:
                self._on_change(after)
            except Exception as e:
                logger.exception(f"Presence listener failed: {e}")


__all__ = ["PresenceAggregator", "DEFAULT_WINDOW", "DEFAULT_SWEEP_INTERVAL"]
