"""Token bucket used to pace calls to the catalog proxy."""
import asyncio
import time
from typing import Callable


class RateLimiter:
    """Token bucket refilled continuously at `requests_per_minute`."""

    def __init__(
        self,
        requests_per_minute: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate = requests_per_minute
        self.tokens = float(requests_per_minute)
        self._clock = clock
        self.last_update = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        self.tokens = min(self.rate, self.tokens + elapsed * (self.rate / 60))
        self.last_update = now

    def acquire(self, tokens: int = 1) -> bool:
        """Take tokens if available; returns False without waiting otherwise."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def get_wait_time(self, tokens: int = 1) -> float:
        """Seconds until `tokens` will be available."""
        self._refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / (self.rate / 60)

    async def wait(self, tokens: int = 1) -> None:
        """Sleep until tokens are available, then take them."""
        while not self.acquire(tokens):
            await asyncio.sleep(max(self.get_wait_time(tokens), 0.01))
