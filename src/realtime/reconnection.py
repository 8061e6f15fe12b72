"""
Reconnection supervisor for one partition's change feed.

Owns the only broker subscription for its partition and drives it through
an explicit state machine:

    CONNECTING --SUBSCRIBED--> CONNECTED
    CONNECTED  --error/closed/timeout--> RETRYING (polling fallback on)
    RETRYING   --SUBSCRIBED--> CONNECTED (polling fallback off, attempts reset)
    RETRYING   --attempts exhausted--> FAILED (polling fallback stays on)
    any        --refresh()--> CONNECTING (attempts reset, immediate reconnect)
    any        --stop()--> STOPPED

Every subscription attempt gets a generation number. Status signals from an
older generation are ignored, so a late CLOSED from a torn-down channel can
never knock over its replacement.
"""
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from .change_feed import ChangeFeedClient, FeedHandle
from .events import ChannelStatus, ConnectionState, EventCallback, Partition
from .polling import PollingFallback
from .scope import LifecycleScope

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState], Any]


class SupervisorState(str, Enum):
    """Internal states; RETRYING is reported publicly as DEGRADED_POLLING."""
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RETRYING = "RETRYING"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


PUBLIC_STATES = {
    SupervisorState.IDLE: ConnectionState.CONNECTING,
    SupervisorState.CONNECTING: ConnectionState.CONNECTING,
    SupervisorState.CONNECTED: ConnectionState.CONNECTED,
    SupervisorState.RETRYING: ConnectionState.DEGRADED_POLLING,
    SupervisorState.FAILED: ConnectionState.FAILED,
    # A stopped supervisor no longer delivers anything.
    SupervisorState.STOPPED: ConnectionState.FAILED,
}


@dataclass
class ReconnectPolicy:
    """Configuration for reconnection with exponential backoff."""
    base_delay: float = 1.0          # Delay before the first retry
    max_delay: float = 30.0          # Cap on any single delay
    max_attempts: int = 5            # Retries before giving up
    subscribe_timeout: float = 10.0  # Silence after subscribe() counts as TIMED_OUT
    jitter: float = 0.0              # Random jitter factor (0-1)

    @classmethod
    def from_settings(cls, settings: Any) -> "ReconnectPolicy":
        return cls(
            base_delay=settings.reconnect_base_delay,
            max_delay=settings.reconnect_max_delay,
            max_attempts=settings.reconnect_max_attempts,
            subscribe_timeout=settings.subscribe_timeout,
        )


class BackoffStrategy:
    """Helper to calculate exponential backoff with optional jitter."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0, jitter: float = 0.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.attempts = 0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): min(cap, base * 2^(attempt-1))."""
        delay = min(self.max_delay, self.base_delay * (2 ** (max(attempt, 1) - 1)))
        if self.jitter:
            delay = min(self.max_delay, delay + delay * self.jitter * random.random())
        return delay

    def get_delay(self) -> float:
        """Advances the attempt counter and returns its delay."""
        self.attempts += 1
        return self.delay_for(self.attempts)

    def reset(self):
        """Resets the attempt counter."""
        self.attempts = 0


class ReconnectionSupervisor:
    """
    Keeps one partition's change feed alive.

    The supervisor is the only component that creates or destroys the
    partition's broker subscription. Failures never raise: they move the
    state machine and switch the polling fallback on.
    """

    def __init__(
        self,
        partition: Partition,
        feed: ChangeFeedClient,
        on_event: EventCallback,
        policy: Optional[ReconnectPolicy] = None,
        fallback: Optional[PollingFallback] = None,
    ):
        """
        Args:
            partition: Partition to keep subscribed.
            feed: Change-feed client used to open subscriptions.
            on_event: Receives every ChangeEvent from the feed.
            policy: Backoff and timeout configuration.
            fallback: Polling fallback activated while the feed is down.
        """
        self.partition = partition
        self.feed = feed
        self.on_event = on_event
        self.policy = policy or ReconnectPolicy()
        self.fallback = fallback

        self._backoff = BackoffStrategy(
            base_delay=self.policy.base_delay,
            max_delay=self.policy.max_delay,
            jitter=self.policy.jitter,
        )
        self._scope = LifecycleScope(f"supervisor:{partition.key}")
        self._state = SupervisorState.IDLE
        self._handle: Optional[FeedHandle] = None
        self._generation = 0
        self._failed_generation = -1
        self._retry_timer = None
        self._timeout_timer = None
        self._listeners: List[StateListener] = []

        # Delays scheduled during the current failure streak
        self.retry_delays: List[float] = []
        self.connect_count = 0

    # --- State ---

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        return PUBLIC_STATES[self._state]

    @property
    def attempt(self) -> int:
        return self._backoff.attempts

    @property
    def has_live_subscription(self) -> bool:
        return self._handle is not None and self._handle.active

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _transition(self, new_state: SupervisorState) -> None:
        old_public = self.connection_state
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(
                f"Partition {self.partition.key}: {old_state.value} -> {new_state.value}"
            )
        if self.connection_state != old_public:
            for listener in list(self._listeners):
                try:
                    listener(self.connection_state)
                except Exception as e:
                    logger.exception(f"Connection state listener failed: {e}")

    # --- Lifecycle ---

    async def start(self) -> None:
        """Open the first subscription."""
        if self._state not in (SupervisorState.IDLE, SupervisorState.STOPPED):
            logger.warning(f"Supervisor for {self.partition.key} already started")
            return
        if self._scope.closed:
            self._scope = LifecycleScope(f"supervisor:{self.partition.key}")
        self._transition(SupervisorState.CONNECTING)
        await self._open()

    async def refresh(self) -> None:
        """Reset the attempt counter and reconnect now, whatever the state."""
        if self._state == SupervisorState.STOPPED:
            return
        logger.info(f"Manual refresh of {self.partition.key}")
        self._scope.cancel_timer(self._retry_timer)
        self._retry_timer = None
        self._backoff.reset()
        self.retry_delays.clear()
        self._transition(SupervisorState.CONNECTING)
        await self._open()

    async def stop(self) -> None:
        """Tear down the subscription, timers and fallback."""
        if self._state == SupervisorState.STOPPED:
            return
        self._generation += 1
        self._transition(SupervisorState.STOPPED)
        await self._scope.close()
        self._retry_timer = None
        self._timeout_timer = None
        if self.fallback is not None:
            await self.fallback.aclose()
        await self._release_handle()
        orphan = self.feed.handle_for(self.partition)
        if orphan is not None:
            await self.feed.unsubscribe(orphan)

    # --- Subscription management ---

    async def _release_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            await self.feed.unsubscribe(handle)

    async def _open(self) -> None:
        """Replace the current subscription with a fresh one."""
        self._generation += 1
        generation = self._generation
        self._scope.cancel_timer(self._timeout_timer)
        self._timeout_timer = None

        await self._release_handle()
        if generation != self._generation:
            return

        self.connect_count += 1
        try:
            handle = await self.feed.subscribe(
                self.partition,
                self.on_event,
                on_status=lambda status: self._on_status(generation, status),
            )
        except Exception as e:
            logger.warning(f"Subscribe failed for {self.partition.key}: {e}")
            self._on_status(generation, ChannelStatus.CHANNEL_ERROR)
            return

        if generation != self._generation:
            # Superseded while subscribing (gave up, refreshed or stopped).
            await self.feed.unsubscribe(handle)
            return
        self._handle = handle

        if generation == self._generation and self._state in (
            SupervisorState.CONNECTING,
            SupervisorState.RETRYING,
        ):
            self._timeout_timer = self._scope.call_later(
                self.policy.subscribe_timeout,
                self._on_status,
                generation,
                ChannelStatus.TIMED_OUT,
            )

    def _on_status(self, generation: int, status: ChannelStatus) -> None:
        if generation != self._generation or self._state == SupervisorState.STOPPED:
            logger.debug(f"Stale status {status.value} for {self.partition.key} ignored")
            return

        if status == ChannelStatus.SUBSCRIBED:
            self._scope.cancel_timer(self._timeout_timer)
            self._timeout_timer = None
            self._on_connected()
            return

        if generation == self._failed_generation:
            # CHANNEL_ERROR is usually followed by CLOSED for the same channel.
            return
        self._failed_generation = generation
        self._scope.cancel_timer(self._timeout_timer)
        self._timeout_timer = None
        logger.warning(f"Change feed {self.partition.key} reported {status.value}")
        self._on_failure()

    # --- Transitions ---

    def _on_connected(self) -> None:
        self._backoff.reset()
        self.retry_delays.clear()
        self._transition(SupervisorState.CONNECTED)
        if self.fallback is not None and self.fallback.is_running:
            self.fallback.stop()

    def _on_failure(self) -> None:
        if self._state in (SupervisorState.FAILED, SupervisorState.STOPPED):
            return

        attempt = self._backoff.attempts + 1
        if attempt > self.policy.max_attempts:
            self._on_exhausted()
            return

        delay = self._backoff.get_delay()
        self.retry_delays.append(delay)
        self._transition(SupervisorState.RETRYING)
        self._activate_fallback()

        logger.info(
            f"Reconnecting {self.partition.key} in {delay:.2f}s "
            f"(attempt {attempt}/{self.policy.max_attempts})"
        )
        self._scope.cancel_timer(self._retry_timer)
        self._retry_timer = self._scope.call_later(delay, self._fire_retry)

    def _fire_retry(self) -> None:
        self._retry_timer = None
        self._scope.spawn(self._open(), name=f"reconnect:{self.partition.key}")

    def _on_exhausted(self) -> None:
        logger.error(
            f"Change feed {self.partition.key} failed after "
            f"{self.policy.max_attempts} attempts, staying on polling"
        )
        self._transition(SupervisorState.FAILED)
        self._activate_fallback()
        self._generation += 1
        self._scope.spawn(self._release_handle(), name=f"release:{self.partition.key}")

    def _activate_fallback(self) -> None:
        if self.fallback is not None:
            self.fallback.start()


__all__ = [
    "BackoffStrategy",
    "ReconnectPolicy",
    "ReconnectionSupervisor",
    "SupervisorState",
    "StateListener",
]
