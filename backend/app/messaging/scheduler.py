"""Timer, cancellation and retry primitives for the messaging core.

Everything time-based in the core (typing expiry, the offline grace period,
push retry backoff) goes through these three small pieces so that expiry,
exhaustion and cancellation can be tested in isolation.

Thread Safety:
    All of these must be used from the event loop thread.
"""
import asyncio
from dataclasses import dataclass
from typing import Callable, Optional


class CancellationToken:
    """Cooperative cancellation flag that a sleeping task can wait on."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds unless cancelled first.

        Returns:
            True if the full delay elapsed, False if the token was cancelled.
        """
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False


class Timer:
    """One-shot timer that calls ``callback`` after ``delay`` seconds.

    Restarting an armed timer replaces the pending call instead of stacking a
    second one, which is what makes it usable as a debounce.
    """

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)

    # Debounce alias used by the presence tracker
    reset = start

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Total push attempts before giving up (>= 1).
        base_delay: Delay after the first failed attempt, in seconds.
        max_delay: Upper bound for any single delay, in seconds.
    """
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts
