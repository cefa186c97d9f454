"""
Request Pacing

Fixed-interval gate that keeps requests to public tile servers at a constant,
polite rate. Each request takes the next free slot; after every
``long_pause_every``-th request the gap to the following slot is the long
delay, otherwise the short one. The gate is shared by all workers fetching
from the same source, so adding workers never raises the request rate.
"""

import threading
import time
from typing import Callable, Optional

import structlog


class PacingGate:
    """Thread-safe fixed-interval request gate."""

    def __init__(
        self,
        short_delay: float = 0.05,
        long_delay: float = 0.2,
        long_pause_every: int = 10,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        name: str = "default"
    ):
        if long_pause_every < 1:
            raise ValueError("long_pause_every must be at least 1")
        if short_delay < 0 or long_delay < 0:
            raise ValueError("Pacing delays must not be negative")

        self.short_delay = short_delay
        self.long_delay = long_delay
        self.long_pause_every = long_pause_every
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot: Optional[float] = None
        self._issued = 0

        self.logger = structlog.get_logger(component="PacingGate", gate=name)

    @property
    def issued(self) -> int:
        """Number of slots handed out so far."""
        return self._issued

    def delay_after(self, request_number: int) -> float:
        """Gap between request ``request_number`` (1-based) and the next one."""
        if request_number % self.long_pause_every == 0:
            return self.long_delay
        return self.short_delay

    def wait(self) -> float:
        """
        Block until the caller may issue its request.

        Returns:
            Seconds spent waiting
        """
        with self._lock:
            now = self._clock()
            slot = now if self._next_slot is None else max(now, self._next_slot)
            self._issued += 1
            self._next_slot = slot + self.delay_after(self._issued)

        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay

    def reset(self) -> None:
        with self._lock:
            self._next_slot = None
            self._issued = 0
