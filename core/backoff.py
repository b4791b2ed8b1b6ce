"""Exponential backoff for reconnect attempts."""

import random
from typing import Optional


class Backoff:
    """
    Exponential backoff with an upper bound and optional jitter.

    The undelayed value for the n-th draw (0-based) is
    ``min(min_delay * factor ** n, max_delay)``. With jitter enabled the
    returned delay is drawn uniformly between ``min_delay`` and that value.

    Not thread-safe; owned by a single reconnect loop.
    """

    def __init__(
        self,
        min_delay: float = 0.1,
        max_delay: float = 5.0,
        factor: float = 2.0,
        jitter: bool = True,
        rng: Optional[random.Random] = None,
    ):
        if min_delay < 0:
            raise ValueError("min_delay must not be negative")
        if max_delay < min_delay:
            raise ValueError("max_delay must be >= min_delay")
        if factor < 1:
            raise ValueError("factor must be >= 1")

        self.min_delay = min_delay
        self.max_delay = max_delay
        self.factor = factor
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Number of delays drawn since the last reset."""
        return self._attempt

    def for_attempt(self, attempt: int) -> float:
        """Undelayed backoff for a 0-based attempt index, without jitter."""
        if self.min_delay == 0:
            return 0.0
        try:
            delay = self.min_delay * self.factor ** attempt
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)

    def duration(self) -> float:
        """Return the delay for the current attempt and advance the counter."""
        delay = self.for_attempt(self._attempt)
        self._attempt += 1
        if self.jitter and delay > self.min_delay:
            delay = self._rng.uniform(self.min_delay, delay)
        return delay

    def reset(self):
        """Start over from the minimum delay."""
        self._attempt = 0
