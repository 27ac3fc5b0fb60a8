"""Time and block-hash sources for the lifecycle engine.

Deadlines are evaluated lazily against ``now()`` at call time; there is no
scheduler. ``recent_block_hash()`` seeds judge selection. Neither source is
meant to be unpredictable.
"""

import hashlib
import time
from abc import ABC, abstractmethod

from protocol import BLOCK_INTERVAL


def _block_hash(height: int) -> bytes:
    return hashlib.sha256(f"block:{height}".encode()).digest()


class Clock(ABC):
    @abstractmethod
    def now(self) -> int:
        """Current time in integer seconds. Never decreases."""
        ...

    @abstractmethod
    def recent_block_hash(self) -> bytes:
        """Hash of the most recent already-sealed block."""
        ...


class SystemClock(Clock):
    """Wall clock with a simulated block every ``block_interval`` seconds."""

    def __init__(self, block_interval: int = BLOCK_INTERVAL):
        self.block_interval = max(1, block_interval)
        self._last = 0

    def now(self) -> int:
        self._last = max(self._last, int(time.time()))
        return self._last

    def recent_block_hash(self) -> bytes:
        height = self.now() // self.block_interval
        return _block_hash(height - 1)


class ManualClock(Clock):
    """Clock advanced explicitly by tests and simulations."""

    def __init__(self, start: int = 1_700_000_000, block_interval: int = BLOCK_INTERVAL):
        self._now = start
        self.block_interval = max(1, block_interval)

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("clock cannot go backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: int) -> int:
        if timestamp < self._now:
            raise ValueError("clock cannot go backwards")
        self._now = timestamp
        return self._now

    def recent_block_hash(self) -> bytes:
        return _block_hash(self._now // self.block_interval - 1)
