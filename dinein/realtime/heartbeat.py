"""
Connection health helpers for realtime clients

Latency is tracked for display purposes only (e.g. a "reconnecting"
banner); it never affects correctness.
"""

from collections import deque
from typing import Deque, Optional
import random


class LatencyTracker:
    """Rolling window of the last N round-trip samples"""

    def __init__(self, window: int = 10, unhealthy_ms: float = 1000.0):
        if window < 1:
            raise ValueError("window must be at least 1")
        self.window = window
        self.unhealthy_ms = unhealthy_ms
        self._samples: Deque[float] = deque(maxlen=window)

    def record(self, rtt_ms: float):
        """Add a round-trip sample in milliseconds"""
        if rtt_ms < 0:
            raise ValueError("rtt_ms cannot be negative")
        self._samples.append(float(rtt_ms))

    def reset(self):
        self._samples.clear()

    @property
    def samples(self) -> list:
        return list(self._samples)

    @property
    def average_ms(self) -> Optional[float]:
        if not self._samples:
            return None
        return sum(self._samples) / len(self._samples)

    @property
    def healthy(self) -> bool:
        """Healthy until the rolling average reaches the threshold"""
        average = self.average_ms
        if average is None:
            return True
        return average < self.unhealthy_ms


class ReconnectPolicy:
    """
    Capped exponential backoff with jitter and unlimited attempts.

    delay = min(base * 2^attempt, max) + uniform(0, jitter), in seconds.
    """

    def __init__(
        self,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 5000,
        jitter_ms: int = 500,
        rng: Optional[random.Random] = None
    ):
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_ms = jitter_ms
        self.attempt = 0
        self._rng = rng or random.Random()

    def next_delay(self) -> float:
        """Delay before the next attempt; advances the attempt counter"""
        base = min(self.base_delay_ms * (2 ** self.attempt), self.max_delay_ms)
        jitter = self._rng.uniform(0, self.jitter_ms) if self.jitter_ms else 0.0
        self.attempt += 1
        return (base + jitter) / 1000.0

    def reset(self):
        """Called after a successful connection"""
        self.attempt = 0
