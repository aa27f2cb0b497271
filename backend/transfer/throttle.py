"""Per-tier throughput ceilings and the smoothed speed estimate."""

import time
from dataclasses import dataclass

from config import (
    TIER_DRAIN_POLL,
    TIER_RATE_LIMITS,
    TIER_SPEED_ALPHA,
    TIER_WATERMARKS,
)
from signaling.models import Tier


@dataclass(frozen=True)
class ThroughputBudget:
    """Rate ceiling and backpressure thresholds for one connection."""
    tier: Tier
    bytes_per_second: float | None
    high_water_mark: int
    low_water_mark: int
    drain_poll_interval: float
    speed_alpha: float

    @classmethod
    def for_tier(cls, tier: Tier) -> "ThroughputBudget":
        high, low = TIER_WATERMARKS[tier.value]
        return cls(
            tier=tier,
            bytes_per_second=TIER_RATE_LIMITS[tier.value],
            high_water_mark=high,
            low_water_mark=low,
            drain_poll_interval=TIER_DRAIN_POLL[tier.value],
            speed_alpha=TIER_SPEED_ALPHA[tier.value],
        )

    @property
    def is_unrestricted(self) -> bool:
        return not self.bytes_per_second

    def chunk_delay(self, chunk_size: int) -> float:
        """Seconds to wait before sending a chunk of this size."""
        if self.is_unrestricted:
            return 0.0
        return chunk_size / self.bytes_per_second


class SpeedTracker:
    """Exponential moving average over the running average throughput."""

    def __init__(self, alpha: float = 0.15, clock=time.monotonic):
        self._alpha = alpha
        self._clock = clock
        self._started: float | None = None
        self._total = 0
        self._average = 0.0

    def start(self) -> None:
        self._started = self._clock()

    def record(self, byte_count: int) -> None:
        now = self._clock()
        if self._started is None:
            self._started = now
        self._total += byte_count
        elapsed = max(0.001, now - self._started)
        instant = self._total / elapsed

        if not self._average:
            self._average = instant
        else:
            self._average = (1 - self._alpha) * self._average + self._alpha * instant

    def get_speed(self) -> float:
        """Returns speed in bytes/sec."""
        return self._average
