"""Correction pacing.

Corrections for one target are spaced on a repeating 16-step cycle:

    count % 16:  0..4  -> fast band
                 5..10 -> slow band
                11..15 -> fast band

Short bursts interleaved with slower stretches read as organic activity to
the remote platform. Callers own the counter; the policy is pure given
`count` and its random source.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .settings import AgentSettings

CYCLE_LENGTH = 16
SLOW_POSITIONS = range(5, 11)


def _uniform_half_open(rng: random.Random, lo: float, hi: float) -> float:
    if hi <= lo:
        return lo
    return lo + rng.random() * (hi - lo)


@dataclass
class DelayPolicy:
    fast_band: Tuple[float, float] = (4.0, 5.0)
    slow_band: Tuple[float, float] = (12.0, 13.0)
    gap_band: Tuple[float, float] = (10.0, 15.0)
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_settings(cls, settings: AgentSettings, *, rng: Optional[random.Random] = None) -> "DelayPolicy":
        return cls(
            fast_band=(settings.fast_delay_min_seconds, settings.fast_delay_max_seconds),
            slow_band=(settings.slow_delay_min_seconds, settings.slow_delay_max_seconds),
            gap_band=(settings.target_gap_min_seconds, settings.target_gap_max_seconds),
            rng=rng or random.Random(),
        )

    @staticmethod
    def is_fast(count: int) -> bool:
        return (int(count) % CYCLE_LENGTH) not in SLOW_POSITIONS

    def band_for(self, count: int) -> Tuple[float, float]:
        return self.fast_band if self.is_fast(count) else self.slow_band

    def next_delay(self, count: int) -> float:
        lo, hi = self.band_for(count)
        return _uniform_half_open(self.rng, lo, hi)

    def next_gap(self) -> float:
        """Pause between two targets in a sequential reconcile pass."""
        lo, hi = self.gap_band
        return _uniform_half_open(self.rng, lo, hi)
