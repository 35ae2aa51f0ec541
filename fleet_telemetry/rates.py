import math
from collections import deque
from typing import Deque, NamedTuple, Optional, Tuple

from .config import GOLD_RATE_MIN_HOUR_FRACTION, RATE_WINDOW_MS, XP_RATE_MIN_HOUR_FRACTION
from .models import Sample

HOUR_MS = 3_600_000


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class GoldRates(NamedTuple):
    gained: int
    spent: int


class SampleWindow:
    """Oldest-first samples of one cumulative metric, limited to a trailing time window."""

    def __init__(self, window_ms: int = RATE_WINDOW_MS):
        self.window_ms = window_ms
        self._samples: Deque[Sample] = deque()

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def samples(self) -> Tuple[Sample, ...]:
        return tuple(self._samples)

    @property
    def oldest(self) -> Optional[Sample]:
        return self._samples[0] if self._samples else None

    @property
    def newest(self) -> Optional[Sample]:
        return self._samples[-1] if self._samples else None

    def add(self, timestamp: int, value: int):
        self._samples.append(Sample(timestamp, value))
        self.prune(timestamp)

    def prune(self, now: int):
        cutoff = now - self.window_ms
        while self._samples and self._samples[0].timestamp < cutoff:
            self._samples.popleft()

    def hour_fraction(self) -> float:
        if len(self._samples) < 2:
            return 0.0
        return (self._samples[-1].timestamp - self._samples[0].timestamp) / HOUR_MS


class RateCalculator:
    """Per-hour gold and experience rates over the in-memory sample windows."""

    def __init__(self, window_ms: int = RATE_WINDOW_MS):
        self.gold = SampleWindow(window_ms)
        self.xp = SampleWindow(window_ms)

    def record(self, timestamp: int, gold: int, xp: int):
        self.gold.add(timestamp, gold)
        self.xp.add(timestamp, xp)

    def gold_per_hour(self) -> GoldRates:
        hour_fraction = self.gold.hour_fraction()
        if len(self.gold) < 2 or hour_fraction < GOLD_RATE_MIN_HOUR_FRACTION:
            return GoldRates(0, 0)

        # Gains and losses are accumulated separately so oscillation stays visible
        gained = spent = 0
        samples = self.gold.samples
        for previous, current in zip(samples, samples[1:]):
            delta = current.value - previous.value
            if delta > 0:
                gained += delta
            else:
                spent += -delta

        return GoldRates(round_half_up(gained / hour_fraction), round_half_up(spent / hour_fraction))

    def xp_per_hour(self) -> int:
        hour_fraction = self.xp.hour_fraction()
        if len(self.xp) < 2 or hour_fraction < XP_RATE_MIN_HOUR_FRACTION:
            return 0
        # Level resets and reconnects can make the reading negative
        return max(0, round_half_up((self.xp.newest.value - self.xp.oldest.value) / hour_fraction))
