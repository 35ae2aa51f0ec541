import logging
import time
from typing import Awaitable, Callable, Optional

from .config import XP_AGGREGATE_CACHE_SECONDS

log = logging.getLogger("FleetTelemetry.AggregateCache")


class CachedAggregate:
    """
    A single expensive scalar, recomputed at most once per `ttl_seconds`.

    A zero result is never reused, so the value recovers on the very next request
    once real activity resumes.
    """

    def __init__(self, compute: Callable[[], Awaitable[int]], ttl_seconds: float = XP_AGGREGATE_CACHE_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.compute = compute
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.value = 0
        self.computed_at: Optional[float] = None

    def is_fresh(self, now: float) -> bool:
        return self.computed_at is not None and self.value > 0 and now - self.computed_at < self.ttl_seconds

    async def get(self) -> int:
        now = self.clock()
        if self.is_fresh(now):
            return self.value
        self.value = await self.compute()
        self.computed_at = now
        log.debug(f"Recomputed cached aggregate: {self.value}")
        return self.value
