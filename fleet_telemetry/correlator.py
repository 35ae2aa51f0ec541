import asyncio
import logging
from typing import Iterable, List

from .config import CORRELATION_BEFORE_MS, HISTORY_CORRELATION_AFTER_MS, LIVE_CORRELATION_AFTER_MS
from .models import CorrelatedEvent, HistoryRow

log = logging.getLogger("FleetTelemetry.Correlator")


class EventCorrelator:
    """Finds the logged events that plausibly explain a gold or experience change."""

    def __init__(self, store, before_ms: int = CORRELATION_BEFORE_MS):
        self.store = store
        self.before_ms = before_ms

    async def correlate(self, timestamp: int, event_types: Iterable[str], after_ms: int) -> List[CorrelatedEvent]:
        """
        Events of the given types with timestamps in [timestamp - before_ms, timestamp + after_ms],
        in the order they were logged. Any failure yields an empty list.
        """
        try:
            events = await self.store.query_events(
                types=event_types,
                start=timestamp - self.before_ms,
                end=timestamp + after_ms,
                descending=False,
            )
        except Exception as e:
            log.debug(f"Correlation query failed at {timestamp}: {e}")
            return []
        return [CorrelatedEvent(type=e.type, message=e.message, character=e.character) for e in events]

    async def correlate_live(self, timestamp: int, event_types: Iterable[str]) -> List[CorrelatedEvent]:
        return await self.correlate(timestamp, event_types, LIVE_CORRELATION_AFTER_MS)

    async def correlate_historical(self, timestamp: int, event_types: Iterable[str]) -> List[CorrelatedEvent]:
        return await self.correlate(timestamp, event_types, HISTORY_CORRELATION_AFTER_MS)

    async def enrich(self, rows: List[HistoryRow], event_types: Iterable[str]) -> List[HistoryRow]:
        """Attach historical-window events to each row concurrently."""
        event_types = tuple(event_types)
        results = await asyncio.gather(*(self.correlate_historical(row.timestamp, event_types) for row in rows))
        for row, events in zip(rows, results):
            row.events = events
        return rows
