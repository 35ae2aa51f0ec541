import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional

from .correlator import EventCorrelator
from .models import METRIC_GOLD, HistoryRow

log = logging.getLogger("FleetTelemetry.History")


class HistoryRecorder:
    """
    Turns successive cumulative readings of one metric into persisted deltas.

    `observe` runs on the snapshot tick and only touches in-memory state; the
    returned row is then handed to `persist_and_publish`, which the caller runs
    in the background.
    """

    def __init__(self, metric: str, store, correlator: EventCorrelator, event_types: Iterable[str],
                 publish: Callable[[Dict], Awaitable[None]], reject_threshold: Optional[int] = None):
        self.metric = metric
        self.store = store
        self.correlator = correlator
        self.event_types = tuple(event_types)
        self.publish = publish
        self.reject_threshold = reject_threshold
        self.last_value: Optional[int] = None

    @property
    def entry_type(self) -> str:
        return 'goldEntry' if self.metric == METRIC_GOLD else 'xpEntry'

    def observe(self, timestamp: int, value: int, bank_gold: Optional[int] = None) -> Optional[HistoryRow]:
        """
        Returns the row to persist, or None when the change is zero or rejected.

        When `bank_gold` is given the tracked value is `value + bank_gold`, while the
        row keeps both parts.
        """
        tracked = value + (bank_gold or 0)
        previous, self.last_value = self.last_value, tracked
        if previous is None:
            return None

        delta = tracked - previous
        if delta == 0:
            return None
        if self.reject_threshold is not None and abs(delta) >= self.reject_threshold:
            log.warning(f"Ignoring {self.metric} jump of {delta} (reconnect or recalculation artifact).")
            return None

        return HistoryRow(metric=self.metric, timestamp=timestamp, value=value, delta=delta, bank_gold=bank_gold)

    async def persist_and_publish(self, row: HistoryRow):
        await asyncio.gather(self._persist(row), self._publish(row))

    async def _persist(self, row: HistoryRow):
        result = await self.store.insert_history(row)
        if not result.ok:
            log.debug(f"{self.metric} history row at {row.timestamp} not persisted: {result.error}")

    async def _publish(self, row: HistoryRow):
        row.events = await self.correlator.correlate_live(row.timestamp, self.event_types)
        await self.publish({'type': self.entry_type, 'data': row.to_payload()})
