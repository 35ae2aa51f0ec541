"""
Counter Reconciler

Derives the lifetime kill/death/loot counters on startup. Deaths are counted in
both the primary event log and the game client's own death log; the higher
reading wins and deaths missing from the primary log are backfilled into it.
"""

import asyncio
import logging
from typing import Callable

from . import database
from .models import PersistentCounters, now_ms

log = logging.getLogger("FleetTelemetry.Reconciler")


class CounterReconciler:
    def __init__(self, store, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock

    async def reconcile(self) -> PersistentCounters:
        """
        Count, backfill and persist the counters. Requires a connected store;
        database errors propagate so the caller can retry.
        """
        kills, deaths, items, secondary_deaths = await asyncio.gather(
            self.store.run(database.blocking_count_events, 'kill'),
            self.store.run(database.blocking_count_events, 'death'),
            self.store.run(database.blocking_count_events, 'loot'),
            self.store.run(database.blocking_count_secondary_deaths),
        )

        if secondary_deaths > deaths:
            log.info(f"Secondary death log has {secondary_deaths} record(s), event log has {deaths}. Backfilling...")
            records = await self.store.run(database.blocking_get_secondary_deaths)
            await self.store.run(database.blocking_backfill_deaths, records,
                                 self.clock() + self.store.event_ttl_ms)

        counters = PersistentCounters(
            kills=kills,
            deaths=max(deaths, secondary_deaths),
            items_looted=items,
            last_updated=self.clock(),
        )
        await self.store.run(database.blocking_save_counters, counters)
        log.info(f"Loaded dashboard stats: {counters.kills} kills, {counters.deaths} deaths, "
                 f"{counters.items_looted} items")
        return counters
