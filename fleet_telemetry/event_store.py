"""
Event Store Adapter

Async front for the blocking SQLite functions in `database`. Every call runs on
a dedicated thread pool so queries never stall the event loop. Reads degrade to
a default value when the store is unavailable or a query fails; writes return a
WriteResult and leave the durability policy to the caller.
"""

import asyncio
import concurrent.futures
import functools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import database
from .config import (DATABASE_FILE, DB_EVENTS_RETENTION_DAYS, DB_HISTORY_RETENTION_DAYS,
                     DB_THREAD_POOL_SIZE, EXTERNAL_LIST_LIMIT)
from .errors import StoreUnavailable, TransientWriteFailure, WriteResult
from .models import Event, HistoryRow, PersistentCounters, now_ms

log = logging.getLogger("FleetTelemetry.EventStore")

DAY_MS = 86_400_000


class EventStore:
    def __init__(self, db_path: str = DATABASE_FILE,
                 executor: Optional[concurrent.futures.Executor] = None,
                 clock: Callable[[], int] = now_ms):
        self.db_path = db_path
        self.clock = clock
        self._owns_executor = executor is None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=DB_THREAD_POOL_SIZE, thread_name_prefix="fleet-db")
        self.connected = False  # Schema exists and the file is reachable
        self.ready = False  # Counters reconciled; general reads and writes allowed

    @property
    def event_ttl_ms(self) -> int:
        return DB_EVENTS_RETENTION_DAYS * DAY_MS

    @property
    def history_ttl_ms(self) -> int:
        return DB_HISTORY_RETENTION_DAYS * DAY_MS

    async def connect(self) -> bool:
        """Create or validate the schema. Returns False instead of raising when the store is unreachable."""
        try:
            await self._execute(database.init_db)
        except Exception as e:
            log.warning(f"Event store at '{self.db_path}' is not reachable yet: {e}")
            self.connected = False
            return False
        self.connected = True
        return True

    def mark_ready(self):
        self.ready = True
        log.info("Event store is ready for reads and writes.")

    async def _execute(self, func: Callable, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, self.db_path, *args, **kwargs))

    async def run(self, func: Callable, *args, **kwargs) -> Any:
        """Run a blocking database function once connected, before readiness. Errors propagate."""
        if not self.connected:
            raise StoreUnavailable("event store is not connected")
        return await self._execute(func, *args, **kwargs)

    async def _read(self, description: str, default: Any, func: Callable, *args, **kwargs) -> Any:
        if not self.ready:
            return default
        try:
            return await self._execute(func, *args, **kwargs)
        except Exception:
            log.error(f"Failed to fetch {description}:", exc_info=True)
            return default

    async def _write(self, description: str, func: Callable, *args, **kwargs) -> WriteResult:
        if not self.ready:
            return WriteResult.failure(StoreUnavailable(f"skipped {description}: store not ready"))
        try:
            await self._execute(func, *args, **kwargs)
        except Exception as e:
            log.error(f"Failed to save {description}: {e}")
            return WriteResult.failure(TransientWriteFailure(str(e)))
        return WriteResult.success()

    # --- Writes ---

    async def insert_event(self, event: Event) -> WriteResult:
        return await self._write("event", database.blocking_insert_event, event, self.clock() + self.event_ttl_ms)

    async def insert_history(self, row: HistoryRow) -> WriteResult:
        return await self._write(f"{row.metric} history", database.blocking_insert_history, row,
                                 self.clock() + self.history_ttl_ms)

    async def save_counters(self, counters: PersistentCounters) -> WriteResult:
        return await self._write("dashboard counters", database.blocking_save_counters, counters)

    # --- Reads ---

    async def query_events(self, types: Optional[Iterable[str]] = None,
                           exclude_types: Optional[Iterable[str]] = None,
                           start: Optional[int] = None, end: Optional[int] = None,
                           offset: int = 0, limit: Optional[int] = None,
                           descending: bool = True) -> List[Event]:
        return await self._read("events", [], database.blocking_query_events,
                                types=list(types) if types is not None else None,
                                exclude_types=list(exclude_types) if exclude_types else None,
                                start=start, end=end, offset=offset, limit=limit,
                                descending=descending, now=self.clock())

    async def query_history(self, metric: str, offset: int = 0, limit: int = 100) -> List[HistoryRow]:
        return await self._read(f"{metric} history", [], database.blocking_query_history,
                                metric, offset, limit, now=self.clock())

    async def sum_positive_deltas(self, metric: str, since: int) -> int:
        return await self._read(f"{metric} aggregate", 0, database.blocking_sum_positive_deltas, metric, since)

    async def special_monsters(self, limit: int = EXTERNAL_LIST_LIMIT) -> List[Dict[str, Any]]:
        return await self._read("special monsters", [], database.blocking_get_special_monsters, limit)

    async def upcoming_respawns(self, limit: int = EXTERNAL_LIST_LIMIT) -> List[Dict[str, Any]]:
        return await self._read("respawns", [], database.blocking_get_respawns, self.clock(), limit)

    # --- Maintenance ---

    async def prune_expired(self) -> Dict[str, int]:
        if not self.connected:
            return {}
        return await self._execute(database.blocking_db_prune, self.clock())

    def close(self):
        self.ready = False
        self.connected = False
        if self._owns_executor:
            self._executor.shutdown(wait=True)
            log.info("Event store thread pool shut down.")
