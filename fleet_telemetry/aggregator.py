"""
Telemetry Aggregator

Owns the in-memory counters, sample windows and history recorders for one
fleet. All mutation happens on the event loop thread; callers on other threads
go through `log_event_threadsafe`. Persistence is fire-and-forget: writes are
spawned as background tasks and their failures are logged, never awaited by the
ingestion path.
"""

import asyncio
import contextlib
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set

from .agents import AgentState, character_payload, cumulative_xp
from .aggregate_cache import CachedAggregate
from .config import (COUNTER_FLUSH_EVERY_EVENTS, FULL_HISTORY_LIMIT, GOLD_EVENT_TYPES,
                     STORE_CONNECT_RETRY_SECONDS, XP_AGGREGATE_WINDOW_MS, XP_DELTA_REJECT_THRESHOLD,
                     XP_EVENT_TYPES, DEFAULT_PAGE_LIMIT)
from .correlator import EventCorrelator
from .errors import StoreError, WriteResult
from .history import HistoryRecorder
from .models import (DETAIL_TYPES, METRIC_GOLD, METRIC_XP, DashboardStats, Event, EventDetails,
                     PersistentCounters, details_from_dict, now_ms)
from .rates import RateCalculator
from .reconciler import CounterReconciler

log = logging.getLogger("FleetTelemetry.Aggregator")

COUNTED_EVENT_TYPES = frozenset({'kill', 'death', 'loot'})

Subscriber = Callable[[Dict[str, Any]], Awaitable[None]]


class TelemetryAggregator:
    def __init__(self, store, levels: Optional[Mapping[int, int]] = None, clock: Callable[[], int] = now_ms):
        self.store = store
        self.levels = dict(levels or {})
        self.clock = clock
        self.start_time = clock()
        self.ready = False

        self.kills = 0
        self.deaths = 0
        self.items_looted = 0

        self.rates = RateCalculator()
        self.correlator = EventCorrelator(store)
        self.reconciler = CounterReconciler(store, clock)
        self.xp_aggregate = CachedAggregate(self._compute_xp_per_hour)
        self.gold_history = HistoryRecorder(METRIC_GOLD, store, self.correlator, GOLD_EVENT_TYPES, self.publish)
        self.xp_history = HistoryRecorder(METRIC_XP, store, self.correlator, XP_EVENT_TYPES, self.publish,
                                          reject_threshold=XP_DELTA_REJECT_THRESHOLD)

        self._agents: List[AgentState] = []
        self._bank_snapshots: Dict[str, int] = {}
        self._subscribers: List[Subscriber] = []
        self._pending: Set[asyncio.Task] = set()
        self._init_task: Optional[asyncio.Task] = None

    # --- Lifecycle ---

    async def start(self):
        """Begin connecting to the store and reconciling counters in the background."""
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())

    async def _initialize(self):
        while True:
            if self.store.connected or await self.store.connect():
                try:
                    counters = await self.reconciler.reconcile()
                except StoreError as e:
                    log.warning(f"Event store not ready for reconciliation: {e}")
                except Exception:
                    log.error("Failed to reconcile dashboard counters:", exc_info=True)
                else:
                    self.kills = counters.kills
                    self.deaths = counters.deaths
                    self.items_looted = counters.items_looted
                    self.store.mark_ready()
                    self.ready = True
                    return
            await asyncio.sleep(STORE_CONNECT_RETRY_SECONDS)

    async def wait_ready(self):
        if self._init_task is not None:
            await asyncio.shield(self._init_task)

    async def stop(self):
        """Stop initialization, let in-flight writes finish and flush the counters once."""
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._init_task
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await self.flush_counters()

    def spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Background telemetry task failed:", exc_info=task.exception())

    # --- Observers ---

    def subscribe(self, callback: Subscriber):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def publish(self, payload: Dict[str, Any]):
        for callback in list(self._subscribers):
            try:
                await callback(payload)
            except Exception:
                log.error(f"Subscriber failed for '{payload.get('type')}' message:", exc_info=True)

    # --- Agents ---

    def set_agents(self, agents: Iterable[AgentState]):
        self._agents = list(agents)

    @property
    def agents(self) -> List[AgentState]:
        return list(self._agents)

    def record_bank_snapshot(self, owner: str, gold: int):
        """Remember the bank gold seen the last time one of `owner`'s characters visited the bank."""
        self._bank_snapshots[owner] = gold

    def total_gold(self) -> int:
        return sum(agent.gold or 0 for agent in self._agents)

    def bank_gold(self) -> int:
        per_owner: Dict[str, int] = {}
        for agent in self._agents:
            if agent.owner in per_owner:
                continue
            if agent.owner in self._bank_snapshots:
                per_owner[agent.owner] = self._bank_snapshots[agent.owner]
            elif agent.bank_gold is not None:
                per_owner[agent.owner] = agent.bank_gold
        return sum(per_owner.values())

    def total_xp(self) -> int:
        return sum(cumulative_xp(agent, self.levels) for agent in self._agents)

    # --- Ingestion ---

    def log_event(self, event_type: str, character: str, message: str,
                  details: Optional[EventDetails] = None) -> Event:
        if isinstance(details, dict) and event_type in DETAIL_TYPES:
            try:
                details = details_from_dict(event_type, details)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Malformed details for '{event_type}' event: {details!r}") from e
        event = Event(timestamp=self.clock(), type=event_type, character=character, message=message,
                      details=details if details is not None else {})

        if event_type == 'kill':
            self.kills += 1
        elif event_type == 'death':
            self.deaths += 1
        elif event_type == 'loot':
            self.items_looted += 1

        self.spawn(self.publish({'type': 'event', 'data': event.to_payload()}))
        self.spawn(self._persist_event(event))
        return event

    def log_error(self, character: str, message: str, details: Optional[Dict[str, Any]] = None) -> Event:
        return self.log_event('error', character, message, details)

    def log_event_threadsafe(self, loop: asyncio.AbstractEventLoop, event_type: str, character: str,
                             message: str, details: Optional[EventDetails] = None):
        loop.call_soon_threadsafe(functools.partial(self.log_event, event_type, character, message, details))

    async def _persist_event(self, event: Event):
        result = await self.store.insert_event(event)
        if not result.ok:
            return
        if event.type in COUNTED_EVENT_TYPES and \
                (self.kills + self.deaths + self.items_looted) % COUNTER_FLUSH_EVERY_EVENTS == 0:
            await self.flush_counters()

    async def flush_counters(self) -> WriteResult:
        counters = PersistentCounters(kills=self.kills, deaths=self.deaths, items_looted=self.items_looted,
                                      last_updated=self.clock())
        result = await self.store.save_counters(counters)
        if not result.ok:
            log.debug(f"Dashboard counters not flushed: {result.error}")
        return result

    # --- Snapshot tick ---

    def take_snapshot(self):
        """Sample gold and XP, then hand any non-zero deltas to the history recorders."""
        now = self.clock()
        gold = self.total_gold()
        bank = self.bank_gold()
        xp = self.total_xp()

        self.rates.record(now, gold, xp)

        gold_row = self.gold_history.observe(now, gold, bank_gold=bank)
        if gold_row is not None:
            self.spawn(self.gold_history.persist_and_publish(gold_row))
        xp_row = self.xp_history.observe(now, xp)
        if xp_row is not None:
            self.spawn(self.xp_history.persist_and_publish(xp_row))

    # --- Reads ---

    async def _compute_xp_per_hour(self) -> int:
        return await self.store.sum_positive_deltas(METRIC_XP, self.clock() - XP_AGGREGATE_WINDOW_MS)

    def get_character_stats(self) -> List[Dict[str, Any]]:
        return [character_payload(agent, self.levels) for agent in self._agents]

    async def get_dashboard_stats(self) -> DashboardStats:
        gold_rates = self.rates.gold_per_hour()
        xp_per_hour = await self.xp_aggregate.get()
        if xp_per_hour <= 0:
            xp_per_hour = self.rates.xp_per_hour()
        return DashboardStats(
            total_gold=self.total_gold(),
            bank_gold=self.bank_gold(),
            gold_gained_per_hour=gold_rates.gained,
            gold_spent_per_hour=gold_rates.spent,
            xp_per_hour=xp_per_hour,
            kills=self.kills,
            deaths=self.deaths,
            items=self.items_looted,
            uptime=self.clock() - self.start_time,
        )

    async def recent_events(self, limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0,
                            event_types: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """Newest-first activity feed. Error events never appear here."""
        if event_types:
            types = [t for t in event_types if t != 'error']
            if not types:
                return []
            events = await self.store.query_events(types=types, offset=offset, limit=limit)
        else:
            events = await self.store.query_events(exclude_types=['error'], offset=offset, limit=limit)
        return [event.to_payload() for event in events]

    async def recent_errors(self, limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0) -> List[Dict[str, Any]]:
        events = await self.store.query_events(types=['error'], offset=offset, limit=limit)
        return [event.to_payload() for event in events]

    async def gold_history_page(self, limit: int = FULL_HISTORY_LIMIT, offset: int = 0) -> List[Dict[str, Any]]:
        rows = await self.store.query_history(METRIC_GOLD, offset, limit)
        await self.correlator.enrich(rows, GOLD_EVENT_TYPES)
        return [row.to_payload() for row in rows]

    async def xp_history_page(self, limit: int = FULL_HISTORY_LIMIT, offset: int = 0) -> List[Dict[str, Any]]:
        rows = await self.store.query_history(METRIC_XP, offset, limit)
        await self.correlator.enrich(rows, XP_EVENT_TYPES)
        return [row.to_payload() for row in rows]

    async def special_monsters(self) -> List[Dict[str, Any]]:
        return await self.store.special_monsters()

    async def upcoming_respawns(self) -> List[Dict[str, Any]]:
        return await self.store.upcoming_respawns()
