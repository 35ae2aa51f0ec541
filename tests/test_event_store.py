from unittest.mock import patch

from fleet_telemetry.errors import StoreUnavailable, TransientWriteFailure
from fleet_telemetry.event_store import EventStore
from fleet_telemetry.models import Event

from conftest import T0


async def test_reads_return_defaults_and_writes_skip_until_ready(temp_db, clock):
    store = EventStore(temp_db, clock=clock)
    try:
        assert await store.connect()

        result = await store.insert_event(Event(T0, 'kill', 'warrior1', 'Killed goo'))

        assert not result.ok
        assert isinstance(result.error, StoreUnavailable)
        assert await store.query_events() == []
        assert await store.sum_positive_deltas('xp', 0) == 0
        assert await store.special_monsters() == []
    finally:
        store.close()


async def test_connect_failure_is_reported_not_raised(tmp_path, clock):
    store = EventStore(str(tmp_path / "missing-dir" / "telemetry.db"), clock=clock)
    try:
        assert await store.connect() is False
        assert store.connected is False
    finally:
        store.close()


async def test_write_failure_becomes_transient_result(store):
    with patch("fleet_telemetry.database.blocking_insert_event", side_effect=RuntimeError("disk full")):
        result = await store.insert_event(Event(T0, 'loot', 'warrior1', 'Looted seashell'))

    assert not result.ok
    assert isinstance(result.error, TransientWriteFailure)


async def test_read_failure_returns_default(store):
    with patch("fleet_telemetry.database.blocking_query_events", side_effect=RuntimeError("boom")):
        assert await store.query_events(types=['kill']) == []


async def test_events_expire_after_retention(store, clock):
    await store.insert_event(Event(T0, 'kill', 'warrior1', 'Killed goo'))

    clock.advance(store.event_ttl_ms + 1)

    assert await store.query_events() == []
    assert (await store.prune_expired())['events'] == 1
