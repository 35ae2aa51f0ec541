from unittest.mock import AsyncMock, Mock

import pytest

from fleet_telemetry.config import XP_DELTA_REJECT_THRESHOLD
from fleet_telemetry.errors import StoreUnavailable, WriteResult
from fleet_telemetry.history import HistoryRecorder
from fleet_telemetry.models import METRIC_GOLD, METRIC_XP, CorrelatedEvent, HistoryRow

from conftest import T0


def make_recorder(metric=METRIC_XP, reject_threshold=XP_DELTA_REJECT_THRESHOLD, insert_result=None):
    store = Mock()
    store.insert_history = AsyncMock(return_value=insert_result or WriteResult.success())
    correlator = Mock()
    correlator.correlate_live = AsyncMock(return_value=[CorrelatedEvent('kill', 'Killed goo', 'warrior1')])
    publish = AsyncMock()
    recorder = HistoryRecorder(metric, store, correlator, ('kill', 'levelup'), publish,
                               reject_threshold=reject_threshold)
    return recorder, store, correlator, publish


def test_first_observation_only_seeds():
    recorder, *_ = make_recorder()

    assert recorder.observe(T0, 5000) is None
    assert recorder.last_value == 5000


def test_zero_delta_is_never_recorded():
    recorder, *_ = make_recorder()
    recorder.observe(T0, 5000)

    assert recorder.observe(T0 + 10_000, 5000) is None


def test_large_xp_jump_rejected_but_pointer_advances():
    recorder, *_ = make_recorder()
    recorder.observe(T0, 1000)

    assert recorder.observe(T0 + 10_000, 1_501_000) is None
    assert recorder.last_value == 1_501_000

    # Next tick measures from the new reading instead of re-flagging the jump
    row = recorder.observe(T0 + 20_000, 1_501_500)
    assert row is not None
    assert row.delta == 500


def test_gold_tracks_bank_but_keeps_parts():
    recorder, *_ = make_recorder(metric=METRIC_GOLD, reject_threshold=None)
    recorder.observe(T0, 1000, bank_gold=5000)

    row = recorder.observe(T0 + 10_000, 1200, bank_gold=4900)

    assert row.delta == 100
    assert row.value == 1200
    assert row.bank_gold == 4900
    assert recorder.entry_type == 'goldEntry'


async def test_persist_and_publish_pushes_correlated_entry():
    recorder, store, correlator, publish = make_recorder()
    row = HistoryRow(metric=METRIC_XP, timestamp=T0, value=900, delta=40)

    await recorder.persist_and_publish(row)

    store.insert_history.assert_awaited_once_with(row)
    correlator.correlate_live.assert_awaited_once_with(T0, ('kill', 'levelup'))
    publish.assert_awaited_once()
    message = publish.await_args.args[0]
    assert message['type'] == 'xpEntry'
    assert message['data']['delta'] == 40
    assert message['data']['events'] == [{'type': 'kill', 'message': 'Killed goo', 'character': 'warrior1'}]


async def test_failed_persist_is_ignored():
    failure = WriteResult.failure(StoreUnavailable("store not ready"))
    recorder, store, _, publish = make_recorder(insert_result=failure)
    recorder.observe(T0, 100)
    row = recorder.observe(T0 + 10_000, 150)

    await recorder.persist_and_publish(row)

    publish.assert_awaited_once()
    assert recorder.last_value == 150
