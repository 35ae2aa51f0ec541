"""
Tests for the in-memory sample windows and per-hour rate calculation.
"""

import pytest

from fleet_telemetry.rates import RateCalculator, SampleWindow, round_half_up

from conftest import T0

MINUTE = 60_000


def test_window_span_never_exceeds_one_hour():
    window = SampleWindow()
    for i in range(0, 200):
        window.add(T0 + i * 10_000, i)
        assert window.newest.timestamp - window.oldest.timestamp <= 3_600_000

    # 200 samples at 10s spacing covers 1990s, so nothing has been pruned yet
    assert len(window) == 200


def test_window_prunes_from_the_front():
    window = SampleWindow()
    window.add(T0, 1)
    window.add(T0 + 30 * MINUTE, 2)
    window.add(T0 + 61 * MINUTE, 3)

    assert [s.value for s in window.samples] == [2, 3]


def test_gold_rates_split_gains_and_spending():
    # 10 then 20 minutes apart, 30 minutes total
    rates = RateCalculator()
    rates.record(T0, 100, 0)
    rates.record(T0 + 10 * MINUTE, 150, 0)
    rates.record(T0 + 30 * MINUTE, 120, 0)

    gained, spent = rates.gold_per_hour()

    assert gained == 100
    assert spent == 60


def test_gold_rate_needs_two_samples():
    rates = RateCalculator()
    rates.record(T0, 100, 0)

    assert rates.gold_per_hour() == (0, 0)


def test_gold_rate_zero_below_minimum_span():
    # 30s is under 1% of an hour (36s)
    rates = RateCalculator()
    rates.record(T0, 100, 0)
    rates.record(T0 + 30_000, 5000, 0)

    assert rates.gold_per_hour() == (0, 0)


def test_xp_rate_zero_below_minimum_span():
    # 4 minutes is under 8% of an hour
    rates = RateCalculator()
    rates.record(T0, 0, 1000)
    rates.record(T0 + 4 * MINUTE, 0, 9000)

    assert rates.xp_per_hour() == 0


def test_xp_rate_uses_first_and_last_sample():
    rates = RateCalculator()
    rates.record(T0, 0, 1000)
    rates.record(T0 + 6 * MINUTE, 0, 500)
    rates.record(T0 + 12 * MINUTE, 0, 3000)

    # 2000 XP over 0.2h
    assert rates.xp_per_hour() == 10_000


def test_xp_rate_clamped_at_zero():
    rates = RateCalculator()
    rates.record(T0, 0, 50_000)
    rates.record(T0 + 10 * MINUTE, 0, 20_000)

    assert rates.xp_per_hour() == 0


@pytest.mark.parametrize("value,expected", [(0.5, 1), (1.49, 1), (2.5, 3), (-0.4, 0)])
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected
