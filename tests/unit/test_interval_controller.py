from datetime import datetime, timedelta, timezone

import pytest

from lsn_replicator.replication.interval import IntervalController

START = datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)


def _after(ms: int) -> datetime:
    return START + timedelta(milliseconds=ms)


@pytest.mark.unit
def test_idle_budget_exhausted_ends_interval():
    controller = IntervalController(max_interval_ms=5000)

    assert controller.should_end_interval(False, START, _after(6000))


@pytest.mark.unit
def test_open_transaction_never_ends_interval():
    controller = IntervalController(max_interval_ms=5000)

    assert not controller.should_end_interval(True, START, _after(6000))
    assert not controller.should_end_interval(True, START, _after(-6000))


@pytest.mark.unit
def test_remaining_budget_keeps_interval_open():
    controller = IntervalController(max_interval_ms=5000)

    assert not controller.should_end_interval(False, START, _after(1))
    assert not controller.should_end_interval(False, START, _after(4999))
    assert controller.should_end_interval(False, START, _after(5000))


@pytest.mark.unit
def test_clock_moving_backwards_ends_interval():
    controller = IntervalController(max_interval_ms=5000)

    assert controller.remaining_ms(START, _after(-1)) == 5001
    assert controller.should_end_interval(False, START, _after(-1))


@pytest.mark.unit
def test_unchanged_clock_keeps_interval_open():
    controller = IntervalController(max_interval_ms=5000)

    assert controller.remaining_ms(START, START) == 5000
    assert not controller.should_end_interval(False, START, START)


@pytest.mark.unit
def test_zero_max_interval_ends_as_soon_as_idle():
    controller = IntervalController(max_interval_ms=0)

    assert controller.should_end_interval(False, START, START)


@pytest.mark.unit
def test_min_interval_does_not_influence_decision():
    with_min = IntervalController(max_interval_ms=5000, min_interval_ms=60_000)
    without_min = IntervalController(max_interval_ms=5000)

    for elapsed in (-10, 0, 10, 4999, 5000, 6000):
        assert with_min.should_end_interval(
            False, START, _after(elapsed)
        ) == without_min.should_end_interval(False, START, _after(elapsed))


@pytest.mark.unit
def test_negative_max_interval_rejected():
    with pytest.raises(ValueError):
        IntervalController(max_interval_ms=-1)
