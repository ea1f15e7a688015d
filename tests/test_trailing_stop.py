from decimal import Decimal

import pytest

from futures_bot.errors import TrackerStateError
from futures_bot.models import TradeDirection
from futures_bot.trailing_stop import TrackerPhase, TrailingStopTracker


def test_initial_stop_set_from_entry():
    tracker = TrailingStopTracker(Decimal("2.0"))
    tracker.initialize(Decimal("100"))
    assert tracker.phase is TrackerPhase.OPEN
    assert tracker.highest_price == Decimal("100")
    assert tracker.stop_price() == Decimal("98.00")


def test_never_lower():
    tracker = TrailingStopTracker(Decimal("2.0"))
    tracker.initialize(Decimal("100"))
    highs = []
    for price in ["105", "103", "110", "90", "109.99"]:
        tracker.update(Decimal(price))
        highs.append(tracker.highest_price)
    assert highs == sorted(highs)
    assert tracker.highest_price == Decimal("110")


def test_update_reports_whether_extreme_moved():
    tracker = TrailingStopTracker(Decimal("1.0"))
    tracker.initialize(Decimal("100"))
    assert tracker.update(Decimal("101")) is True
    assert tracker.update(Decimal("100.5")) is False
    assert tracker.update(Decimal("101")) is False


def test_trigger_at_stop_level():
    tracker = TrailingStopTracker(Decimal("2.0"))
    tracker.initialize(Decimal("100"))
    tracker.update(Decimal("110"))
    assert tracker.stop_price() == Decimal("107.80")
    assert tracker.check_trigger(Decimal("108")) is False
    assert tracker.check_trigger(Decimal("107.80")) is True
    assert tracker.check_trigger(Decimal("107.6")) is True


def test_short_position_mirrors_long():
    tracker = TrailingStopTracker(Decimal("2.0"))
    tracker.initialize(Decimal("100"), TradeDirection.SHORT)
    tracker.update(Decimal("90"))
    tracker.update(Decimal("95"))
    assert tracker.lowest_price == Decimal("90")
    assert tracker.highest_price == Decimal("0")
    assert tracker.stop_price() == Decimal("91.80")
    assert tracker.check_trigger(Decimal("91")) is False
    assert tracker.check_trigger(Decimal("92")) is True


def test_double_initialize_raises():
    tracker = TrailingStopTracker(Decimal("1.5"))
    tracker.initialize(Decimal("100"))
    with pytest.raises(TrackerStateError):
        tracker.initialize(Decimal("120"))
    assert tracker.entry_price == Decimal("100")


def test_reset_returns_to_flat():
    tracker = TrailingStopTracker(Decimal("1.5"))
    tracker.initialize(Decimal("100"))
    tracker.update(Decimal("130"))
    tracker.reset()
    assert tracker.phase is TrackerPhase.FLAT
    assert tracker.position is None
    assert tracker.stop_price() is None
    assert tracker.check_trigger(Decimal("1")) is False
    assert tracker.update(Decimal("200")) is False

    tracker.initialize(Decimal("50"))
    assert tracker.highest_price == Decimal("50")


@pytest.mark.parametrize("percent", ["0", "100", "-1"])
def test_invalid_percent_rejected(percent):
    with pytest.raises(ValueError):
        TrailingStopTracker(Decimal(percent))


def test_entry_price_must_be_positive():
    tracker = TrailingStopTracker(Decimal("1"))
    with pytest.raises(ValueError):
        tracker.initialize(Decimal("0"))
    assert not tracker.is_open


def test_state_to_dict():
    tracker = TrailingStopTracker(Decimal("2.5"))
    tracker.initialize(Decimal("100"), TradeDirection.LONG)
    assert tracker.state.to_dict() == {
        "position": "LONG",
        "entry_price": "100",
        "extreme_price": "100",
        "trailing_stop_percent": "2.5",
    }
