from decimal import Decimal

import pytest

DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    """Manually advanced clock; ``sleep`` advances time instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_candles(closes, start_ms: int = 1_600_000_000_000, step_ms: int = DAY_MS):
    from futures_bot.models import Candle

    candles = []
    for i, close in enumerate(closes):
        close = Decimal(str(close))
        open_time = start_ms + i * step_ms
        candles.append(
            Candle(
                open_time=open_time,
                close_time=open_time + step_ms - 1,
                open=close,
                high=close,
                low=close,
                close=close,
                volume=Decimal("1"),
            )
        )
    return candles


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def candles():
    """Factory building daily candles with the given closes."""
    return make_candles


@pytest.fixture(autouse=True)
def _reset_log_secrets():
    """Secrets registered by one test must not mask log output in another."""
    from futures_bot.logging_setup import clear_secrets

    yield
    clear_secrets()
