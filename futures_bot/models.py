"""
Value types shared by the indicator pipeline, rule evaluator and gateway.

Everything here is immutable: candles and indicator sets are produced once
per tick and never patched afterwards. A new ``MarketSnapshot`` is built on
every tick.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterator, Optional


class Timeframe(Enum):
    """Candle timeframes used by the strategy, keyed by exchange interval code."""

    DAILY = "1d"
    WEEKLY = "1w"

    @property
    def bar_duration(self) -> timedelta:
        return timedelta(days=1) if self is Timeframe.DAILY else timedelta(days=7)


class TradeDirection(Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class Candle:
    """OHLCV bar. Times are epoch milliseconds, prices are Decimal."""

    open_time: int
    close_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


class IndicatorSet(Mapping):
    """Read-only mapping of indicator name to reading.

    A reading of ``NaN`` means the indicator is not available (not enough
    history); it is a normal state, not an error.
    """

    def __init__(self, values: Optional[Dict[str, float]] = None):
        self._values = MappingProxyType(dict(values or {}))

    def __getitem__(self, name: str) -> float:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"IndicatorSet({dict(self._values)!r})"

    def value(self, name: str) -> float:
        """Return the reading for ``name``, or NaN if absent."""
        return self._values.get(name, math.nan)

    def is_available(self, name: str) -> bool:
        return not math.isnan(self.value(name))


@dataclass(frozen=True)
class MarketSnapshot:
    """Daily and weekly indicator readings produced by one tick."""

    daily: IndicatorSet
    weekly: IndicatorSet

    def for_timeframe(self, timeframe: Timeframe) -> IndicatorSet:
        return self.daily if timeframe is Timeframe.DAILY else self.weekly


@dataclass(frozen=True)
class OrderSpec:
    """Market order command passed to the gateway."""

    symbol: str
    side: OrderSide
    quantity: Decimal
    reduce_only: bool = False
    client_order_id: Optional[str] = None


class DecisionKind(Enum):
    ENTER = "ENTER"
    EXIT = "EXIT"
    HOLD = "HOLD"


TRAILING_STOP_REASON = "TRAILING_STOP"


@dataclass(frozen=True)
class TradeDecision:
    """Outcome of one rule evaluation.

    ``direction`` is set for ENTER, ``reason`` for EXIT.
    """

    kind: DecisionKind
    direction: Optional[TradeDirection] = None
    reason: Optional[str] = None

    @classmethod
    def enter(cls, direction: TradeDirection) -> "TradeDecision":
        return cls(DecisionKind.ENTER, direction=direction)

    @classmethod
    def exit(cls, reason: str) -> "TradeDecision":
        return cls(DecisionKind.EXIT, reason=reason)

    @classmethod
    def hold(cls) -> "TradeDecision":
        return cls(DecisionKind.HOLD)
