"""
Entry/exit rule evaluation.

Conditions are predicates over a ``RuleContext`` (market snapshot, current
price and the trailing-stop tracker). ``RuleEvaluator.evaluate`` is a pure
function of that context:

    open position: trailing stop hit        -> EXIT(TRAILING_STOP)
                   any exit condition holds -> EXIT(<condition name>)
    flat:          every entry condition    -> ENTER(direction)
    otherwise                               -> HOLD

A condition that reads an unavailable (NaN) indicator does not hold.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable, List, Tuple

from .errors import ConfigurationError
from .indicators import BB_LOWER, BB_UPPER, MACD, MACD_SIGNAL, RSI
from .models import (
    TRAILING_STOP_REASON,
    MarketSnapshot,
    Timeframe,
    TradeDecision,
    TradeDirection,
)
from .trailing_stop import TrailingStopTracker


@dataclass(frozen=True)
class RuleContext:
    snapshot: MarketSnapshot
    current_price: Decimal
    tracker: TrailingStopTracker
    symbol: str = ""


class Condition(ABC):
    """A named predicate over a RuleContext."""

    name: str = ""

    @abstractmethod
    def holds(self, context: RuleContext) -> bool:
        pass

    def __repr__(self) -> str:
        return self.name or type(self).__name__


def _available(*values: float) -> bool:
    return not any(math.isnan(v) for v in values)


class RsiBelow(Condition):
    def __init__(self, threshold: float, timeframe: Timeframe = Timeframe.DAILY, *, inclusive: bool = False):
        self.threshold = threshold
        self.timeframe = timeframe
        self.inclusive = inclusive
        self.name = f"RSI_{timeframe.value}_{'<=' if inclusive else '<'}_{threshold:g}"

    def holds(self, context: RuleContext) -> bool:
        rsi = context.snapshot.for_timeframe(self.timeframe).value(RSI)
        if not _available(rsi):
            return False
        return rsi <= self.threshold if self.inclusive else rsi < self.threshold


class RsiAbove(Condition):
    def __init__(self, threshold: float, timeframe: Timeframe = Timeframe.DAILY, *, inclusive: bool = False):
        self.threshold = threshold
        self.timeframe = timeframe
        self.inclusive = inclusive
        self.name = f"RSI_{timeframe.value}_{'>=' if inclusive else '>'}_{threshold:g}"

    def holds(self, context: RuleContext) -> bool:
        rsi = context.snapshot.for_timeframe(self.timeframe).value(RSI)
        if not _available(rsi):
            return False
        return rsi >= self.threshold if self.inclusive else rsi > self.threshold


class MacdAboveSignal(Condition):
    def __init__(self, timeframe: Timeframe = Timeframe.DAILY):
        self.timeframe = timeframe
        self.name = f"MACD_{timeframe.value}_ABOVE_SIGNAL"

    def holds(self, context: RuleContext) -> bool:
        values = context.snapshot.for_timeframe(self.timeframe)
        macd, signal = values.value(MACD), values.value(MACD_SIGNAL)
        return _available(macd, signal) and macd > signal


class MacdBelowSignal(Condition):
    def __init__(self, timeframe: Timeframe = Timeframe.DAILY):
        self.timeframe = timeframe
        self.name = f"MACD_{timeframe.value}_BELOW_SIGNAL"

    def holds(self, context: RuleContext) -> bool:
        values = context.snapshot.for_timeframe(self.timeframe)
        macd, signal = values.value(MACD), values.value(MACD_SIGNAL)
        return _available(macd, signal) and macd < signal


class PriceNearLowerBand(Condition):
    """Price at or below the daily lower Bollinger band times ``tolerance``."""

    name = "PRICE_NEAR_LOWER_BAND"

    def __init__(self, tolerance: float = 1.01):
        self.tolerance = tolerance

    def holds(self, context: RuleContext) -> bool:
        band = context.snapshot.daily.value(BB_LOWER)
        return _available(band) and context.current_price <= band * self.tolerance


class PriceNearUpperBand(Condition):
    """Price at or above the daily upper Bollinger band times ``tolerance``."""

    name = "PRICE_NEAR_UPPER_BAND"

    def __init__(self, tolerance: float = 0.99):
        self.tolerance = tolerance

    def holds(self, context: RuleContext) -> bool:
        band = context.snapshot.daily.value(BB_UPPER)
        return _available(band) and context.current_price >= band * self.tolerance


class SentimentCondition(Condition):
    """Sentiment score for the symbol is favourable.

    ``score_fn`` maps a symbol to a score in [0, 1]. Positive sentiment
    means ``score > threshold``; negative means ``score < 1 - threshold``.
    """

    def __init__(self, score_fn: Callable[[str], float], *, positive: bool = True, threshold: float = 0.6):
        self.score_fn = score_fn
        self.positive = positive
        self.threshold = threshold
        self.name = "SENTIMENT_POSITIVE" if positive else "SENTIMENT_NEGATIVE"

    def holds(self, context: RuleContext) -> bool:
        score = self.score_fn(context.symbol)
        if self.positive:
            return score > self.threshold
        return score < 1 - self.threshold


class LiquidationRiskExit(Condition):
    """Price within ``buffer`` of the estimated liquidation price of the open position."""

    name = "LIQUIDATION_RISK"

    def __init__(self, leverage: int, buffer: Decimal = Decimal("0.05")):
        self.leverage = leverage
        self.buffer = buffer

    def holds(self, context: RuleContext) -> bool:
        tracker = context.tracker
        if not tracker.is_open:
            return False
        margin_fraction = Decimal(1) / Decimal(self.leverage)
        if tracker.position is TradeDirection.LONG:
            liquidation = tracker.entry_price * (Decimal(1) - margin_fraction)
            return context.current_price <= liquidation * (Decimal(1) + self.buffer)
        liquidation = tracker.entry_price * (Decimal(1) + margin_fraction)
        return context.current_price >= liquidation * (Decimal(1) - self.buffer)


class RuleEvaluator:
    """Evaluate configured entry and exit conditions into a TradeDecision.

    Raises:
        ConfigurationError: If either condition collection is empty
    """

    def __init__(self, entry_conditions: Iterable[Condition], exit_conditions: Iterable[Condition]):
        self.entry_conditions: Tuple[Condition, ...] = tuple(entry_conditions or ())
        self.exit_conditions: Tuple[Condition, ...] = tuple(exit_conditions or ())
        violations = []
        if not self.entry_conditions:
            violations.append("Entry conditions are required and cannot be empty")
        if not self.exit_conditions:
            violations.append("Exit conditions are required and cannot be empty")
        if violations:
            raise ConfigurationError(violations)

    def with_entry_condition(self, condition: Condition) -> "RuleEvaluator":
        return RuleEvaluator(self.entry_conditions + (condition,), self.exit_conditions)

    def evaluate(self, context: RuleContext, direction: TradeDirection) -> TradeDecision:
        if context.tracker.is_open:
            # Trailing stop wins over indicator exits in the same tick.
            if context.tracker.check_trigger(context.current_price):
                return TradeDecision.exit(TRAILING_STOP_REASON)
            for condition in self.exit_conditions:
                if condition.holds(context):
                    return TradeDecision.exit(condition.name)
            return TradeDecision.hold()

        if all(condition.holds(context) for condition in self.entry_conditions):
            return TradeDecision.enter(direction)
        return TradeDecision.hold()


def default_entry_conditions(config, direction: TradeDirection) -> List[Condition]:
    """Oversold pullback into the lower band with bullish MACD (LONG), or the mirror (SHORT)."""
    if direction is TradeDirection.LONG:
        return [
            RsiBelow(config.rsi_oversold_threshold, Timeframe.DAILY, inclusive=True),
            MacdAboveSignal(Timeframe.DAILY),
            PriceNearLowerBand(1.01),
            RsiBelow(config.rsi_overbought_threshold, Timeframe.WEEKLY),
        ]
    return [
        RsiAbove(config.rsi_overbought_threshold, Timeframe.DAILY, inclusive=True),
        MacdBelowSignal(Timeframe.DAILY),
        PriceNearUpperBand(0.99),
        RsiAbove(config.rsi_oversold_threshold, Timeframe.WEEKLY),
    ]


def default_exit_conditions(config, direction: TradeDirection) -> List[Condition]:
    if direction is TradeDirection.LONG:
        return [
            MacdBelowSignal(Timeframe.DAILY),
            RsiAbove(config.rsi_overbought_threshold, Timeframe.DAILY, inclusive=True),
            LiquidationRiskExit(config.leverage),
        ]
    return [
        MacdAboveSignal(Timeframe.DAILY),
        RsiBelow(config.rsi_oversold_threshold, Timeframe.DAILY, inclusive=True),
        LiquidationRiskExit(config.leverage),
    ]
