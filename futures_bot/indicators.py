"""
Indicator pipeline: turn an ordered candle window into indicator readings.

Each indicator kind implements ``TechnicalIndicator`` and is registered
under a name in an ``IndicatorCalculator``. The calculator iterates its
registry without knowing which kinds it holds, so adding an indicator
means registering another instance, not editing the driver.

Indicator math is delegated to TA-Lib; this module only shapes candles
into close arrays and picks the latest reading.

A window shorter than an indicator's minimum lookback yields ``NaN``
(not available). That is the normal state early in a bot's life.

Examples:
    >>> macd = MACDIndicator(fast_period=12, slow_period=26, signal_period=9)
    >>> macd.compute(candles[:25], Timeframe.DAILY)  # doctest: +SKIP
    nan
    >>> math.isnan(macd.compute(candles[:26], Timeframe.DAILY))  # doctest: +SKIP
    False
"""

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import talib
from talib import MA_Type

from .logging_setup import logger
from .models import Candle, IndicatorSet, MarketSnapshot, Timeframe

RSI = "RSI"
MACD = "MACD"
MACD_SIGNAL = "MACD_SIGNAL"
BB_LOWER = "BB_LOWER"
BB_UPPER = "BB_UPPER"


@dataclass(frozen=True)
class BarSeries:
    """Closing prices of a candle window, one bar per candle."""

    bar_duration: timedelta
    end_times: Tuple[datetime, ...]
    closes: np.ndarray


def build_bar_series(candles: Sequence[Candle], timeframe: Timeframe) -> BarSeries:
    """Build a bar series from candles ordered by close time.

    Raises:
        ValueError: If close times are not strictly increasing
    """
    for prev, cur in zip(candles, candles[1:]):
        if cur.close_time <= prev.close_time:
            raise ValueError(
                f"Candles must be ordered by close time: {prev.close_time} >= {cur.close_time}"
            )
    end_times = tuple(
        datetime.fromtimestamp(c.close_time / 1000, tz=timezone.utc) for c in candles
    )
    closes = np.array([float(c.close) for c in candles], dtype=float)
    return BarSeries(bar_duration=timeframe.bar_duration, end_times=end_times, closes=closes)


class TechnicalIndicator(ABC):
    """A reading derived from a candle window for one timeframe."""

    name: str = ""

    @property
    @abstractmethod
    def min_lookback(self) -> int:
        """Minimum number of candles needed for a reading."""

    def compute(self, candles: Sequence[Candle], timeframe: Timeframe) -> float:
        """Return the latest reading, or NaN if the window is too short."""
        if len(candles) < self.min_lookback:
            return math.nan
        series = build_bar_series(candles, timeframe)
        return float(self._compute(series))

    @abstractmethod
    def _compute(self, series: BarSeries) -> float:
        pass


class MACDIndicator(TechnicalIndicator):
    """MACD line (EMA fast - EMA slow), or its signal line when ``signal_line`` is set.

    The line is built from two ``talib.EMA`` series rather than ``talib.MACD``,
    which withholds the line until the signal is also defined. The line is
    available from ``slow_period`` candles, the signal from
    ``slow_period + signal_period - 1``.
    """

    def __init__(self, fast_period: int = 12, slow_period: int = 26, signal_period: int = 9, *, signal_line: bool = False):
        if not 0 < fast_period < slow_period:
            raise ValueError("fast_period must be positive and below slow_period")
        self.fast_period = fast_period
        self.slow_period = slow_period
        self.signal_period = signal_period
        self.signal_line = signal_line
        self.name = MACD_SIGNAL if signal_line else MACD

    @property
    def min_lookback(self) -> int:
        if self.signal_line:
            return self.slow_period + self.signal_period - 1
        return self.slow_period

    def _compute(self, series: BarSeries) -> float:
        closes = series.closes
        macd_line = talib.EMA(closes, timeperiod=self.fast_period) - talib.EMA(closes, timeperiod=self.slow_period)
        if self.signal_line:
            # leading NaNs of the line are skipped by talib
            return talib.EMA(macd_line, timeperiod=self.signal_period)[-1]
        return macd_line[-1]


class RSIIndicator(TechnicalIndicator):
    name = RSI

    def __init__(self, period: int = 14):
        self.period = period

    @property
    def min_lookback(self) -> int:
        return self.period + 1

    def _compute(self, series: BarSeries) -> float:
        return talib.RSI(series.closes, timeperiod=self.period)[-1]


class BollingerBandsIndicator(TechnicalIndicator):
    """Lower or upper Bollinger band: SMA(period) -/+ k * population std-dev."""

    def __init__(self, period: int = 20, standard_deviation: float = 2.0, *, lower: bool = True):
        self.period = period
        self.standard_deviation = standard_deviation
        self.lower = lower
        self.name = BB_LOWER if lower else BB_UPPER

    @property
    def min_lookback(self) -> int:
        return self.period

    def _compute(self, series: BarSeries) -> float:
        upper, _, lower = talib.BBANDS(
            series.closes,
            timeperiod=self.period,
            nbdevup=self.standard_deviation,
            nbdevdn=self.standard_deviation,
            matype=MA_Type.SMA,
        )
        return lower[-1] if self.lower else upper[-1]


def default_indicators(config) -> List[TechnicalIndicator]:
    """Indicators read by the default entry/exit conditions."""
    return [
        RSIIndicator(config.rsi_period),
        MACDIndicator(config.macd_fast_period, config.macd_slow_period, config.macd_signal_period),
        MACDIndicator(config.macd_fast_period, config.macd_slow_period, config.macd_signal_period, signal_line=True),
        BollingerBandsIndicator(config.bb_period, config.bb_standard_deviation, lower=True),
        BollingerBandsIndicator(config.bb_period, config.bb_standard_deviation, lower=False),
    ]


class IndicatorCalculator:
    """Fetch candles and compute every registered indicator for a timeframe.

    Results are cached per (symbol, timeframe) until the newest candle in
    the cached window closes, or until the current price moves more than
    ``price_change_threshold`` away from that candle's close.
    """

    CANDLE_LIMIT = 100
    PRICE_CHANGE_THRESHOLD = Decimal("0.01")

    def __init__(
        self,
        candle_source,
        indicators: Sequence[TechnicalIndicator],
        *,
        candle_limit: int = CANDLE_LIMIT,
        clock: Callable[[], float] = time.time,
    ):
        self.candle_source = candle_source
        self.candle_limit = candle_limit
        self.clock = clock
        self._indicators: Dict[str, TechnicalIndicator] = {}
        self._cache: Dict[Tuple[str, Timeframe], Tuple[Candle, IndicatorSet]] = {}
        for indicator in indicators:
            self.register(indicator)

    @property
    def indicator_names(self) -> List[str]:
        return list(self._indicators)

    def register(self, indicator: TechnicalIndicator) -> None:
        if not indicator.name:
            raise ValueError("Indicator must have a name")
        self._indicators[indicator.name] = indicator

    def compute(self, candles: Sequence[Candle], timeframe: Timeframe) -> IndicatorSet:
        """Compute all registered indicators over an already fetched window."""
        return IndicatorSet(
            {name: ind.compute(candles, timeframe) for name, ind in self._indicators.items()}
        )

    def compute_indicators(self, symbol: str, timeframe: Timeframe, current_price: Optional[Decimal] = None) -> IndicatorSet:
        cached = self._cache.get((symbol, timeframe))
        if cached is not None and self._is_fresh(cached[0], current_price):
            return cached[1]

        logger.info(f"Computing indicators | symbol={symbol} timeframe={timeframe.value}")
        candles = self.candle_source.fetch_candles(symbol, timeframe, self.candle_limit)
        values = self.compute(candles, timeframe)
        missing = [name for name in values if not values.is_available(name)]
        if missing:
            logger.warning(
                f"Insufficient history for indicators | symbol={symbol} timeframe={timeframe.value} "
                f"candles={len(candles)} unavailable={missing}"
            )
        if candles:
            self._cache[(symbol, timeframe)] = (candles[-1], values)
        return values

    def build_snapshot(self, symbol: str, current_price: Optional[Decimal] = None) -> MarketSnapshot:
        return MarketSnapshot(
            daily=self.compute_indicators(symbol, Timeframe.DAILY, current_price),
            weekly=self.compute_indicators(symbol, Timeframe.WEEKLY, current_price),
        )

    def evict_cache(self, symbol: str, timeframe: Timeframe) -> None:
        logger.info(f"Evicting indicator cache | symbol={symbol} timeframe={timeframe.value}")
        self._cache.pop((symbol, timeframe), None)

    def _is_fresh(self, last_candle: Candle, current_price: Optional[Decimal]) -> bool:
        if self.clock() * 1000 >= last_candle.close_time:
            return False
        if current_price is not None and last_candle.close > 0:
            change = abs(current_price - last_candle.close) / last_candle.close
            if change > self.PRICE_CHANGE_THRESHOLD:
                return False
        return True
