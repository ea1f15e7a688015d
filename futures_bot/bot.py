"""
Futures trading bot: the per-symbol decision-and-execution loop.

Each tick:
    price -> MarketSnapshot -> RuleEvaluator -> gateway order -> tracker update

    ENTER: place the entry order, then initialize the trailing stop
    EXIT:  place the closing order, then reset the trailing stop
    HOLD:  ratchet the trailing stop with the current price

A failed order leaves the tracker untouched, so the same decision is
re-evaluated on the next tick. Ticks of one bot never overlap: ``tick``,
``execute_trade``, ``process_market_data`` and ``stop`` all run under one
lock, so a stop waits for an in-flight gateway call to complete.
"""

import threading
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence

from .config import TradingConfig
from .errors import ConfigurationError, ErrorKind, ExchangeError, TradingBotError
from .gateway import ResilientExchangeGateway
from .indicators import BB_LOWER, BB_UPPER, MACD, MACD_SIGNAL, RSI, IndicatorCalculator
from .logging_setup import logger
from .models import DecisionKind, MarketSnapshot, OrderSide, OrderSpec, TradeDecision, TradeDirection
from .rules import Condition, RuleContext, RuleEvaluator, SentimentCondition, default_entry_conditions
from .trailing_stop import TrailingStopTracker

MAX_LEVERAGE = 125


class BotState(Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"


class PositionEntryError(TradingBotError):
    """The entry order could not be placed; ``error`` is the gateway failure."""

    def __init__(self, message: str, error: ExchangeError):
        super().__init__(message)
        self.error = error


class PositionExitError(TradingBotError):
    """The closing order could not be placed; ``error`` is the gateway failure."""

    def __init__(self, message: str, error: ExchangeError):
        super().__init__(message)
        self.error = error


@dataclass
class BotParams:
    """Everything a bot needs, validated as a whole.

    Construction fails with a ``ConfigurationError`` that lists every
    missing or invalid field, not just the first one.
    """

    exchange_service: Optional[ResilientExchangeGateway] = None
    indicator_calculator: Optional[IndicatorCalculator] = None
    trailing_stop_tracker: Optional[TrailingStopTracker] = None
    exit_conditions: Optional[Sequence[Condition]] = None
    config: Optional[TradingConfig] = None
    direction: Optional[TradeDirection] = None
    entry_conditions: Optional[Sequence[Condition]] = None  # defaults from config
    sentiment_score_fn: Optional[Callable[[str], float]] = None
    skip_leverage_init: bool = False
    close_on_stop: bool = True

    def __post_init__(self):
        violations = []
        if self.exchange_service is None:
            violations.append("Exchange service is required")
        if self.indicator_calculator is None:
            violations.append("Indicator calculator is required")
        if self.trailing_stop_tracker is None:
            violations.append("Trailing stop tracker is required")
        if not self.exit_conditions:
            violations.append("Exit conditions are required and cannot be empty")
        if self.config is None:
            violations.append("Trading config is required")
        if self.direction is None:
            violations.append("Trade direction is required")
        if self.entry_conditions is not None and not self.entry_conditions:
            violations.append("Entry conditions cannot be empty when provided")
        if violations:
            raise ConfigurationError(violations)
        self.exit_conditions = tuple(self.exit_conditions)
        if self.entry_conditions is not None:
            self.entry_conditions = tuple(self.entry_conditions)


class FuturesTradingBot:
    def __init__(self, params: BotParams):
        self.gateway = params.exchange_service
        self.indicator_calculator = params.indicator_calculator
        self.tracker = params.trailing_stop_tracker
        self.config = params.config
        self.direction = params.direction
        self.close_on_stop = params.close_on_stop
        self.sentiment_score_fn = params.sentiment_score_fn
        entry_conditions = params.entry_conditions or default_entry_conditions(self.config, self.direction)
        self.evaluator = RuleEvaluator(entry_conditions, params.exit_conditions)
        self.state = BotState.STOPPED
        self.sentiment_enabled = False
        self.current_leverage = self.config.leverage
        self.last_error: Optional[ExchangeError] = None
        self.last_decision: Optional[TradeDecision] = None
        # quantity filled by the entry order; the closing order always uses it
        self.position_quantity: Optional[Decimal] = None
        self._lock = threading.Lock()
        if not params.skip_leverage_init:
            self._apply_leverage(self.current_leverage)
        logger.info(
            f"Bot initialized | symbol={self.config.symbol} direction={self.direction.value} "
            f"leverage={self.current_leverage}x trailing_stop={self.tracker.trailing_stop_percent}%"
        )

    @property
    def symbol(self) -> str:
        return self.config.symbol

    @property
    def is_running(self) -> bool:
        return self.state is BotState.RUNNING

    @property
    def in_position(self) -> bool:
        return self.tracker.is_open

    # -- control surface -------------------------------------------------

    def start(self) -> None:
        """Mark the bot RUNNING; ticks are driven by ``tick`` (see ``BotRunner``)."""
        with self._lock:
            if self.is_running:
                logger.warning(f"Trading bot is already running | symbol={self.symbol}")
                return
            self.state = BotState.RUNNING
            self.last_error = None
        logger.info(f"Trading bot started | symbol={self.symbol} direction={self.direction.value}")

    def stop(self) -> None:
        """Stop the bot, closing an open position first when ``close_on_stop`` is set.

        Waits for an in-flight tick to finish.
        """
        with self._lock:
            self.state = BotState.STOPPED
            if self.close_on_stop and self.in_position:
                try:
                    price = self.gateway.get_current_price(self.symbol)
                    self._exit_position("BOT_STOPPED", price)
                except (PositionExitError, ExchangeError) as e:
                    logger.error(f"Failed to close position on stop | symbol={self.symbol} error={e}")
        logger.info(f"Trading bot stopped | symbol={self.symbol}")

    def tick(self) -> Optional[TradeDecision]:
        """Run one scheduled cycle. No-op unless RUNNING.

        Exchange failures are logged and absorbed; the bot continues on the
        next tick unless the failure is fatal (Unauthorized), which stops it.
        """
        with self._lock:
            if not self.is_running:
                return None
            try:
                return self._run_cycle()
            except (PositionEntryError, PositionExitError) as e:
                self._handle_error(e.error)
            except ExchangeError as e:
                self._handle_error(e)
            return None

    def execute_trade(self) -> TradeDecision:
        """Run one cycle immediately; failures are raised to the caller."""
        with self._lock:
            return self._run_guarded(None)

    def process_market_data(self, snapshot: MarketSnapshot) -> TradeDecision:
        """Evaluate an externally supplied snapshot; failures are raised to the caller."""
        with self._lock:
            return self._run_guarded(snapshot)

    def _run_guarded(self, snapshot: Optional[MarketSnapshot]) -> TradeDecision:
        try:
            return self._run_cycle(snapshot)
        except (PositionEntryError, PositionExitError) as e:
            self._handle_error(e.error)
            raise
        except ExchangeError as e:
            self._handle_error(e)
            raise

    # -- configuration -----------------------------------------------------

    def update_config(self, new_config: TradingConfig) -> None:
        with self._lock:
            if self.in_position and new_config.symbol != self.config.symbol:
                raise ConfigurationError(["Cannot change symbol while a position is open"])
            self._apply_leverage(new_config.leverage, new_config.symbol)
            self.config = new_config
            self.current_leverage = new_config.leverage
        logger.info(f"Configuration updated | symbol={self.symbol}")

    def set_dynamic_leverage(self, leverage: int) -> None:
        if not 1 <= leverage <= MAX_LEVERAGE:
            logger.error(f"Invalid leverage value: {leverage}")
            raise ValueError(f"Leverage must be between 1 and {MAX_LEVERAGE}")
        with self._lock:
            self._apply_leverage(leverage)
            self.current_leverage = leverage
        logger.info(f"Dynamic leverage set to {leverage}x")

    def enable_sentiment_analysis(self, enable: bool) -> None:
        if enable and self.sentiment_score_fn is None:
            raise ConfigurationError(["Sentiment score function is required to enable sentiment analysis"])
        self.sentiment_enabled = enable
        logger.info(f"Sentiment analysis {'enabled' if enable else 'disabled'}")

    def _apply_leverage(self, leverage: int, symbol: Optional[str] = None) -> None:
        """Set leverage on the exchange. Bot state is only updated by callers once this succeeds."""
        symbol = symbol or self.symbol
        try:
            self.gateway.set_leverage(symbol, leverage)
        except ExchangeError as e:
            logger.error(
                f"Failed to set leverage, keeping {self.current_leverage}x | symbol={symbol} "
                f"requested={leverage}x error={e}"
            )
            raise

    # -- status --------------------------------------------------------------

    def get_status(self) -> str:
        if not self.is_running:
            return "Stopped"
        position = self.tracker.position.value if self.tracker.position else "None"
        return f"Running, Direction: {self.direction.value}, Position: {position}"

    def describe(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "state": self.state.value,
            "direction": self.direction.value,
            "leverage": self.current_leverage,
            "position_quantity": str(self.position_quantity) if self.position_quantity is not None else None,
            "sentiment_enabled": self.sentiment_enabled,
            "tracker": self.tracker.state.to_dict(),
            "stop_price": str(self.tracker.stop_price()) if self.tracker.is_open else None,
            "last_decision": self.last_decision.kind.value if self.last_decision else None,
            "last_error": str(self.last_error) if self.last_error else None,
        }

    # -- cycle -----------------------------------------------------------------

    def _active_evaluator(self) -> RuleEvaluator:
        if not self.sentiment_enabled:
            return self.evaluator
        return self.evaluator.with_entry_condition(
            SentimentCondition(self.sentiment_score_fn, positive=self.direction is TradeDirection.LONG)
        )

    def _run_cycle(self, snapshot: Optional[MarketSnapshot] = None) -> TradeDecision:
        price = self.gateway.get_current_price(self.symbol)
        if snapshot is None:
            snapshot = self.indicator_calculator.build_snapshot(self.symbol, price)
        self._log_market_data(price, snapshot)

        context = RuleContext(snapshot=snapshot, current_price=price, tracker=self.tracker, symbol=self.symbol)
        decision = self._active_evaluator().evaluate(context, self.direction)

        if decision.kind is DecisionKind.ENTER:
            if not self._enter_position(price):
                decision = TradeDecision.hold()
        elif decision.kind is DecisionKind.EXIT:
            self._exit_position(decision.reason, price)
        else:
            self.tracker.update(price)
        self.last_decision = decision
        return decision

    def _enter_position(self, price: Decimal) -> bool:
        amount = self.config.trade_amount
        required_margin = amount * price / Decimal(self.current_leverage)
        balance = self.gateway.get_margin_balance()
        if balance < required_margin:
            logger.warning(
                f"Insufficient margin balance to {'buy' if self.direction is TradeDirection.LONG else 'sell'} "
                f"{amount} {self.symbol} with {self.current_leverage}x leverage | "
                f"balance={balance} required={required_margin}"
            )
            return False

        side = OrderSide.BUY if self.direction is TradeDirection.LONG else OrderSide.SELL
        try:
            order_id = self.gateway.place_order(OrderSpec(symbol=self.symbol, side=side, quantity=amount))
        except ExchangeError as e:
            logger.error(f"Failed to enter {self.direction.value} position | symbol={self.symbol} amount={amount} error={e}")
            raise PositionEntryError(f"Position entry failed for {self.direction.value} trade", e) from e

        self.tracker.initialize(price, self.direction)
        self.position_quantity = amount
        logger.info(
            f"Entered {self.direction.value} | order_id={order_id} symbol={self.symbol} qty={amount} "
            f"price={price} leverage={self.current_leverage}x"
        )
        return True

    def _exit_position(self, reason: str, price: Decimal) -> None:
        amount = self.position_quantity if self.position_quantity is not None else self.config.trade_amount
        side = OrderSide.SELL if self.direction is TradeDirection.LONG else OrderSide.BUY
        try:
            order_id = self.gateway.place_order(
                OrderSpec(symbol=self.symbol, side=side, quantity=amount, reduce_only=True)
            )
        except ExchangeError as e:
            logger.error(f"Failed to exit {self.direction.value} position | symbol={self.symbol} reason={reason} error={e}")
            raise PositionExitError(f"Position exit failed for {self.direction.value} trade", e) from e

        entry_price = self.tracker.entry_price
        if self.direction is TradeDirection.LONG:
            profit = (price - entry_price) * amount
        else:
            profit = (entry_price - price) * amount
        self.tracker.reset()
        self.position_quantity = None
        logger.info(
            f"Exited {self.direction.value} | order_id={order_id} reason={reason} symbol={self.symbol} "
            f"qty={amount} price={price} profit={profit}"
        )

    def _handle_error(self, error: ExchangeError) -> None:
        self.last_error = error
        if error.kind is ErrorKind.UNAUTHORIZED:
            self.state = BotState.STOPPED
            logger.error(f"Fatal exchange error, bot halted | symbol={self.symbol} error={error}")
        elif error.kind is ErrorKind.REJECTED:
            logger.warning(f"Order rejected by exchange | symbol={self.symbol} error={error}")
        else:
            logger.warning(f"Exchange unavailable, retrying next tick | symbol={self.symbol} kind={error.kind.value} error={error}")

    def _log_market_data(self, price: Decimal, snapshot: MarketSnapshot) -> None:
        daily, weekly = snapshot.daily, snapshot.weekly
        logger.info(
            f"Price: {price}, Daily RSI: {daily.value(RSI):.2f}, Daily MACD: {daily.value(MACD):.2f}, "
            f"Daily Signal: {daily.value(MACD_SIGNAL):.2f}, Daily Lower BB: {daily.value(BB_LOWER):.2f}, "
            f"Daily Upper BB: {daily.value(BB_UPPER):.2f}, Weekly RSI: {weekly.value(RSI):.2f}, "
            f"Highest Price: {self.tracker.highest_price}"
        )
