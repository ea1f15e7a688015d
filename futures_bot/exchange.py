"""
Raw exchange client interface and a paper-trading implementation.

Uses an abstract client so the gateway and bot can run against the live
exchange or the in-memory paper client. All prices and quantities are
Decimal.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Tuple

from .errors import Rejected
from .models import Candle, OrderSide, OrderSpec, Timeframe


class CandleSource(Protocol):
    """Supplies OHLCV bars ordered by close time."""

    def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        ...


class ExchangeClient(ABC):
    """Abstract futures exchange client.

    Implementations raise ``ExchangeError`` subclasses where they can
    classify a failure; anything else is classified by the gateway.
    """

    # True if re-sending an order with the same client_order_id cannot open
    # a second position.
    supports_idempotency_key: bool = False

    @abstractmethod
    def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        """Fetch the most recent ``limit`` candles, oldest first."""
        pass

    @abstractmethod
    def get_price(self, symbol: str) -> Decimal:
        """Current mark price for ``symbol``."""
        pass

    @abstractmethod
    def get_margin_balance(self) -> Decimal:
        """Available margin balance in the quote asset."""
        pass

    @abstractmethod
    def set_leverage(self, symbol: str, leverage: int) -> None:
        pass

    @abstractmethod
    def place_order(self, spec: OrderSpec) -> str:
        """Place a market order.

        Args:
            spec: Order command; ``client_order_id`` is forwarded when set

        Returns:
            Exchange order ID
        """
        pass


@dataclass
class PaperPosition:
    side: OrderSide
    quantity: Decimal
    entry_price: Decimal
    margin: Decimal


class PaperExchangeClient(ExchangeClient):
    """Simulated futures account used for paper trading and tests.

    Prices and candles are set by the caller. Failures can be queued per
    method with ``fail_next`` to drive the gateway's resilience paths.
    """

    supports_idempotency_key = True

    def __init__(self, margin_balance: Decimal = Decimal("10000"), default_price: Decimal = Decimal("50000")):
        self.margin_balance = margin_balance
        self.default_price = default_price
        self.prices: Dict[str, Decimal] = {}
        self.candles: Dict[Tuple[str, Timeframe], List[Candle]] = {}
        self.leverage: Dict[str, int] = {}
        self.positions: Dict[str, PaperPosition] = {}
        self.orders: Dict[str, dict] = {}
        self.calls: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._orders_by_client_id: Dict[str, str] = {}
        self._next_id = 1

    def set_price(self, symbol: str, price: Decimal) -> None:
        self.prices[symbol] = price

    def set_candles(self, symbol: str, timeframe: Timeframe, candles: List[Candle]) -> None:
        self.candles[(symbol, timeframe)] = list(candles)

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` raise ``error``."""
        self._failures[method].extend([error] * times)

    def _enter(self, method: str) -> None:
        self.calls[method] += 1
        if self._failures[method]:
            raise self._failures[method].pop(0)

    def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        self._enter("fetch_candles")
        return self.candles.get((symbol, timeframe), [])[-limit:]

    def get_price(self, symbol: str) -> Decimal:
        self._enter("get_price")
        return self.prices.get(symbol, self.default_price)

    def get_margin_balance(self) -> Decimal:
        self._enter("get_margin_balance")
        return self.margin_balance

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self._enter("set_leverage")
        if not 1 <= leverage <= 125:
            raise Rejected(f"Leverage {leverage} is not valid", code=-4028)
        self.leverage[symbol] = leverage

    def place_order(self, spec: OrderSpec) -> str:
        self._enter("place_order")
        if spec.client_order_id and spec.client_order_id in self._orders_by_client_id:
            return self._orders_by_client_id[spec.client_order_id]

        price = self.prices.get(spec.symbol, self.default_price)
        if spec.reduce_only:
            self._close(spec, price)
        else:
            self._open(spec, price)

        oid = f"p{self._next_id}"
        self._next_id += 1
        self.orders[oid] = {
            "symbol": spec.symbol,
            "side": spec.side.value,
            "quantity": str(spec.quantity),
            "price": str(price),
            "reduce_only": spec.reduce_only,
            "client_order_id": spec.client_order_id,
        }
        if spec.client_order_id:
            self._orders_by_client_id[spec.client_order_id] = oid
        return oid

    def _open(self, spec: OrderSpec, price: Decimal) -> None:
        leverage = self.leverage.get(spec.symbol, 1)
        required_margin = spec.quantity * price / Decimal(leverage)
        if self.margin_balance < required_margin:
            raise Rejected("Margin is insufficient", code=-2019)
        self.margin_balance -= required_margin
        self.positions[spec.symbol] = PaperPosition(
            side=spec.side, quantity=spec.quantity, entry_price=price, margin=required_margin
        )

    def _close(self, spec: OrderSpec, price: Decimal) -> None:
        position: Optional[PaperPosition] = self.positions.get(spec.symbol)
        if position is None or position.side is spec.side:
            raise Rejected("ReduceOnly Order is rejected", code=-2022)
        closed = min(spec.quantity, position.quantity)
        if position.side is OrderSide.BUY:
            pnl = (price - position.entry_price) * closed
        else:
            pnl = (position.entry_price - price) * closed
        released = position.margin * closed / position.quantity
        self.margin_balance += released + pnl
        if closed == position.quantity:
            del self.positions[spec.symbol]
        else:
            # partial reduce-only fill
            position.quantity -= closed
            position.margin -= released
