"""
Trailing-stop tracking for one live position.

The tracker keeps the most favourable price seen since entry and derives
a stop level from it. The key invariant: the extreme price only ratchets
in the position's favour (up for LONG, down for SHORT), so the stop never
retreats.

Examples:
    >>> from decimal import Decimal
    >>> tracker = TrailingStopTracker(trailing_stop_percent=Decimal("2.0"))
    >>> tracker.initialize(Decimal("100"))
    >>> tracker.update(Decimal("110"))
    True
    >>> tracker.stop_price()
    Decimal('107.80')
    >>> tracker.check_trigger(Decimal("107.6"))
    True
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from .errors import TrackerStateError
from .logging_setup import logger
from .models import TradeDirection

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class TrackerPhase(Enum):
    FLAT = "FLAT"
    OPEN = "OPEN"


@dataclass
class TrailingStopState:
    """Mutable state of a tracked position.

    Attributes:
        position: Direction of the open position, or None when flat
        entry_price: Price at which the position was entered
        extreme_price: Highest price since entry (LONG) or lowest (SHORT)
        trailing_stop_percent: Distance of the stop from the extreme, in percent

    Invariants:
        - extreme_price starts at entry_price
        - for LONG, extreme_price is non-decreasing while open
        - for SHORT, extreme_price is non-increasing while open
    """

    trailing_stop_percent: Decimal
    position: Optional[TradeDirection] = None
    entry_price: Decimal = _ZERO
    extreme_price: Decimal = _ZERO

    @property
    def highest_price(self) -> Decimal:
        return self.extreme_price if self.position is TradeDirection.LONG else _ZERO

    @property
    def lowest_price(self) -> Decimal:
        return self.extreme_price if self.position is TradeDirection.SHORT else _ZERO

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "position": self.position.value if self.position else None,
            "entry_price": str(self.entry_price),
            "extreme_price": str(self.extreme_price),
            "trailing_stop_percent": str(self.trailing_stop_percent),
        }


class TrailingStopTracker:
    """State machine FLAT -> OPEN -> FLAT tracking one position's stop.

    The trailing percent is fixed for the lifetime of the tracker. One
    tracker is owned by exactly one bot; it is not shared between threads.
    """

    def __init__(self, trailing_stop_percent: Decimal):
        trailing_stop_percent = Decimal(str(trailing_stop_percent))
        if not _ZERO < trailing_stop_percent < _HUNDRED:
            raise ValueError("trailing_stop_percent must be between 0 and 100")
        self._state = TrailingStopState(trailing_stop_percent=trailing_stop_percent)

    @property
    def state(self) -> TrailingStopState:
        return self._state

    @property
    def trailing_stop_percent(self) -> Decimal:
        return self._state.trailing_stop_percent

    @property
    def phase(self) -> TrackerPhase:
        return TrackerPhase.FLAT if self._state.position is None else TrackerPhase.OPEN

    @property
    def is_open(self) -> bool:
        return self._state.position is not None

    @property
    def position(self) -> Optional[TradeDirection]:
        return self._state.position

    @property
    def entry_price(self) -> Decimal:
        return self._state.entry_price

    @property
    def highest_price(self) -> Decimal:
        return self._state.highest_price

    @property
    def lowest_price(self) -> Decimal:
        return self._state.lowest_price

    def initialize(self, entry_price: Decimal, direction: TradeDirection = TradeDirection.LONG) -> None:
        """Start tracking a freshly entered position.

        Raises:
            TrackerStateError: If a position is already being tracked
            ValueError: If entry_price is not positive
        """
        if self.is_open:
            raise TrackerStateError(
                f"Trailing stop already initialized for {self._state.position.value} "
                f"position at {self._state.entry_price}; reset() before re-entering"
            )
        if entry_price <= _ZERO:
            raise ValueError("entry_price must be positive")
        self._state.position = direction
        self._state.entry_price = entry_price
        self._state.extreme_price = entry_price
        logger.info(f"Trailing stop initialized | direction={direction.value} entry_price={entry_price}")

    def update(self, current_price: Decimal) -> bool:
        """Ratchet the extreme price. Returns True if it moved.

        A no-op while flat.
        """
        state = self._state
        if state.position is TradeDirection.LONG and current_price > state.extreme_price:
            state.extreme_price = current_price
        elif state.position is TradeDirection.SHORT and current_price < state.extreme_price:
            state.extreme_price = current_price
        else:
            return False
        logger.debug(f"Trailing stop ratcheted | extreme_price={state.extreme_price} stop={self.stop_price()}")
        return True

    def stop_price(self) -> Optional[Decimal]:
        """Current stop level, or None while flat."""
        state = self._state
        if state.position is None:
            return None
        fraction = state.trailing_stop_percent / _HUNDRED
        if state.position is TradeDirection.LONG:
            return state.extreme_price * (Decimal(1) - fraction)
        return state.extreme_price * (Decimal(1) + fraction)

    def check_trigger(self, current_price: Decimal) -> bool:
        """True iff the stop is hit at ``current_price``. Always False while flat."""
        stop = self.stop_price()
        if stop is None:
            return False
        if self._state.position is TradeDirection.LONG:
            triggered = current_price <= stop
        else:
            triggered = current_price >= stop
        if triggered:
            logger.info(f"Trailing stop triggered | price={current_price} stop={stop}")
        return triggered

    def reset(self) -> None:
        self._state.position = None
        self._state.entry_price = _ZERO
        self._state.extreme_price = _ZERO
