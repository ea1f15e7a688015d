"""Error taxonomy for the trading bot.

Every failure that crosses the gateway boundary is one of the
``ExchangeError`` subclasses below; the trading loop branches on
``ErrorKind`` only, never on transport details.
"""
from enum import Enum
from typing import Iterable, List, Optional


class TradingBotError(Exception):
    """Base class for all errors raised by this package."""
    pass


class ConfigurationError(TradingBotError):
    """Raised at construction time when configuration is incomplete or invalid.

    All violations are collected and reported together.
    """

    def __init__(self, violations: Iterable[str]):
        self.violations: List[str] = list(violations)
        super().__init__("Validation failed: " + "; ".join(self.violations))


class TrackerStateError(TradingBotError):
    """Raised when a trailing-stop tracker operation is invalid in its current state."""
    pass


class ErrorKind(Enum):
    RATE_LIMITED = "rate_limited"
    CIRCUIT_OPEN = "circuit_open"
    UNAUTHORIZED = "unauthorized"
    TRANSIENT = "transient"
    REJECTED = "rejected"


class ExchangeError(TradingBotError):
    """A classified exchange failure."""

    kind: ErrorKind = ErrorKind.TRANSIENT
    retryable: bool = False
    fatal: bool = False

    def __init__(self, message: str, *, endpoint: Optional[str] = None):
        self.endpoint = endpoint
        super().__init__(message)


class RateLimited(ExchangeError):
    """Rate budget exhausted, either locally or as reported by the exchange."""

    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(self, message: str, *, endpoint: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, endpoint=endpoint)
        self.retry_after = retry_after


class CircuitOpen(ExchangeError):
    """Circuit breaker is open; the raw client was not contacted."""

    kind = ErrorKind.CIRCUIT_OPEN
    retryable = True


class Unauthorized(ExchangeError):
    """Bad or revoked credentials. Requires operator intervention."""

    kind = ErrorKind.UNAUTHORIZED
    fatal = True


class Transient(ExchangeError):
    """Network failure, timeout or exchange 5xx."""

    kind = ErrorKind.TRANSIENT
    retryable = True


class Rejected(ExchangeError):
    """Exchange-side business rejection (insufficient margin, bad quantity, ...)."""

    kind = ErrorKind.REJECTED

    def __init__(self, message: str, *, endpoint: Optional[str] = None, code: Optional[int] = None):
        super().__init__(message, endpoint=endpoint)
        self.code = code
