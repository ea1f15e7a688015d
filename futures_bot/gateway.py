"""
Resilient exchange gateway.

Wraps a raw ``ExchangeClient`` with, per endpoint class:

- a token-bucket rate limit (``RateLimitManager``),
- a circuit breaker (``CircuitBreaker``),
- bounded retry with jittered exponential backoff for reads.

Orders are retried only when the raw client guarantees that re-sending the
same ``client_order_id`` cannot open a second position; otherwise the
failure is surfaced to the trading loop.

Every failure leaving the gateway is an ``ExchangeError`` subclass. One
gateway instance is shared by all bots on the same exchange account and is
safe for concurrent use.
"""

import random
import time
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .circuit_breaker import CircuitBreaker
from .errors import ExchangeError, RateLimited, Transient
from .exchange import ExchangeClient
from .logging_setup import logger
from .models import Candle, OrderSpec, Timeframe
from .rate_limit_policy import EndpointClass, RateLimitManager, RateLimitPolicy, RateLimitQuota

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0

    def backoff(self, attempt: int) -> float:
        """Jittered exponential backoff for the given (0-based) retry attempt.

        Returns delay in seconds.
        """
        delay = min(self.base_delay_seconds * (2 ** attempt), self.max_delay_seconds)
        # ±25% jitter to avoid thundering herd across bots
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0.0, delay + jitter)


def new_client_order_id() -> str:
    return f"fb-{uuid.uuid4().hex}"


class ResilientExchangeGateway:
    def __init__(
        self,
        client: ExchangeClient,
        *,
        rate_limiter: Optional[RateLimitManager] = None,
        breakers: Optional[Dict[EndpointClass, CircuitBreaker]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.rate_limiter = rate_limiter or RateLimitManager()
        self.breakers = breakers or {
            endpoint: CircuitBreaker(f"exchange-{endpoint.value}") for endpoint in EndpointClass
        }
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    @classmethod
    def from_config(cls, client: ExchangeClient, config) -> "ResilientExchangeGateway":
        """Build a gateway from an ``AppConfig``."""
        budgets = {
            EndpointClass.TRADING: config.rate_limit.trading,
            EndpointClass.MARKET: config.rate_limit.market,
            EndpointClass.ACCOUNT: config.rate_limit.account,
        }
        rate_limiter = RateLimitManager(
            {
                endpoint: RateLimitQuota(
                    limit_for_period=b.limit_for_period,
                    period_seconds=b.period_seconds,
                    max_wait_seconds=b.max_wait_seconds,
                )
                for endpoint, b in budgets.items()
            },
            policy=RateLimitPolicy(config.rate_limit.policy),
        )
        cb = config.circuit_breaker
        breakers = {
            endpoint: CircuitBreaker(
                f"exchange-{endpoint.value}",
                failure_rate_threshold=cb.failure_rate_threshold,
                minimum_calls=cb.minimum_calls,
                window_size=cb.window_size,
                cooldown_seconds=cb.cooldown_seconds,
            )
            for endpoint in EndpointClass
        }
        retry_policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay_seconds=config.retry.base_delay_seconds,
            max_delay_seconds=config.retry.max_delay_seconds,
        )
        return cls(client, rate_limiter=rate_limiter, breakers=breakers, retry_policy=retry_policy)

    def _call(self, endpoint: EndpointClass, operation: str, fn: Callable[[], T], *, retry: bool) -> T:
        breaker = self.breakers[endpoint]
        attempts = self.retry_policy.max_attempts if retry else 1
        for attempt in range(1, attempts + 1):
            epoch = breaker.before_call()
            try:
                self.rate_limiter.acquire(endpoint)
            except RateLimited:
                breaker.release(epoch)
                raise

            try:
                result = fn()
            except ExchangeError as e:
                error = e
            except Exception as e:
                error = Transient(f"{operation} failed: {type(e).__name__}: {e}", endpoint=endpoint.value)
                error.__cause__ = e
            else:
                breaker.record_success(epoch)
                return result

            # Only availability problems count against the breaker.
            if isinstance(error, (Transient, RateLimited)):
                breaker.record_failure(epoch)
            else:
                breaker.record_success(epoch)

            if isinstance(error, Transient) and attempt < attempts:
                delay = self.retry_policy.backoff(attempt - 1)
                logger.warning(
                    f"Retrying {operation} | attempt={attempt}/{attempts} delay={delay:.2f}s error={error}"
                )
                self._sleep(delay)
                continue
            raise error

    def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        return self._call(
            EndpointClass.MARKET,
            "fetch_candles",
            lambda: self.client.fetch_candles(symbol, timeframe, limit),
            retry=True,
        )

    def get_current_price(self, symbol: str) -> Decimal:
        return self._call(EndpointClass.MARKET, "get_current_price", lambda: self.client.get_price(symbol), retry=True)

    def get_margin_balance(self) -> Decimal:
        return self._call(EndpointClass.ACCOUNT, "get_margin_balance", self.client.get_margin_balance, retry=True)

    def set_leverage(self, symbol: str, multiplier: int) -> None:
        # Setting the same leverage twice is harmless, so it retries like a read.
        self._call(
            EndpointClass.TRADING,
            "set_leverage",
            lambda: self.client.set_leverage(symbol, multiplier),
            retry=True,
        )
        logger.info(f"Leverage set | symbol={symbol} leverage={multiplier}x")

    def place_order(self, spec: OrderSpec) -> str:
        """Place a market order; returns the exchange order ID.

        A ``client_order_id`` is assigned if missing. The order is retried on
        transient failures only when the raw client deduplicates on it.
        """
        if not spec.client_order_id:
            spec = replace(spec, client_order_id=new_client_order_id())
        order_id = self._call(
            EndpointClass.TRADING,
            "place_order",
            lambda: self.client.place_order(spec),
            retry=self.client.supports_idempotency_key,
        )
        logger.info(
            f"Order placed | order_id={order_id} client_order_id={spec.client_order_id} "
            f"symbol={spec.symbol} side={spec.side.value} qty={spec.quantity} reduce_only={spec.reduce_only}"
        )
        return order_id

    def metrics(self) -> Dict[str, Dict[str, Any]]:
        return {
            endpoint.value: {
                "circuit": self.breakers[endpoint].metrics(),
                "available_tokens": self.rate_limiter.available_tokens(endpoint),
            }
            for endpoint in EndpointClass
        }
