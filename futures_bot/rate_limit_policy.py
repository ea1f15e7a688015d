"""Rate-limit policy: token-bucket budgets per endpoint class.

One ``RateLimitManager`` is shared by every bot trading on the same
exchange account, so all state changes happen under a lock.
"""
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

from .errors import RateLimited
from .logging_setup import logger


class EndpointClass(Enum):
    """Exchange endpoint groups with independent budgets."""
    MARKET = "market"    # prices, candles
    ACCOUNT = "account"  # balances
    TRADING = "trading"  # orders, leverage


class RateLimitPolicy(Enum):
    BLOCK = "block"          # wait (bounded) for a token
    FAIL_FAST = "fail_fast"  # raise RateLimited immediately


@dataclass
class RateLimitQuota:
    """Per-endpoint-class quota."""
    limit_for_period: int   # bucket capacity
    period_seconds: float   # time to refill a full bucket
    max_wait_seconds: float = 5.0

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.limit_for_period / self.period_seconds


@dataclass
class TokenBucket:
    """Continuously refilled token budget. Not thread-safe on its own."""
    quota: RateLimitQuota
    clock: Callable[[], float] = time.monotonic
    tokens: float = field(default=-1.0)
    last_refill: float = field(default=-1.0)

    def __post_init__(self):
        if self.tokens < 0:
            self.tokens = float(self.quota.limit_for_period)
        if self.last_refill < 0:
            self.last_refill = self.clock()

    def refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(
            float(self.quota.limit_for_period),
            self.tokens + elapsed * self.quota.refill_rate,
        )
        self.last_refill = now

    def try_consume(self) -> bool:
        self.refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def time_until_available(self) -> float:
        """Seconds until one token is available. 0 if available now."""
        self.refill()
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.quota.refill_rate


class RateLimitManager:
    """Enforce token-bucket quotas per endpoint class."""

    # Conservative versus Binance futures limits
    DEFAULT_QUOTAS = {
        EndpointClass.TRADING: RateLimitQuota(limit_for_period=8, period_seconds=10, max_wait_seconds=5),
        EndpointClass.MARKET: RateLimitQuota(limit_for_period=30, period_seconds=1, max_wait_seconds=3),
        EndpointClass.ACCOUNT: RateLimitQuota(limit_for_period=2, period_seconds=1, max_wait_seconds=5),
    }

    def __init__(
        self,
        quotas: Optional[Dict[EndpointClass, RateLimitQuota]] = None,
        *,
        policy: RateLimitPolicy = RateLimitPolicy.BLOCK,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.quotas = {**self.DEFAULT_QUOTAS, **(quotas or {})}
        self.policy = policy
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._buckets: Dict[EndpointClass, TokenBucket] = {
            endpoint: TokenBucket(quota=quota, clock=clock)
            for endpoint, quota in self.quotas.items()
        }

    def try_acquire(self, endpoint: EndpointClass) -> bool:
        """Take a token if one is available right now."""
        with self._lock:
            return self._buckets[endpoint].try_consume()

    def time_until_allowed(self, endpoint: EndpointClass) -> float:
        with self._lock:
            return self._buckets[endpoint].time_until_available()

    def available_tokens(self, endpoint: EndpointClass) -> float:
        with self._lock:
            bucket = self._buckets[endpoint]
            bucket.refill()
            return bucket.tokens

    def wait_if_needed(self, endpoint: EndpointClass, max_wait: Optional[float] = None) -> bool:
        """Wait until a token is taken; return False if max_wait would be exceeded.
        
        Args:
            endpoint: Endpoint class being called
            max_wait: Maximum time to wait in seconds (quota default if None)
        
        Returns:
            True if a token was taken, False on timeout
        """
        if max_wait is None:
            max_wait = self.quotas[endpoint].max_wait_seconds
        start = self._clock()
        while True:
            with self._lock:
                bucket = self._buckets[endpoint]
                if bucket.try_consume():
                    return True
                wait_time = bucket.time_until_available()
            elapsed = self._clock() - start
            if elapsed + wait_time > max_wait:
                return False
            logger.debug(f"Rate limit wait | endpoint={endpoint.value} wait={wait_time:.3f}s")
            self._sleep(wait_time)

    def acquire(self, endpoint: EndpointClass) -> None:
        """Take a token according to the configured policy.

        Raises:
            RateLimited: If no token could be taken
        """
        if self.policy is RateLimitPolicy.FAIL_FAST:
            allowed = self.try_acquire(endpoint)
        else:
            allowed = self.wait_if_needed(endpoint)
        if not allowed:
            raise RateLimited(
                f"Rate budget exhausted for {endpoint.value} endpoints",
                endpoint=endpoint.value,
                retry_after=self.time_until_allowed(endpoint),
            )
