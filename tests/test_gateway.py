import threading
from decimal import Decimal

import pytest

from futures_bot.circuit_breaker import CircuitBreaker, CircuitState
from futures_bot.config import AppConfig
from futures_bot.errors import CircuitOpen, RateLimited, Rejected, Transient, Unauthorized
from futures_bot.exchange import PaperExchangeClient
from futures_bot.gateway import ResilientExchangeGateway, RetryPolicy
from futures_bot.models import OrderSide, OrderSpec, Timeframe
from futures_bot.rate_limit_policy import EndpointClass, RateLimitManager, RateLimitPolicy, RateLimitQuota


class NonIdempotentClient(PaperExchangeClient):
    supports_idempotency_key = False


def _gateway(client, clock, *, minimum_calls=5, window_size=10, max_attempts=3, quotas=None, policy=RateLimitPolicy.BLOCK):
    breakers = {
        endpoint: CircuitBreaker(
            f"exchange-{endpoint.value}",
            minimum_calls=minimum_calls,
            window_size=window_size,
            cooldown_seconds=30,
            clock=clock,
        )
        for endpoint in EndpointClass
    }
    return ResilientExchangeGateway(
        client,
        rate_limiter=RateLimitManager(quotas, policy=policy, clock=clock, sleep=clock.sleep),
        breakers=breakers,
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay_seconds=0.1, max_delay_seconds=1.0),
        sleep=clock.sleep,
    )


def _buy(qty="0.01"):
    return OrderSpec(symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal(qty))


def test_backoff_grows_and_is_capped():
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=10.0)
    assert 0.75 <= policy.backoff(0) <= 1.25
    assert 3.0 <= policy.backoff(2) <= 5.0
    assert policy.backoff(10) <= 12.5


def test_reads_retried_on_transient(clock):
    client = PaperExchangeClient()
    client.fail_next("get_price", Transient("timeout"), times=2)
    gateway = _gateway(client, clock)

    assert gateway.get_current_price("BTCUSDT") == Decimal("50000")
    assert client.calls["get_price"] == 3
    assert len(clock.sleeps) == 2


def test_reads_give_up_after_max_attempts(clock):
    client = PaperExchangeClient()
    client.fail_next("fetch_candles", Transient("timeout"), times=3)
    gateway = _gateway(client, clock)

    with pytest.raises(Transient):
        gateway.fetch_candles("BTCUSDT", Timeframe.DAILY, 100)
    assert client.calls["fetch_candles"] == 3


def test_unknown_exception_classified_as_transient(clock):
    client = PaperExchangeClient()
    client.fail_next("get_margin_balance", ConnectionError("reset by peer"), times=3)
    gateway = _gateway(client, clock)

    with pytest.raises(Transient) as exc_info:
        gateway.get_margin_balance()
    assert isinstance(exc_info.value.__cause__, ConnectionError)


def test_unauthorized_not_retried(clock):
    client = PaperExchangeClient()
    client.fail_next("get_price", Unauthorized("bad key"))
    gateway = _gateway(client, clock)

    with pytest.raises(Unauthorized):
        gateway.get_current_price("BTCUSDT")
    assert client.calls["get_price"] == 1


def test_order_assigned_client_order_id(clock):
    client = PaperExchangeClient()
    gateway = _gateway(client, clock)

    order_id = gateway.place_order(_buy())
    assert order_id == "p1"
    assert client.orders["p1"]["client_order_id"].startswith("fb-")


def test_order_retried_when_client_deduplicates(clock):
    client = PaperExchangeClient()
    client.fail_next("place_order", Transient("timeout"))
    gateway = _gateway(client, clock)

    assert gateway.place_order(_buy()) == "p1"
    assert client.calls["place_order"] == 2
    assert len(client.orders) == 1


def test_order_not_retried_without_idempotency(clock):
    client = NonIdempotentClient()
    client.fail_next("place_order", Transient("timeout"))
    gateway = _gateway(client, clock)

    with pytest.raises(Transient):
        gateway.place_order(_buy())
    assert client.calls["place_order"] == 1
    assert client.orders == {}


def test_paper_reduce_only_order_closes_its_own_quantity():
    client = PaperExchangeClient()
    client.set_price("BTCUSDT", Decimal("100"))
    client.place_order(_buy("1"))

    client.place_order(OrderSpec(symbol="BTCUSDT", side=OrderSide.SELL, quantity=Decimal("0.25"), reduce_only=True))
    assert client.positions["BTCUSDT"].quantity == Decimal("0.75")
    assert client.margin_balance == Decimal("9925")

    client.place_order(OrderSpec(symbol="BTCUSDT", side=OrderSide.SELL, quantity=Decimal("0.75"), reduce_only=True))
    assert client.positions == {}
    assert client.margin_balance == Decimal("10000")

def test_rejection_not_retried_and_not_counted_as_failure(clock):
    client = PaperExchangeClient(margin_balance=Decimal("1"))
    gateway = _gateway(client, clock)

    with pytest.raises(Rejected) as exc_info:
        gateway.place_order(_buy("1"))
    assert exc_info.value.code == -2019
    assert client.calls["place_order"] == 1
    assert gateway.breakers[EndpointClass.TRADING].metrics()["failed_calls"] == 0


def test_open_circuit_does_not_reach_client(clock):
    client = PaperExchangeClient()
    client.fail_next("get_price", Transient("down"), times=2)
    gateway = _gateway(client, clock, minimum_calls=2, window_size=2, max_attempts=1)

    for _ in range(2):
        with pytest.raises(Transient):
            gateway.get_current_price("BTCUSDT")
    assert gateway.breakers[EndpointClass.MARKET].state is CircuitState.OPEN

    with pytest.raises(CircuitOpen):
        gateway.get_current_price("BTCUSDT")
    assert client.calls["get_price"] == 2

    # Breakers are per endpoint class
    assert gateway.get_margin_balance() == Decimal("10000")


def test_circuit_recovers_after_cooldown(clock):
    client = PaperExchangeClient()
    client.fail_next("get_price", Transient("down"), times=2)
    gateway = _gateway(client, clock, minimum_calls=2, window_size=2, max_attempts=1)
    for _ in range(2):
        with pytest.raises(Transient):
            gateway.get_current_price("BTCUSDT")

    clock.advance(30)
    assert gateway.get_current_price("BTCUSDT") == Decimal("50000")
    assert gateway.breakers[EndpointClass.MARKET].state is CircuitState.CLOSED


def test_fail_fast_rate_limit(clock):
    client = PaperExchangeClient()
    gateway = _gateway(
        client,
        clock,
        quotas={EndpointClass.MARKET: RateLimitQuota(limit_for_period=1, period_seconds=10)},
        policy=RateLimitPolicy.FAIL_FAST,
    )
    gateway.get_current_price("BTCUSDT")
    with pytest.raises(RateLimited):
        gateway.get_current_price("BTCUSDT")
    assert client.calls["get_price"] == 1


def test_set_leverage(clock):
    client = PaperExchangeClient()
    gateway = _gateway(client, clock)
    gateway.set_leverage("BTCUSDT", 20)
    assert client.leverage["BTCUSDT"] == 20

    with pytest.raises(Rejected):
        gateway.set_leverage("BTCUSDT", 200)


def test_from_config_uses_configured_values():
    config = AppConfig.from_dict({"retry": {"max_attempts": 5}, "circuit_breaker": {"cooldown_seconds": 12}})
    gateway = ResilientExchangeGateway.from_config(PaperExchangeClient(), config)
    assert gateway.retry_policy.max_attempts == 5
    assert gateway.breakers[EndpointClass.TRADING].cooldown_seconds == 12
    assert gateway.rate_limiter.quotas[EndpointClass.ACCOUNT].limit_for_period == 2


def test_metrics(clock):
    gateway = _gateway(PaperExchangeClient(), clock)
    gateway.get_current_price("BTCUSDT")
    metrics = gateway.metrics()
    assert set(metrics) == {"market", "account", "trading"}
    assert metrics["market"]["circuit"]["state"] == "CLOSED"
    assert metrics["market"]["available_tokens"] == pytest.approx(29.0)


def test_threads_share_one_gateway_budget_and_breaker(clock):
    client = PaperExchangeClient()
    quotas = {EndpointClass.MARKET: RateLimitQuota(limit_for_period=50, period_seconds=1)}
    gateway = _gateway(client, clock, quotas=quotas, policy=RateLimitPolicy.FAIL_FAST)
    start = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def worker():
        start.wait()
        for _ in range(100):
            try:
                gateway.get_current_price("BTCUSDT")
                result = "ok"
            except RateLimited:
                result = "limited"
            with lock:
                outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 50
    assert outcomes.count("limited") == 750
    breaker = gateway.breakers[EndpointClass.MARKET]
    assert breaker.state is CircuitState.CLOSED
    assert breaker.metrics()["buffered_calls"] == 10
    assert breaker.metrics()["failed_calls"] == 0
