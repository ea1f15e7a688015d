import hashlib
import hmac
from decimal import Decimal
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from futures_bot.binance_adapter import BinanceFuturesClient
from futures_bot.errors import RateLimited, Rejected, Transient, Unauthorized
from futures_bot.models import OrderSide, OrderSpec, Timeframe
from futures_bot.secrets import BinanceCredentials


def _response(status_code=200, body=None, headers=None, text=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.headers = headers or {}
    if body is None:
        resp.text = text or ""
        resp.json.side_effect = ValueError("no json")
    else:
        resp.text = text or "json"
        resp.json.return_value = body
    return resp


def _client():
    return BinanceFuturesClient(api_key="test-key", secret="test-secret", base_url="https://fapi.example.com")


def _query(mock_request):
    method, url = mock_request.call_args[0]
    return method, urlsplit(url)


def test_client_is_not_idempotent():
    assert BinanceFuturesClient.supports_idempotency_key is False


def test_from_credentials():
    client = BinanceFuturesClient.from_credentials(BinanceCredentials("cred-key-123", "cred-secret-456"), timeout=3)
    assert client.api_key == "cred-key-123"
    assert client.timeout == 3
    assert client.session.headers["X-MBX-APIKEY"] == "cred-key-123"


def test_repr_hides_credentials():
    assert "test-secret" not in repr(_client())
    assert "test-key" not in repr(_client())


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_get_price_reads_mark_price(mock_request):
    mock_request.return_value = _response(body={"symbol": "BTCUSDT", "markPrice": "43210.50"})
    price = _client().get_price("BTCUSDT")

    assert price == Decimal("43210.50")
    method, url = _query(mock_request)
    assert method == "GET"
    assert url.path == "/fapi/v1/premiumIndex"
    assert parse_qs(url.query) == {"symbol": ["BTCUSDT"]}


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_fetch_candles_parses_klines(mock_request):
    mock_request.return_value = _response(body=[
        [1700000000000, "100.0", "110.0", "95.0", "105.5", "12.3", 1700086399999, "0", 10, "0", "0", "0"],
        [1700086400000, "105.5", "108.0", "101.0", "102.0", "8.1", 1700172799999, "0", 8, "0", "0", "0"],
    ])
    candles = _client().fetch_candles("BTCUSDT", Timeframe.WEEKLY, 2)

    assert len(candles) == 2
    assert candles[0].close == Decimal("105.5")
    assert candles[0].close_time == 1700086399999
    assert candles[1].open_time == 1700086400000
    _, url = _query(mock_request)
    assert parse_qs(url.query)["interval"] == ["1w"]


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_signed_request_carries_valid_signature(mock_request):
    mock_request.return_value = _response(body={"assets": [
        {"asset": "BNB", "availableBalance": "1.0"},
        {"asset": "USDT", "availableBalance": "1234.56"},
    ]})
    balance = _client().get_margin_balance()

    assert balance == Decimal("1234.56")
    _, url = _query(mock_request)
    payload, signature = url.query.rsplit("&signature=", 1)
    expected = hmac.new(b"test-secret", payload.encode("utf-8"), hashlib.sha256).hexdigest()
    assert signature == expected
    params = parse_qs(payload)
    assert "timestamp" in params
    assert params["recvWindow"] == ["5000"]


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_margin_balance_without_usdt_is_zero(mock_request):
    mock_request.return_value = _response(body={"assets": []})
    assert _client().get_margin_balance() == Decimal("0")


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_place_order_sends_reduce_only_and_client_id(mock_request):
    mock_request.return_value = _response(body={"orderId": 987654321})
    spec = OrderSpec(
        symbol="BTCUSDT",
        side=OrderSide.SELL,
        quantity=Decimal("0.005"),
        reduce_only=True,
        client_order_id="fb-abc",
    )
    order_id = _client().place_order(spec)

    assert order_id == "987654321"
    method, url = _query(mock_request)
    assert method == "POST"
    assert url.path == "/fapi/v1/order"
    params = parse_qs(url.query)
    assert params["side"] == ["SELL"]
    assert params["type"] == ["MARKET"]
    assert params["quantity"] == ["0.005"]
    assert params["reduceOnly"] == ["true"]
    assert params["newClientOrderId"] == ["fb-abc"]


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_entry_order_omits_reduce_only(mock_request):
    mock_request.return_value = _response(body={"orderId": 1})
    _client().place_order(OrderSpec(symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("1")))
    _, url = _query(mock_request)
    assert "reduceOnly" not in parse_qs(url.query)


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_set_leverage(mock_request):
    mock_request.return_value = _response(body={"leverage": 7, "symbol": "BTCUSDT"})
    _client().set_leverage("BTCUSDT", 7)
    _, url = _query(mock_request)
    assert url.path == "/fapi/v1/leverage"
    assert parse_qs(url.query)["leverage"] == ["7"]


@pytest.mark.parametrize(
    "status, body, error_type",
    [
        (401, {"code": -2015, "msg": "Invalid API-key"}, Unauthorized),
        (400, {"code": -1022, "msg": "Signature for this request is not valid."}, Unauthorized),
        (429, {"code": -1003, "msg": "Too many requests"}, RateLimited),
        (418, {"code": -1003, "msg": "IP banned"}, RateLimited),
        (502, None, Transient),
        (400, {"code": -2019, "msg": "Margin is insufficient."}, Rejected),
    ],
)
@patch("futures_bot.binance_adapter.requests.Session.request")
def test_http_errors_are_classified(mock_request, status, body, error_type):
    mock_request.return_value = _response(status, body, text="Bad Gateway")
    with pytest.raises(error_type):
        _client().get_price("BTCUSDT")


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_rate_limited_carries_retry_after(mock_request):
    mock_request.return_value = _response(429, {"code": -1003, "msg": "slow down"}, headers={"Retry-After": "3"})
    with pytest.raises(RateLimited) as exc_info:
        _client().get_price("BTCUSDT")
    assert exc_info.value.retry_after == 3.0


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_rejection_carries_exchange_code(mock_request):
    mock_request.return_value = _response(400, {"code": -4164, "msg": "Order's notional must be no smaller than 5"})
    spec = OrderSpec(symbol="BTCUSDT", side=OrderSide.BUY, quantity=Decimal("0.00001"))
    with pytest.raises(Rejected) as exc_info:
        _client().place_order(spec)
    assert exc_info.value.code == -4164


@patch("futures_bot.binance_adapter.requests.Session.request")
def test_network_error_is_transient(mock_request):
    mock_request.side_effect = requests.exceptions.ConnectionError("connection reset")
    with pytest.raises(Transient):
        _client().get_price("BTCUSDT")


def test_get_retry_after_ignores_garbage():
    assert BinanceFuturesClient._get_retry_after(_response(429, headers={"Retry-After": "soon"})) is None
    assert BinanceFuturesClient._get_retry_after(_response(429)) is None
