"""
Binance USD-M futures REST client.

Implements ``ExchangeClient`` over ``requests``. Account and trading calls
are HMAC-SHA256 signed with the API secret; the key travels in the
``X-MBX-APIKEY`` header. Non-2xx responses are classified into the
``ExchangeError`` kinds:

- 401/403 or an auth error code: ``Unauthorized``
- 418/429: ``RateLimited`` (with ``Retry-After`` when sent)
- 5xx or a connection failure: ``Transient``
- anything else: ``Rejected`` carrying the Binance error code

The client never retries by itself; that is the gateway's job.
"""

import hashlib
import hmac
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter

from .errors import Rejected, RateLimited, Transient, Unauthorized
from .exchange import ExchangeClient
from .logging_setup import logger, register_secret
from .models import Candle, OrderSpec, Timeframe
from .secrets import BinanceCredentials

# Binance error codes that mean the credentials themselves are bad.
AUTH_ERROR_CODES = frozenset({-1002, -1022, -2014, -2015})


class BinanceFuturesClient(ExchangeClient):
    """Minimal Binance USD-M futures client.

    Market orders carry ``newClientOrderId`` for traceability, but Binance
    does not deduplicate filled market orders, so the client does not
    advertise idempotent order placement.
    """

    def __init__(self, api_key: str, secret: str, *, base_url: str = "https://fapi.binance.com", timeout: int = 10, recv_window: int = 5000):
        self.api_key = api_key
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.recv_window = recv_window
        register_secret(api_key)
        register_secret(secret)

        self.session = requests.Session()
        self.session.headers.update({"X-MBX-APIKEY": api_key})
        self.session.mount("https://", HTTPAdapter(max_retries=0))
        self.session.mount("http://", HTTPAdapter(max_retries=0))

    def __repr__(self) -> str:
        return f"BinanceFuturesClient(base_url={self.base_url!r})"

    @classmethod
    def from_credentials(cls, credentials: BinanceCredentials, **kwargs) -> "BinanceFuturesClient":
        """Create a client from BinanceCredentials (loaded via secrets module)."""
        return cls(api_key=credentials.api_key, secret=credentials.api_secret, **kwargs)

    def _sign(self, params: Dict[str, Any]) -> str:
        params = {**params, "timestamp": int(time.time() * 1000), "recvWindow": self.recv_window}
        query = urlencode(params)
        signature = hmac.new(self.secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{query}&signature={signature}"

    @staticmethod
    def _get_retry_after(resp: requests.Response) -> Optional[float]:
        """Extract the Retry-After header (seconds) if present."""
        if "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except (ValueError, TypeError):
                return None
        return None

    @staticmethod
    def _error_payload(resp: requests.Response):
        try:
            body = resp.json()
        except ValueError:
            return None, resp.text
        if isinstance(body, dict):
            return body.get("code"), body.get("msg", resp.text)
        return None, resp.text

    def _classify(self, resp: requests.Response, path: str) -> Exception:
        code, msg = self._error_payload(resp)
        detail = f"{resp.status_code} {path}: {msg}"
        if resp.status_code in (401, 403) or code in AUTH_ERROR_CODES:
            return Unauthorized(detail, endpoint=path)
        if resp.status_code in (418, 429):
            return RateLimited(detail, endpoint=path, retry_after=self._get_retry_after(resp))
        if resp.status_code >= 500:
            return Transient(detail, endpoint=path)
        return Rejected(detail, endpoint=path, code=code)

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, *, signed: bool = False):
        params = params or {}
        query = self._sign(params) if signed else urlencode(params)
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"

        try:
            resp = self.session.request(method, url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise Transient(f"Request failed: {method} {path}: {type(e).__name__}", endpoint=path) from e

        if not resp.ok:
            error = self._classify(resp, path)
            logger.warning(f"Exchange request failed | method={method} path={path} error={error}")
            raise error

        if resp.text:
            return resp.json()
        return None

    def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        rows = self._request("GET", "/fapi/v1/klines", {"symbol": symbol, "interval": timeframe.value, "limit": limit})
        return [
            Candle(
                open_time=int(row[0]),
                open=Decimal(row[1]),
                high=Decimal(row[2]),
                low=Decimal(row[3]),
                close=Decimal(row[4]),
                volume=Decimal(row[5]),
                close_time=int(row[6]),
            )
            for row in rows
        ]

    def get_price(self, symbol: str) -> Decimal:
        res = self._request("GET", "/fapi/v1/premiumIndex", {"symbol": symbol})
        return Decimal(res["markPrice"])

    def get_margin_balance(self) -> Decimal:
        res = self._request("GET", "/fapi/v2/account", signed=True)
        for asset in res.get("assets", []):
            if asset.get("asset") == "USDT":
                return Decimal(asset["availableBalance"])
        return Decimal("0")

    def set_leverage(self, symbol: str, leverage: int) -> None:
        self._request("POST", "/fapi/v1/leverage", {"symbol": symbol, "leverage": leverage}, signed=True)

    def place_order(self, spec: OrderSpec) -> str:
        params: Dict[str, Any] = {
            "symbol": spec.symbol,
            "side": spec.side.value,
            "type": "MARKET",
            "quantity": str(spec.quantity),
        }
        if spec.reduce_only:
            params["reduceOnly"] = "true"
        if spec.client_order_id:
            params["newClientOrderId"] = spec.client_order_id
        res = self._request("POST", "/fapi/v1/order", params, signed=True)
        return str(res["orderId"])
