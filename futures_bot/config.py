"""Configuration loader for the trading bot.

Supports YAML format with environment variable interpolation. Strategy
parameters are validated with pydantic; every violation is reported in a
single ``ConfigurationError``.
"""
import os
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigurationError
from .models import TradeDirection


@dataclass
class ExchangeConfig:
    """Binance USD-M futures connection settings."""
    base_url: str = "https://fapi.binance.com"
    timeout: int = 10
    recv_window: int = 5000
    paper: bool = True  # use the paper client instead of the live exchange


@dataclass
class EndpointBudget:
    """Token-bucket budget for one endpoint class."""
    limit_for_period: int
    period_seconds: float
    max_wait_seconds: float


def _trading_budget() -> EndpointBudget:
    return EndpointBudget(limit_for_period=8, period_seconds=10, max_wait_seconds=5)


def _market_budget() -> EndpointBudget:
    return EndpointBudget(limit_for_period=30, period_seconds=1, max_wait_seconds=3)


def _account_budget() -> EndpointBudget:
    return EndpointBudget(limit_for_period=2, period_seconds=1, max_wait_seconds=5)


@dataclass
class RateLimitConfig:
    """Rate-limit policy settings (conservative versus Binance's published limits)."""
    policy: str = "block"  # "block" or "fail_fast"
    trading: EndpointBudget = field(default_factory=_trading_budget)
    market: EndpointBudget = field(default_factory=_market_budget)
    account: EndpointBudget = field(default_factory=_account_budget)


@dataclass
class CircuitBreakerConfig:
    failure_rate_threshold: float = 50.0  # percent
    minimum_calls: int = 5
    window_size: int = 10
    cooldown_seconds: float = 30.0


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0


@dataclass
class LoggingConfig:
    log_file: str = "futures_bot.log"
    log_level: str = "INFO"


# Environment variable -> TradingConfig field
TRADING_ENV_VARS = {
    "TRADING_SYMBOL": "symbol",
    "TRADE_DIRECTION": "direction",
    "TRADE_AMOUNT": "trade_amount",
    "LEVERAGE": "leverage",
    "TRAILING_STOP_PERCENT": "trailing_stop_percent",
    "LOOKBACK_PERIOD_RSI": "rsi_period",
    "RSI_OVERSOLD": "rsi_oversold_threshold",
    "RSI_OVERBOUGHT": "rsi_overbought_threshold",
    "MACD_FAST": "macd_fast_period",
    "MACD_SLOW": "macd_slow_period",
    "MACD_SIGNAL": "macd_signal_period",
    "BB_PERIOD": "bb_period",
    "BB_STD": "bb_standard_deviation",
    "INTERVAL": "interval_seconds",
}


class TradingConfig(BaseModel):
    """Strategy parameters for one bot."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str = Field("BTCUSDT", min_length=1)
    direction: TradeDirection = TradeDirection.LONG
    trade_amount: Decimal = Field(Decimal("0.001"), gt=0)
    leverage: int = Field(3, ge=1, le=125)
    trailing_stop_percent: Decimal = Field(Decimal("1.0"), gt=0, lt=100)
    rsi_period: int = Field(14, ge=2)
    rsi_oversold_threshold: float = Field(30.0, ge=0, le=100)
    rsi_overbought_threshold: float = Field(70.0, ge=0, le=100)
    macd_fast_period: int = Field(12, ge=1)
    macd_slow_period: int = Field(26, ge=2)
    macd_signal_period: int = Field(9, ge=1)
    bb_period: int = Field(20, ge=2)
    bb_standard_deviation: float = Field(2.0, gt=0)
    interval_seconds: int = Field(900, gt=0)

    @model_validator(mode="after")
    def _check_ranges(self) -> "TradingConfig":
        if self.macd_fast_period >= self.macd_slow_period:
            raise ValueError("macd_fast_period must be below macd_slow_period")
        if self.rsi_oversold_threshold >= self.rsi_overbought_threshold:
            raise ValueError("rsi_oversold_threshold must be below rsi_overbought_threshold")
        return self

    @classmethod
    def create(cls, **values: Any) -> "TradingConfig":
        """Validate ``values``; raise ConfigurationError listing every violation."""
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(
                f"{'.'.join(str(p) for p in err['loc']) or 'trading'}: {err['msg']}"
                for err in e.errors()
            ) from e

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TradingConfig":
        """Build from TRADING_SYMBOL, LEVERAGE, ... ; unset variables keep their defaults."""
        environ = os.environ if environ is None else environ
        values = {
            field_name: environ[var]
            for var, field_name in TRADING_ENV_VARS.items()
            if environ.get(var)
        }
        return cls.create(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump()
        data["direction"] = self.direction.value
        data["trade_amount"] = str(self.trade_amount)
        data["trailing_stop_percent"] = str(self.trailing_stop_percent)
        return data


def _budget(data: Dict[str, Any], default: EndpointBudget) -> EndpointBudget:
    return EndpointBudget(**{**asdict(default), **(data or {})})


@dataclass
class AppConfig:
    """Complete application configuration."""
    exchange: ExchangeConfig
    trading: TradingConfig
    rate_limit: RateLimitConfig
    circuit_breaker: CircuitBreakerConfig
    retry: RetryConfig
    logging: LoggingConfig

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        rate_data = dict(data.get("rate_limit") or {})
        rate_limit = RateLimitConfig(
            policy=rate_data.get("policy", "block"),
            trading=_budget(rate_data.get("trading"), _trading_budget()),
            market=_budget(rate_data.get("market"), _market_budget()),
            account=_budget(rate_data.get("account"), _account_budget()),
        )
        if rate_limit.policy not in ("block", "fail_fast"):
            raise ConfigurationError([f"rate_limit.policy: unknown policy {rate_limit.policy!r}"])
        return cls(
            exchange=ExchangeConfig(**(data.get("exchange") or {})),
            trading=TradingConfig.create(**(data.get("trading") or {})),
            rate_limit=rate_limit,
            circuit_breaker=CircuitBreakerConfig(**(data.get("circuit_breaker") or {})),
            retry=RetryConfig(**(data.get("retry") or {})),
            logging=LoggingConfig(**(data.get("logging") or {})),
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "AppConfig":
        """Load configuration from YAML file with env var interpolation.
        
        Args:
            config_path: Path to YAML config file
        
        Returns:
            AppConfig instance
        
        Example YAML:
            exchange:
              paper: false
            trading:
              symbol: ETHUSDT
              leverage: 5
              trailing_stop_percent: 2.0
            logging:
              log_file: "${STATE_DIR}/bot.log"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        
        with config_file.open("r") as f:
            raw = f.read()
        
        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)
        
        return cls.from_dict(yaml.safe_load(raw) or {})
    
    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            "exchange": asdict(self.exchange),
            "trading": self.trading.to_dict(),
            "rate_limit": asdict(self.rate_limit),
            "circuit_breaker": asdict(self.circuit_breaker),
            "retry": asdict(self.retry),
            "logging": asdict(self.logging),
        }
        
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
