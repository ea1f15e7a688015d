"""
Binance USD-M Futures Trading Bot.

A rule-driven futures trading bot featuring:
- Daily and weekly indicator snapshots (RSI, MACD, Bollinger Bands)
- Pluggable entry/exit conditions with trailing-stop precedence
- LONG and SHORT trailing stops that only ratchet in the position's favour
- Resilient exchange gateway: per-endpoint rate limits, circuit breakers,
  bounded retries with jittered backoff, idempotent order keys
- Paper-trading client for dry runs and tests
- Structured logging via loguru with credential redaction
- Configuration-driven (YAML + environment, validated with pydantic)

Core Modules:
    models: Candles, indicator sets, snapshots, orders and decisions
    indicators: Indicator registry and cached calculator
    trailing_stop: Trailing-stop tracker for one position
    rules: Entry/exit conditions and the rule evaluator
    rate_limit_policy: Token-bucket budgets per endpoint class
    circuit_breaker: Count-based circuit breaker
    exchange: Abstract exchange client and paper client
    binance_adapter: Binance futures REST client
    gateway: Resilient exchange gateway
    bot: Per-symbol trading loop
    runner: Async scheduling of one or many bots
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from futures_bot.config import AppConfig
    >>> from futures_bot.exchange import PaperExchangeClient
    >>> from futures_bot.gateway import ResilientExchangeGateway
    >>>
    >>> config = AppConfig.from_yaml("config.yaml")
    >>> gateway = ResilientExchangeGateway.from_config(PaperExchangeClient(), config)
"""

__version__ = "0.1.0"
__all__ = [
    "models",
    "indicators",
    "trailing_stop",
    "rules",
    "rate_limit_policy",
    "circuit_breaker",
    "exchange",
    "binance_adapter",
    "gateway",
    "bot",
    "runner",
    "config",
    "secrets",
]
