#!/usr/bin/env python
"""Run one trading bot per symbol from a YAML config.

Usage:
    python scripts/run_bot.py --config config.yaml
    python scripts/run_bot.py --config config.yaml --symbol BTCUSDT --symbol ETHUSDT
    python scripts/run_bot.py --config config.yaml --live

Paper trading is the default; ``--live`` (or ``exchange.paper: false``)
trades on Binance with credentials from ``load_credentials``.
"""
import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from futures_bot.binance_adapter import BinanceFuturesClient
from futures_bot.bot import BotParams, FuturesTradingBot
from futures_bot.config import AppConfig
from futures_bot.errors import ConfigurationError
from futures_bot.exchange import PaperExchangeClient
from futures_bot.gateway import ResilientExchangeGateway
from futures_bot.indicators import IndicatorCalculator, default_indicators
from futures_bot.logging_setup import logger, setup_logging
from futures_bot.rules import default_exit_conditions
from futures_bot.runner import MultiBotRunner
from futures_bot.secrets import load_credentials
from futures_bot.trailing_stop import TrailingStopTracker


def build_client(config: AppConfig, live: bool):
    if live or not config.exchange.paper:
        creds = load_credentials()
        return BinanceFuturesClient.from_credentials(
            creds,
            base_url=config.exchange.base_url,
            timeout=config.exchange.timeout,
            recv_window=config.exchange.recv_window,
        )
    logger.info("Paper trading mode")
    return PaperExchangeClient()


def build_bot(gateway: ResilientExchangeGateway, trading) -> FuturesTradingBot:
    params = BotParams(
        exchange_service=gateway,
        indicator_calculator=IndicatorCalculator(gateway, default_indicators(trading)),
        trailing_stop_tracker=TrailingStopTracker(trading.trailing_stop_percent),
        exit_conditions=default_exit_conditions(trading, trading.direction),
        config=trading,
        direction=trading.direction,
    )
    return FuturesTradingBot(params)


async def run(runner: MultiBotRunner) -> None:
    try:
        await runner.run()
    finally:
        await runner.stop()


def main():
    parser = argparse.ArgumentParser(description="Binance futures trading bot")
    parser.add_argument("--config", required=True, help="Path to YAML config")
    parser.add_argument("--symbol", action="append", help="Trade this symbol (repeatable); defaults to trading.symbol")
    parser.add_argument("--live", action="store_true", help="Trade on Binance instead of paper")
    args = parser.parse_args()

    try:
        config = AppConfig.from_yaml(args.config)
    except (FileNotFoundError, ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(log_file=config.logging.log_file, level=config.logging.log_level)

    try:
        client = build_client(config, args.live)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    gateway = ResilientExchangeGateway.from_config(client, config)
    runner = MultiBotRunner(gateway)
    for symbol in args.symbol or [config.trading.symbol]:
        trading = config.trading.model_copy(update={"symbol": symbol})
        runner.add_bot(build_bot(gateway, trading))

    try:
        asyncio.run(run(runner))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
