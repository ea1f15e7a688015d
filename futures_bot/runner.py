"""Async scheduling of trading bots.

Each bot's ``tick`` is blocking (HTTP through the gateway), so it runs in a
worker thread via ``asyncio.to_thread``; the event loop only does the
scheduling. Several bots on one account share a single gateway and so a
single rate budget and circuit-breaker set.
"""
import asyncio
from typing import Dict, List, Optional

from .bot import FuturesTradingBot
from .gateway import ResilientExchangeGateway
from .logging_setup import logger


class BotRunner:
    """Drive one bot: tick, then wait ``interval_seconds`` (or until stopped)."""

    def __init__(self, bot: FuturesTradingBot, interval_seconds: Optional[float] = None):
        self.bot = bot
        self.interval = interval_seconds if interval_seconds is not None else bot.config.interval_seconds
        self._stop_event = asyncio.Event()
        self.ticks = 0

    async def run(self) -> None:
        self._stop_event.clear()
        self.bot.start()
        logger.info(f"Runner started | symbol={self.bot.symbol} interval={self.interval}s")
        while not self._stop_event.is_set() and self.bot.is_running:
            await asyncio.to_thread(self.bot.tick)
            self.ticks += 1
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Runner finished | symbol={self.bot.symbol} ticks={self.ticks}")

    async def stop(self) -> None:
        """Signal the loop to stop and stop the bot (closing any open position)."""
        self._stop_event.set()
        await asyncio.to_thread(self.bot.stop)


class MultiBotRunner:
    """Run several bots concurrently against one shared gateway."""

    def __init__(self, gateway: ResilientExchangeGateway):
        self.gateway = gateway
        self.runners: Dict[str, BotRunner] = {}

    def add_bot(self, bot: FuturesTradingBot, interval_seconds: Optional[float] = None) -> BotRunner:
        if bot.gateway is not self.gateway:
            raise ValueError(f"Bot for {bot.symbol} must use the shared gateway")
        if bot.symbol in self.runners:
            raise ValueError(f"A bot is already registered for {bot.symbol}")
        runner = BotRunner(bot, interval_seconds)
        self.runners[bot.symbol] = runner
        return runner

    async def run(self) -> None:
        results = await asyncio.gather(
            *(runner.run() for runner in self.runners.values()),
            return_exceptions=True,
        )
        for symbol, result in zip(self.runners, results):
            if isinstance(result, Exception):
                logger.error(f"Bot runner failed | symbol={symbol} error={result}")

    async def stop(self) -> None:
        await asyncio.gather(*(runner.stop() for runner in self.runners.values()))

    def status(self) -> Dict[str, object]:
        bots: List[dict] = [runner.bot.describe() for runner in self.runners.values()]
        return {"bots": bots, "gateway": self.gateway.metrics()}
