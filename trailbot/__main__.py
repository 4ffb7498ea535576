"""Run the bot: ``python -m trailbot --config config.yaml``.

Without Kraken credentials (or with ``--paper``) orders go to an
in-memory exchange quoted from Kraken's public ticker.
"""
import argparse
import asyncio
import sys
from contextlib import AsyncExitStack
from typing import Optional

from aiohttp import web

from .config import TradingConfig
from .control_server import ControlServer
from .engine import PositionLifecycleEngine
from .gateways import InMemoryExchange
from .kraken_adapter import KrakenAdapter
from .logging_setup import logger, setup_logging
from .persistence_sqlite import PositionStore
from .rate_limit_policy import RateLimitManager
from .scheduler import MonitorScheduler
from .secrets import KrakenCredentials, load_credentials


class PaperExchange(InMemoryExchange):
    """In-memory order book that quotes real Kraken prices.

    Balances live in memory only, so paper positions do not survive a restart.
    """

    def __init__(self, quotes: KrakenAdapter, quote_currencies=None):
        super().__init__(quote_currencies=quote_currencies)
        self.quotes = quotes

    async def get_last_price(self, instrument: str):
        price = await self.quotes.get_last_price(instrument)
        self.set_prices(instrument, [price])
        return await super().get_last_price(instrument)


def build_adapter(config: TradingConfig, credentials: Optional[KrakenCredentials]) -> KrakenAdapter:
    limiter = RateLimitManager.from_config(
        config.rate_limit.private_calls_per_window,
        config.rate_limit.window_seconds,
        config.rate_limit.public_per_second,
    )
    return KrakenAdapter(
        credentials.api_key if credentials else "",
        credentials.api_secret if credentials else "",
        base_url=config.exchange.base_url,
        timeout=config.exchange.timeout,
        max_retries=config.exchange.max_retries,
        max_backoff_seconds=config.exchange.max_backoff_seconds,
        rate_limiter=limiter,
    )


async def serve(config: TradingConfig, paper: bool) -> None:
    credentials = None
    if not paper:
        try:
            credentials = load_credentials()
        except ValueError as e:
            logger.warning(f"{e}\nFalling back to paper trading")
            paper = True

    store = PositionStore(config.persistence.db_path, password=config.persistence.encryption_password)
    async with AsyncExitStack() as stack:
        stack.callback(store.close)
        adapter = await stack.enter_async_context(build_adapter(config, credentials))
        exchange = PaperExchange(adapter, config.strategy.quote_currencies) if paper else adapter
        engine = PositionLifecycleEngine(
            exchange,
            exchange,
            store,
            quote_currencies=config.strategy.quote_currencies,
            lot_decimals=config.strategy.lot_decimals,
            call_timeout=config.strategy.call_timeout,
            fill_timeout=config.strategy.fill_timeout,
            max_tick_concurrency=config.strategy.max_tick_concurrency,
        )
        scheduler = MonitorScheduler(engine, interval_seconds=config.strategy.check_interval_seconds)
        server = ControlServer(engine, scheduler)

        runner = web.AppRunner(server.app)
        await runner.setup()
        stack.push_async_callback(runner.cleanup)
        site = web.TCPSite(runner, config.server.host, config.server.port)
        await site.start()
        logger.info(
            f"trailbot {'PAPER' if paper else 'LIVE'} listening on "
            f"http://{config.server.host}:{config.server.port}"
        )
        await asyncio.Event().wait()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Kraken trailing-stop bot")
    parser.add_argument("--config", help="Path to YAML config file")
    parser.add_argument("--paper", action="store_true", help="Simulate orders in memory")
    args = parser.parse_args(argv)

    config = TradingConfig.from_yaml(args.config) if args.config else TradingConfig()
    setup_logging(log_file=config.persistence.log_file, level=config.persistence.log_level)
    try:
        asyncio.run(serve(config, args.paper))
    except KeyboardInterrupt:
        logger.info("Shutting down")
        sys.exit(0)


if __name__ == "__main__":
    main()
