"""
Crypto Price Tracker — Main Orchestrator.
Ties all components together: startup, liveness probe, dashboard, shutdown.
"""

from __future__ import annotations
import asyncio
import os
import sys
import signal
import logging

from dotenv import load_dotenv

# Load .env file before anything else
load_dotenv()

from config import TrackerConfig
from coingecko.rest import CoinGeckoRestClient
from core.catalog import DEFAULT_ASSET, DEFAULT_TIMEFRAME, find_asset, find_timeframe
from core.price_fetcher import PriceFetcher
from core.refresh_controller import MarketState, RefreshController, RefreshStatus
from dashboard import Dashboard

logger = logging.getLogger(__name__)


def setup_logging(config: TrackerConfig):
    # Create log dir before FileHandler
    os.makedirs(os.path.dirname(config.log_file) or ".", exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(config.log_file),
        ],
    )


class Tracker:
    """Main tracker orchestrator."""

    def __init__(self, config: TrackerConfig):
        self.config = config
        self._stopped = asyncio.Event()

        self.client = CoinGeckoRestClient(
            base_url=config.api.base_url,
            api_key=config.api.api_key,
            retry_policy=config.api.retry,
            api_key_header=config.api.api_key_header,
        )
        self.fetcher = PriceFetcher(
            self.client,
            call_spacing_sec=config.fetch.call_spacing_sec,
        )

        asset = find_asset(config.fetch.default_asset)
        if asset is None:
            logger.warning(f"[BOOT] Unknown DEFAULT_ASSET {config.fetch.default_asset}, using {DEFAULT_ASSET.symbol}")
            asset = DEFAULT_ASSET
        timeframe = find_timeframe(config.fetch.default_timeframe)
        if timeframe is None:
            logger.warning(f"[BOOT] Unknown DEFAULT_TIMEFRAME {config.fetch.default_timeframe}, using {DEFAULT_TIMEFRAME.label}")
            timeframe = DEFAULT_TIMEFRAME

        self.controller = RefreshController(
            fetcher=self.fetcher,
            client=self.client,
            asset=asset,
            timeframe=timeframe,
            debounce_sec=config.fetch.debounce_sec,
        )
        self.controller.on_change(self._log_state)

        self.dashboard = None
        if config.dashboard.enabled:
            self.dashboard = Dashboard(
                self.controller,
                host=config.dashboard.host,
                port=config.dashboard.port,
            )

    async def start(self):
        """Full startup sequence."""
        logger.info("=" * 60)
        logger.info("   CRYPTO PRICE TRACKER — STARTING")
        logger.info("=" * 60)

        if not self.config.api.api_key:
            logger.warning("[BOOT] COINGECKO_API_KEY not set, using the keyless public tier")

        if self.dashboard is not None:
            await self.dashboard.start()

        available = await self.controller.start()
        if available:
            logger.info("[BOOT] ✅ Upstream available. Running...")
        else:
            logger.error("[BOOT] Upstream unavailable. Waiting for a retry request.")

        await self._stopped.wait()

    async def stop(self):
        """Graceful shutdown."""
        logger.info("[SHUTDOWN] Stopping tracker...")
        await self.controller.stop()
        if self.dashboard is not None:
            await self.dashboard.stop()
        await self.client.close()
        self._stopped.set()
        logger.info("[SHUTDOWN] Complete.")

    async def _log_state(self, state: MarketState):
        if state.status == RefreshStatus.ERROR:
            logger.warning(f"[STATE] {state.asset.symbol}/{state.timeframe.label}: {state.refresh.last_error}")
        elif state.status == RefreshStatus.IDLE and state.quote is not None:
            logger.info(
                f"[STATE] {state.quote.symbol_display} ${state.quote.price_usd} "
                f"({state.quote.change_percent_24h:+.2f}% 24h), {len(state.series)} points"
            )


async def main():
    """Entry point."""
    config = TrackerConfig.from_env()
    setup_logging(config)

    tracker = Tracker(config)

    # Graceful shutdown handler
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        def handle_signal(sig):
            logger.info(f"Received signal {sig}. Initiating shutdown...")
            asyncio.create_task(tracker.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    try:
        await tracker.start()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received in main loop.")
        await tracker.stop()
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await tracker.stop()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
