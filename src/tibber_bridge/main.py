"""Bridge service - Tibber live feed and consumption backfill into InfluxDB."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from .backfill import BackfillEngine
from .clients.tibber_feed import TibberFeed
from .clients.tibber_query import TibberQueryClient
from .config.settings import BridgeSettings, LoggingConfig, load_settings
from .exceptions import ConfigurationError, StorageConnectionError
from .live_ingest import LiveIngestConnection
from .models import Notification
from .utils.logging import setup_logging
from .writers.influx_writer import InfluxStorage


logger = logging.getLogger(__name__)


class BridgeService:
    """Runs the live ingest connection and, optionally, the backfill engine."""

    def __init__(self, settings: BridgeSettings, storage: Optional[InfluxStorage] = None):
        self.settings = settings
        self.storage = storage or InfluxStorage(settings.influxdb)
        self.live: Optional[LiveIngestConnection] = None
        self.backfill: Optional[BackfillEngine] = None
        self._backfill_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        logger.info("Bridge service initialized")

    def request_shutdown(self):
        self._shutdown_event.set()

    async def start(self) -> int:
        """Run until a shutdown is requested. Returns the process exit code."""
        logger.info("Starting Tibber data fetcher...")

        try:
            await self.storage.connect()
        except StorageConnectionError as e:
            logger.error(f"Failed to start Tibber data fetcher: {e}")
            return 1

        self._setup_signal_handlers()

        async with TibberQueryClient(self.settings.tibber) as query_client:
            feed = TibberFeed(self.settings.tibber, query_client)
            self.live = LiveIngestConnection(self.settings, feed, self.storage)
            self.live.register_handler(Notification.STATUS, self._log_status)

            await self.live.connect()

            if self.settings.backfill.enabled:
                self.backfill = BackfillEngine(self.settings, query_client, self.storage)
                self._backfill_task = asyncio.create_task(self.backfill.run())

            logger.info("Tibber data fetcher started successfully")

            await self._shutdown_event.wait()

            logger.info("Shutting down bridge service")
            await self._stop_backfill()
            await self.live.close()

        logger.info("Bridge service stopped")
        return 0

    async def _stop_backfill(self):
        if self.backfill is None or self._backfill_task is None:
            return

        self.backfill.cancel()
        try:
            await self._backfill_task
        except Exception as e:
            logger.error(f"Backfill ended with an error: {e}", exc_info=True)

    def _log_status(self, status):
        logger.info(f"Live feed status: {status.name.lower()}")

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"{signal.Signals(signum).name} received. Shutting down...")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                # Windows event loops have no signal support
                signal.signal(signum, lambda s, frame: loop.call_soon_threadsafe(signal_handler, s))

    async def health_check(self) -> dict:
        health_status = {
            "service": self.settings.service_name,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "storage": await self.storage.health_check(),
            },
        }

        if self.live:
            health_status["components"]["live"] = await self.live.health_check()

        if self.backfill:
            health_status["components"]["backfill"] = {
                "status": "healthy",
                "stats": vars(self.backfill.stats),
            }

        statuses = [c.get("status", "unknown") for c in health_status["components"].values()]
        if "unhealthy" in statuses:
            health_status["status"] = "unhealthy"
        elif "degraded" in statuses:
            health_status["status"] = "degraded"

        return health_status


async def main(config_file: Optional[str] = None) -> int:
    """Main entry point."""
    config_file = config_file or os.getenv("CONFIG_FILE")

    try:
        settings = load_settings(config_file)
        settings.validate_required()
    except ConfigurationError as e:
        setup_logging(LoggingConfig())
        logger.error(f"Error: {e}")
        return 1

    setup_logging(settings.logging, settings.service_name)
    logger.info(f"Loaded configuration: {settings.masked()}")

    service = BridgeService(settings)
    try:
        return await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        return 1


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
