#!/usr/bin/env python3
"""
Marketplace Order Core - deterministic startup

Sequence:
- log configuration
- create tables
- start the background scheduler (expiry sweep, reconciliation)
- run until interrupted, then drain notifications and dispose the engine
"""

import asyncio
import logging
import signal
from typing import Optional

from config import Config

# Setup logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from database import create_tables, dispose_engine  # noqa: E402
from jobs.scheduler import MarketplaceScheduler  # noqa: E402
from services.notification_service import operator_notifier  # noqa: E402


class StartupManager:
    """Owns the process lifecycle of the order core"""

    def __init__(self):
        self.scheduler: Optional[MarketplaceScheduler] = None
        self._stop_event = asyncio.Event()

    async def start(self):
        Config.log_environment_config()
        logger.info("🗄️ Initializing database...")
        await create_tables()

        self.scheduler = MarketplaceScheduler()
        self.scheduler.start()
        logger.info("🚀 Marketplace order core started")

    def request_stop(self):
        self._stop_event.set()

    async def run_forever(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Signal handlers are unavailable on some platforms
                pass
        await self._stop_event.wait()

    async def shutdown(self):
        if self.scheduler is not None:
            self.scheduler.stop()
        await operator_notifier.drain()
        await dispose_engine()
        logger.info("👋 Marketplace order core stopped")


async def main():
    manager = StartupManager()
    try:
        await manager.start()
        await manager.run_forever()
    finally:
        await manager.shutdown()


def _run():
    asyncio.run(main())


if __name__ == "__main__":
    _run()
