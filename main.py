#!/usr/bin/env python3
"""
Settlement Service Startup

Deterministic startup sequence:
1. Load .env and configure logging
2. Validate settlement configuration
3. Check the database and create tables
4. Start the settlement scheduler and run until interrupted
"""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from config import Config  # noqa: E402
from database import create_tables, dispose_engine, test_connection  # noqa: E402


class StartupManager:
    """Brings the settlement service up and down in a fixed order"""

    def __init__(self):
        self.scheduler = None
        self._stop_event = asyncio.Event()

    async def initialize_database(self) -> bool:
        logger.info("🗄️ Initializing database...")
        if not await test_connection():
            logger.error("❌ Database connection test failed")
            return False
        await create_tables()
        logger.info("✅ Database ready")
        return True

    def request_stop(self):
        logger.info("🛑 Shutdown requested")
        self._stop_event.set()

    async def run(self) -> int:
        Config.log_environment_config()

        missing = Config.validate_settlement_configuration()
        if missing:
            logger.error(f"❌ STARTUP_ABORTED: missing configuration {missing}")
            return 1

        if not await self.initialize_database():
            return 1

        from jobs.scheduler import get_scheduler_instance
        self.scheduler = get_scheduler_instance()
        self.scheduler.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Windows event loops do not support signal handlers
                pass

        try:
            await self._stop_event.wait()
        finally:
            self.scheduler.stop()
            await dispose_engine()
            logger.info("👋 Settlement service stopped")
        return 0


def main() -> int:
    return asyncio.run(StartupManager().run())


if __name__ == "__main__":
    sys.exit(main())
