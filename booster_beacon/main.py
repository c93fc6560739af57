"""BoosterBeacon - Main Entry Point."""

import asyncio
import logging
import sys

import uvicorn

from booster_beacon.config import settings
from booster_beacon.db.database import close_db, init_db

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def run_api() -> None:
    """Serve the HTTP API; the app's lifespan starts the scheduler when enabled."""
    uvicorn.run(
        "booster_beacon.api:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        reload=settings.debug and settings.environment == "development",
    )


async def prepare_database() -> None:
    await init_db()
    await close_db()


def main():
    """Main entry point."""
    configure_logging()
    logger.info(f"Starting BoosterBeacon ({settings.environment})")

    # Initialize database
    asyncio.run(prepare_database())

    try:
        run_api()
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
