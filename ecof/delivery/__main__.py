"""
Run the delivery worker as a standalone process.

    python -m ecof.delivery
"""

import asyncio
import logging
import signal

from core.config import get_settings
from core.logging import setup_logging

from .runtime import create_postgres_runtime

logger = logging.getLogger("ecof.delivery")


async def run_delivery_worker():
    """Start every scheduler and run until SIGINT/SIGTERM."""
    settings = get_settings()
    settings.validate_hard()
    for warning in settings.validate_soft():
        logger.warning(warning)

    runtime = await create_postgres_runtime(settings)
    stop_event = asyncio.Event()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, shutdown_handler)
    loop.add_signal_handler(signal.SIGTERM, shutdown_handler)

    runtime.start()
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(run_delivery_worker())
