"""
Entry point: run the posting scheduler as a long-lived process.

Starts the publish loop (every minute) and the token refresh loop
(daily) and runs until SIGINT/SIGTERM.  Run exactly one instance.

Usage::

    python run.py
"""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

load_dotenv()

from reelqueue.config import get_settings, validate_env  # noqa: E402
from reelqueue.exceptions import ConfigurationError  # noqa: E402

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")


async def main() -> None:
    from reelqueue.service import create_services

    services = await create_services()
    logger.info("Database connected")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt for Ctrl+C
            pass

    services.scheduler.start()
    try:
        await stop_event.wait()
    finally:
        await services.scheduler.stop()
        logger.info("Scheduler shut down")


if __name__ == "__main__":
    try:
        validate_env()
    except ConfigurationError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
