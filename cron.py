"""
Run a single scheduler cycle on demand.

Useful for an external cron (instead of the in-process loops in
``run.py``) or for manual runs while debugging.  Do not run it while
``run.py`` is running.

Usage::

    # Publish due posts once:
    python cron.py publish

    # Refresh tokens expiring within the refresh window:
    python cron.py refresh-tokens
"""

import argparse
import asyncio
import logging
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
logger = logging.getLogger("cron")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Run one scheduler cycle")
    parser.add_argument(
        "job",
        choices=["publish", "refresh-tokens"],
        help="Which cycle to run",
    )
    args = parser.parse_args()

    from reelqueue.service import create_services

    services = await create_services()

    if args.job == "publish":
        result = await services.scheduler.trigger_publish_cycle()
        print(
            f"published={result.published} failed={result.failed} "
            f"retried={result.retried} recovered={result.recovered}"
        )
        for error in result.errors:
            print(f"  {error}")
    else:
        result = await services.scheduler.trigger_token_refresh()
        print(f"refreshed={result.refreshed} failed={result.failed}")

    return 0


if __name__ == "__main__":
    try:
        validate_env()
    except ConfigurationError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    sys.exit(asyncio.run(main()))
