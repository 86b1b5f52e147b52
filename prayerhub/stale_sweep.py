"""
Daemon that periodically marks overdue prayer requests as stale.
"""

from __future__ import annotations

import argparse
import logging
import random
import time
from typing import Optional, Sequence

from prayerhub.config import get_settings
from prayerhub.db import DbClient
from prayerhub.dependencies import get_db_client

logger = logging.getLogger(__name__)


def run_sweep(db: Optional[DbClient] = None) -> int:
    """Run one sweep and return how many requests were newly marked stale."""
    db = db or get_db_client()
    updated = db.check_and_update_stale_prayer_requests()
    logger.info("Stale sweep complete, marked %d prayer requests", updated)
    return updated


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Stale prayer request sweep")
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=settings.stale_sweep_interval_seconds,
        help="Seconds between sweeps",
    )
    parser.add_argument(
        "--jitter-seconds",
        type=int,
        default=settings.stale_sweep_jitter_seconds,
        help="Max random jitter added to sleep",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    db = get_db_client()
    while True:
        try:
            run_sweep(db)
        except Exception as exc:
            logger.exception("Stale sweep failed: %s", exc)

        if args.once:
            return 0

        sleep_for = args.interval_seconds + random.uniform(0, args.jitter_seconds)
        logger.info("Sleeping for %.1fs", sleep_for)
        time.sleep(sleep_for)


if __name__ == "__main__":
    raise SystemExit(main())
