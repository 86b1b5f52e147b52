"""
Worker loop that drains the notification outbox into the notifications table.

Only needed when the outbox is Redis-backed; the in-memory outbox is
delivered inline by the notifier.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from prayerhub.db import DbClient
from prayerhub.dependencies import get_db_client, get_outbox
from prayerhub.notifications import deliver_intent
from prayerhub.outbox import NotificationOutbox

logger = logging.getLogger(__name__)


def process_next(
    *,
    db: Optional[DbClient] = None,
    outbox: Optional[NotificationOutbox] = None,
    block: bool = True,
    timeout: Optional[int] = None,
) -> bool:
    """
    Deliver one intent from the outbox. Returns True if a notification was written.

    A failed delivery is logged by `deliver_intent` and the intent goes back on
    the outbox for a later pass, after the loop has slept.
    """
    if db is None:
        db = get_db_client()
    # Empty outboxes are falsy.
    if outbox is None:
        outbox = get_outbox()

    intent = outbox.dequeue(block=block, timeout=timeout)
    if intent is None:
        return False
    if not deliver_intent(db, intent):
        outbox.enqueue(intent)
        return False
    return True


def run_loop(poll_interval_seconds: float = 2.0) -> None:
    """
    Simple loop that blocks on the outbox. Intended to be run under systemd/supervisor.
    """
    db = get_db_client()
    outbox = get_outbox()
    while True:
        processed = process_next(
            db=db, outbox=outbox, block=True, timeout=int(poll_interval_seconds)
        )
        if not processed:
            time.sleep(poll_interval_seconds)


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )
    logger.info("Notification worker starting")
    run_loop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
