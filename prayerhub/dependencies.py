"""
Dependency wiring for the FastAPI app and the background processes.
"""

from __future__ import annotations

from prayerhub.config import get_settings
from prayerhub.db import DbClient, InMemoryDbClient
from prayerhub.db_postgres import PostgresDbClient
from prayerhub.notifications import Notifier
from prayerhub.outbox import InMemoryOutbox, NotificationOutbox, RedisOutbox

_db_client: DbClient | None = None
_outbox: NotificationOutbox | None = None
_notifier: Notifier | None = None


def get_outbox() -> NotificationOutbox:
    """
    Return a singleton outbox. Redis when configured so a separate worker can
    drain it, otherwise a process-local list.
    """
    global _outbox
    if _outbox is not None:
        return _outbox

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _outbox = RedisOutbox(
            url=settings.redis_url,
            queue_key=settings.notification_outbox_key,
        )
    else:
        _outbox = InMemoryOutbox()
    return _outbox


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is not None:
        return _notifier

    outbox = get_outbox()
    # Redis intents are delivered by the notification worker.
    _notifier = Notifier(outbox, deliver_inline=not isinstance(outbox, RedisOutbox))
    return _notifier


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client is not None:
        return _db_client

    settings = get_settings()
    notifier = get_notifier()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient(
            notifier,
            reset_token_ttl_seconds=settings.password_reset_token_ttl_seconds,
        )
    else:
        _db_client = PostgresDbClient(
            settings.database_url,
            notifier,
            reset_token_ttl_seconds=settings.password_reset_token_ttl_seconds,
        )
    return _db_client
