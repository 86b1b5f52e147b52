"""
Outbox for notification intents.

Stores enqueue intents after their primary write has committed; delivery
into the notifications table happens separately. Supports an in-memory
outbox for tests/local runs and a Redis-backed one for production.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions


@dataclass(frozen=True)
class NotificationIntent:
    user_id: int
    type: str
    message: str
    reference_id: Optional[int] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "NotificationIntent":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return cls(**json.loads(raw))


class NotificationOutbox(Protocol):
    """Minimal FIFO interface between fan-out and delivery."""

    def enqueue(self, intent: NotificationIntent) -> None:
        ...

    def dequeue(
        self, *, block: bool = True, timeout: int | None = None
    ) -> Optional[NotificationIntent]:
        ...

    def __len__(self) -> int:
        ...


@dataclass
class InMemoryOutbox:
    """Simple FIFO outbox for testing/dev."""

    items: list[NotificationIntent] = field(default_factory=list)

    def enqueue(self, intent: NotificationIntent) -> None:
        self.items.append(intent)

    def dequeue(
        self, *, block: bool = True, timeout: int | None = None
    ) -> Optional[NotificationIntent]:
        try:
            return self.items.pop(0)
        except IndexError:
            return None

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class RedisOutbox:
    """Redis-backed outbox using list push/pop operations."""

    url: str
    queue_key: str = "prayerhub:notifications"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def enqueue(self, intent: NotificationIntent) -> None:
        self.client.rpush(self.queue_key, intent.to_json())

    def dequeue(
        self, *, block: bool = True, timeout: int | None = None
    ) -> Optional[NotificationIntent]:
        try:
            if block:
                result = self.client.blpop(self.queue_key, timeout=timeout or 0)
                if result is None:
                    return None
                _, raw = result
            else:
                raw = self.client.lpop(self.queue_key)
                if raw is None:
                    return None
            return NotificationIntent.from_json(raw)
        except redis_exceptions.ConnectionError:
            # Managed Redis drops idle connections; reconnect and let the
            # worker loop retry on the next pass.
            self.client = redis.Redis.from_url(self.url)
            return None

    def __len__(self) -> int:
        return int(self.client.llen(self.queue_key))
