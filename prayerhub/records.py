"""
Plain record types returned by every DbClient implementation.

Both the in-memory and the SQLAlchemy store hand these dataclasses to their
callers, so route handlers never see ORM rows.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, TypeVar

logger = logging.getLogger(__name__)

USER_ROLES = ("regular", "leader", "admin")
ORGANIZATION_ROLES = ("admin", "member")
GROUP_ROLES = ("leader", "member")
GROUP_CATEGORIES = ("health", "career", "family", "relationship", "other")
GROUP_PRIVACY = ("open", "request", "invite")
REQUEST_STATUSES = ("waiting", "answered", "declined")
REQUEST_URGENCIES = ("low", "medium", "high")
NOTIFICATION_TYPES = (
    "new_request",
    "new_comment",
    "status_update",
    "added_to_group",
    "added_to_organization",
    "org_role_changed",
    "invited_to_organization",
    "new_meeting",
    "meeting_updated",
    "meeting_cancelled",
)
# Notification types whose reference_id points at a prayer request.
REQUEST_NOTIFICATION_TYPES = ("new_request", "new_comment", "status_update")

# Fields never touched by a partial update.
IMMUTABLE_FIELDS = frozenset({"id", "created_at", "joined_at", "timestamp"})

R = TypeVar("R")


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used by both stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def coerce_choice(
    value: Optional[str], choices: Iterable[str], default: str, *, field_name: str
) -> str:
    """
    Return `value` if it is one of `choices`, otherwise `default`.

    Missing values fall back silently; unknown values are logged so that
    callers sending bad enums can be found in the logs.
    """
    if value is None or value == "":
        return default
    if value in choices:
        return value
    logger.warning("Coercing invalid %s %r to %r", field_name, value, default)
    return default


def merge_changes(record: R, changes: Mapping[str, Any], *, protected: Iterable[str] = ()) -> R:
    """Apply a partial update to a record, ignoring unknown and identity fields."""
    names = {f.name for f in dataclasses.fields(record)}
    blocked = IMMUTABLE_FIELDS.union(protected)
    accepted = {
        key: value for key, value in changes.items() if key in names and key not in blocked
    }
    return dataclasses.replace(record, **accepted)


def filter_changes(record_cls: type, changes: Mapping[str, Any], *, protected: Iterable[str] = ()) -> dict:
    """Same filtering as merge_changes, for stores that update rows in place."""
    names = {f.name for f in dataclasses.fields(record_cls)}
    blocked = IMMUTABLE_FIELDS.union(protected)
    return {key: value for key, value in changes.items() if key in names and key not in blocked}


@dataclass
class User:
    id: int
    username: str
    password: str
    name: str
    email: str
    role: str = "regular"
    phone: Optional[str] = None
    avatar: Optional[str] = None
    bio: Optional[str] = None


@dataclass
class Organization:
    id: int
    name: str
    created_by: int
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OrganizationMember:
    id: int
    organization_id: int
    user_id: int
    role: str = "member"
    joined_at: datetime = field(default_factory=utcnow)


@dataclass
class OrganizationTag:
    id: int
    organization_id: int
    name: str
    color: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class GroupTag:
    id: int
    group_id: int
    tag_id: int


@dataclass
class Group:
    id: int
    name: str
    organization_id: int
    created_by: int
    description: Optional[str] = None
    category: str = "other"
    privacy: str = "open"
    leader_rotation: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class GroupMember:
    id: int
    group_id: int
    user_id: int
    role: str = "member"
    joined_at: datetime = field(default_factory=utcnow)


@dataclass
class PrayerRequest:
    id: int
    group_id: int
    user_id: int
    title: str
    description: str
    urgency: str = "medium"
    is_anonymous: bool = False
    status: str = "waiting"
    follow_up_date: Optional[datetime] = None
    is_stale: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Comment:
    id: int
    prayer_request_id: int
    user_id: int
    text: str
    is_private: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    id: int
    user_id: int
    type: str
    message: str
    reference_id: Optional[int] = None
    read: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PrayingFor:
    id: int
    prayer_request_id: int
    user_id: int
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    id: int
    user_id: int
    token: str
    expires_at: datetime
    is_used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and self.expires_at > (now or utcnow())


@dataclass
class NotificationPreference:
    id: int
    user_id: int
    email_notifications: bool = True
    push_notifications: bool = True
    in_app_notifications: bool = True
    prayer_requests: bool = True
    group_invitations: bool = True
    comments: bool = True
    status_updates: bool = True
    group_updates: bool = True
    stale_prayer_reminders: bool = True
    reminder_interval: int = 7
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class GroupNotificationPreference:
    id: int
    user_id: int
    group_id: int
    muted: bool = False
    new_prayer_requests: bool = True
    prayer_status_updates: bool = True
    new_comments: bool = True
    group_updates: bool = True
    meeting_reminders: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Meeting:
    id: int
    group_id: int
    title: str
    meeting_type: str
    meeting_link: str
    start_time: datetime
    created_by: int
    description: Optional[str] = None
    end_time: Optional[datetime] = None
    is_recurring: bool = False
    recurring_pattern: Optional[str] = None
    recurring_day: Optional[int] = None
    recurring_until: Optional[datetime] = None
    parent_meeting_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MeetingNote:
    id: int
    meeting_id: int
    content: str
    summary: Optional[str] = None
    is_ai_generated: bool = False
    created_by: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


def newest_first(items: Iterable[R], attr: str = "created_at") -> list[R]:
    return sorted(items, key=lambda item: (getattr(item, attr), item.id), reverse=True)
