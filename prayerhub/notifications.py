"""
Notification fan-out.

Stores call into a Notifier after their primary write. The notifier works out
who should hear about the change, turns that into NotificationIntents and puts
them on the outbox. Delivery (writing notification rows) either happens right
away, for the in-memory outbox, or in the worker process draining Redis.
Nothing in here is allowed to fail the write that triggered it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional

from prayerhub.outbox import InMemoryOutbox, NotificationIntent, NotificationOutbox
from prayerhub.records import (
    NOTIFICATION_TYPES,
    Comment,
    GroupMember,
    GroupNotificationPreference,
    Meeting,
    NotificationPreference,
    OrganizationMember,
    PrayerRequest,
)

if TYPE_CHECKING:
    from prayerhub.db import DbClient

logger = logging.getLogger(__name__)

STATUS_PHRASES = {
    "answered": "marked as answered",
    "declined": "marked as declined",
}

# Preference switches consulted per kind of event: (global toggle, group toggle).
PREFERENCE_KEYS = {
    "new_request": ("prayer_requests", "new_prayer_requests"),
    "status_update": ("status_updates", "prayer_status_updates"),
    "new_comment": ("comments", "new_comments"),
    "stale_request": ("stale_prayer_reminders", None),
    "added_to_group": ("group_invitations", None),
    "added_to_organization": ("group_invitations", None),
    "invited_to_organization": ("group_invitations", None),
    "org_role_changed": ("group_updates", None),
    "meeting": ("group_updates", "meeting_reminders"),
}


class Notifier:
    """Builds notification intents for store events and publishes them."""

    def __init__(
        self,
        outbox: Optional[NotificationOutbox] = None,
        *,
        deliver_inline: bool = True,
    ):
        self.outbox = outbox if outbox is not None else InMemoryOutbox()
        self.deliver_inline = deliver_inline

    # Event hooks called by the stores.

    def prayer_request_created(self, db: "DbClient", request: PrayerRequest) -> int:
        def build():
            group = db.get_group(request.group_id)
            requester = db.get_user(request.user_id)
            if not group or not requester:
                return []
            requester_name = "Anonymous" if request.is_anonymous else requester.name
            message = (
                f"New prayer request: {request.title} in {group.name} by {requester_name}"
            )
            return [
                NotificationIntent(member.user_id, "new_request", message, request.id)
                for member in self._group_audience(
                    db, request.group_id, exclude=request.user_id, kind="new_request"
                )
            ]

        return self._fan_out(db, "prayer_request_created", build)

    def prayer_request_status_changed(
        self, db: "DbClient", request: PrayerRequest, previous_status: str
    ) -> int:
        if request.status == previous_status:
            return 0

        def build():
            group = db.get_group(request.group_id)
            requester = db.get_user(request.user_id)
            if not group or not requester:
                return []
            phrase = STATUS_PHRASES.get(request.status, "updated to")
            message = f'Prayer request "{request.title}" in {group.name} was {phrase}'
            return [
                NotificationIntent(member.user_id, "status_update", message, request.id)
                for member in self._group_audience(
                    db, request.group_id, exclude=request.user_id, kind="status_update"
                )
            ]

        return self._fan_out(db, "prayer_request_status_changed", build)

    def comment_created(self, db: "DbClient", comment: Comment) -> int:
        def build():
            request = db.get_prayer_request(comment.prayer_request_id)
            if not request or request.user_id == comment.user_id:
                return []
            commenter = db.get_user(comment.user_id)
            if not commenter:
                return []
            if not self._wants(db, request.user_id, "new_comment", request.group_id):
                return []
            message = (
                f'{commenter.name} commented on your prayer request "{request.title}"'
            )
            return [
                NotificationIntent(request.user_id, "new_comment", message, request.id)
            ]

        return self._fan_out(db, "comment_created", build)

    def group_member_added(
        self, db: "DbClient", member: GroupMember, added_by: Optional[int]
    ) -> int:
        if added_by is None or added_by == member.user_id:
            return 0

        def build():
            group = db.get_group(member.group_id)
            if not group or not self._wants(db, member.user_id, "added_to_group"):
                return []
            message = f'You were added to the group "{group.name}"'
            return [
                NotificationIntent(member.user_id, "added_to_group", message, group.id)
            ]

        return self._fan_out(db, "group_member_added", build)

    def organization_member_added(
        self,
        db: "DbClient",
        member: OrganizationMember,
        added_by: Optional[int],
        *,
        invited: bool = False,
    ) -> int:
        if added_by is None or added_by == member.user_id:
            return 0
        notification_type = "invited_to_organization" if invited else "added_to_organization"

        def build():
            organization = db.get_organization(member.organization_id)
            if not organization or not self._wants(db, member.user_id, notification_type):
                return []
            if invited:
                message = f'You were invited to join the organization "{organization.name}"'
            else:
                message = f'You were added to the organization "{organization.name}"'
            return [
                NotificationIntent(member.user_id, notification_type, message, organization.id)
            ]

        return self._fan_out(db, notification_type, build)

    def organization_role_changed(
        self, db: "DbClient", member: OrganizationMember, previous_role: str
    ) -> int:
        if member.role == previous_role:
            return 0

        def build():
            organization = db.get_organization(member.organization_id)
            if not organization or not self._wants(db, member.user_id, "org_role_changed"):
                return []
            message = (
                f'Your role in "{organization.name}" was changed to {member.role}'
            )
            return [
                NotificationIntent(
                    member.user_id, "org_role_changed", message, organization.id
                )
            ]

        return self._fan_out(db, "organization_role_changed", build)

    def meeting_created(self, db: "DbClient", meeting: Meeting) -> int:
        return self._meeting_event(
            db, meeting, meeting.created_by, "new_meeting", "New meeting"
        )

    def meeting_updated(
        self, db: "DbClient", meeting: Meeting, actor_id: Optional[int] = None
    ) -> int:
        return self._meeting_event(
            db, meeting, actor_id, "meeting_updated", "Meeting updated"
        )

    def meeting_cancelled(
        self, db: "DbClient", meeting: Meeting, actor_id: Optional[int] = None
    ) -> int:
        return self._meeting_event(
            db, meeting, actor_id, "meeting_cancelled", "Meeting cancelled"
        )

    def prayer_request_stale(self, db: "DbClient", request: PrayerRequest) -> int:
        def build():
            if not self._wants(db, request.user_id, "stale_request", request.group_id):
                return []
            message = (
                f'Your prayer request "{request.title}" is now stale. '
                "Please update its status."
            )
            return [
                NotificationIntent(request.user_id, "status_update", message, request.id)
            ]

        return self._fan_out(db, "prayer_request_stale", build)

    # Delivery.

    def deliver_pending(self, db: "DbClient", limit: Optional[int] = None) -> int:
        """
        Drain the outbox into the notifications table. Returns rows written.

        Intents that fail to write are logged and put back on the outbox after
        the drain so a single bad row cannot spin the loop.
        """
        delivered = 0
        failed: list[NotificationIntent] = []
        while limit is None or delivered + len(failed) < limit:
            intent = self.outbox.dequeue(block=False)
            if intent is None:
                break
            if deliver_intent(db, intent):
                delivered += 1
            else:
                failed.append(intent)
        for intent in failed:
            self.outbox.enqueue(intent)
        return delivered

    # Internals.

    def _meeting_event(
        self,
        db: "DbClient",
        meeting: Meeting,
        actor_id: Optional[int],
        notification_type: str,
        label: str,
    ) -> int:
        def build():
            group = db.get_group(meeting.group_id)
            if not group:
                return []
            when = meeting.start_time.strftime("%Y-%m-%d %H:%M")
            message = f"{label}: {meeting.title} in {group.name} on {when} UTC"
            return [
                NotificationIntent(member.user_id, notification_type, message, meeting.id)
                for member in self._group_audience(
                    db, meeting.group_id, exclude=actor_id, kind="meeting"
                )
            ]

        return self._fan_out(db, notification_type, build)

    def _fan_out(self, db: "DbClient", event: str, build) -> int:
        try:
            intents = build()
        except Exception:
            logger.exception("Failed to build notifications for %s", event)
            return 0
        return self.publish(db, intents)

    def publish(self, db: "DbClient", intents: Iterable[NotificationIntent]) -> int:
        count = 0
        for intent in intents:
            if intent.type not in NOTIFICATION_TYPES:
                logger.warning("Dropping notification with unknown type %r", intent.type)
                continue
            try:
                self.outbox.enqueue(intent)
            except Exception:
                logger.exception("Failed to enqueue %s notification", intent.type)
                continue
            count += 1
        if count and self.deliver_inline:
            try:
                self.deliver_pending(db)
            except Exception:
                logger.exception("Inline notification delivery failed")
        return count

    def _group_audience(
        self, db: "DbClient", group_id: int, *, exclude: Optional[int], kind: str
    ) -> list[GroupMember]:
        return [
            member
            for member in db.get_group_members(group_id)
            if member.user_id != exclude and self._wants(db, member.user_id, kind, group_id)
        ]

    def _wants(
        self, db: "DbClient", user_id: int, kind: str, group_id: Optional[int] = None
    ) -> bool:
        global_key, group_key = PREFERENCE_KEYS[kind]
        prefs = db.get_user_notification_preferences(user_id)
        if prefs is not None:
            if not prefs.in_app_notifications or not getattr(prefs, global_key):
                return False
        if group_id is not None:
            group_prefs = db.get_group_notification_preferences(user_id, group_id)
            if group_prefs is not None:
                if group_prefs.muted:
                    return False
                if group_key and not getattr(group_prefs, group_key):
                    return False
        return True


def deliver_intent(db: "DbClient", intent: NotificationIntent) -> bool:
    try:
        db.create_notification(
            user_id=intent.user_id,
            type=intent.type,
            message=intent.message,
            reference_id=intent.reference_id,
        )
    except Exception:
        logger.exception(
            "Failed to deliver %s notification to user %s", intent.type, intent.user_id
        )
        return False
    return True


def get_or_create_notification_preferences(
    db: "DbClient", user_id: int
) -> NotificationPreference:
    """Return a user's preferences, creating the defaults on first read."""
    preferences = db.get_user_notification_preferences(user_id)
    if preferences is None:
        preferences = db.create_notification_preferences(user_id)
    return preferences


def get_or_create_group_notification_preferences(
    db: "DbClient", user_id: int, group_id: int
) -> GroupNotificationPreference:
    preferences = db.get_group_notification_preferences(user_id, group_id)
    if preferences is None:
        preferences = db.create_group_notification_preferences(user_id, group_id)
    return preferences
