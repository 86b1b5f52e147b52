"""
Database abstraction for Postgres and an in-memory test implementation.

`DbClient` is the interface the HTTP layer, the stale sweep and the
notification worker program against. `InMemoryDbClient` lives here;
the SQLAlchemy implementation is in `prayerhub.db_postgres`.
"""

from __future__ import annotations

import itertools
import secrets
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol

from prayerhub.errors import DuplicateError
from prayerhub.notifications import Notifier
from prayerhub.records import (
    GROUP_CATEGORIES,
    GROUP_PRIVACY,
    GROUP_ROLES,
    ORGANIZATION_ROLES,
    REQUEST_NOTIFICATION_TYPES,
    REQUEST_STATUSES,
    REQUEST_URGENCIES,
    USER_ROLES,
    Comment,
    Group,
    GroupMember,
    GroupNotificationPreference,
    GroupTag,
    Meeting,
    MeetingNote,
    Notification,
    NotificationPreference,
    Organization,
    OrganizationMember,
    OrganizationTag,
    PasswordResetToken,
    PrayerRequest,
    PrayingFor,
    User,
    coerce_choice,
    merge_changes,
    newest_first,
    utcnow,
)

DEFAULT_RESET_TOKEN_TTL_SECONDS = 3600


def stale_cutoff(now: Optional[datetime] = None) -> datetime:
    """Follow-up dates before the start of the current UTC day are overdue."""
    now = now or utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class DbClient(Protocol):
    """Interface for database access."""

    notifier: Notifier

    # Users
    def get_user(self, user_id: int) -> Optional[User]:
        ...

    def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_users(self) -> list[User]:
        ...

    def create_user(
        self,
        *,
        username: str,
        password: str,
        name: str,
        email: str,
        role: Optional[str] = None,
        phone: Optional[str] = None,
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> User:
        ...

    def update_user(self, user_id: int, changes: Mapping[str, Any]) -> Optional[User]:
        ...

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        ...

    # Organizations
    def create_organization(
        self, *, name: str, created_by: int, description: Optional[str] = None
    ) -> Organization:
        ...

    def get_organization(self, organization_id: int) -> Optional[Organization]:
        ...

    def get_user_organizations(self, user_id: int) -> list[Organization]:
        ...

    def update_organization(
        self, organization_id: int, changes: Mapping[str, Any]
    ) -> Optional[Organization]:
        ...

    def delete_organization(self, organization_id: int) -> bool:
        ...

    # Organization members
    def add_organization_member(
        self,
        organization_id: int,
        user_id: int,
        role: Optional[str] = None,
        *,
        added_by: Optional[int] = None,
        invited: bool = False,
    ) -> OrganizationMember:
        ...

    def get_organization_members(self, organization_id: int) -> list[OrganizationMember]:
        ...

    def get_organization_member(
        self, organization_id: int, user_id: int
    ) -> Optional[OrganizationMember]:
        ...

    def update_organization_member(
        self, organization_id: int, user_id: int, role: str
    ) -> Optional[OrganizationMember]:
        ...

    def remove_organization_member(self, organization_id: int, user_id: int) -> bool:
        ...

    # Organization tags
    def create_organization_tag(
        self, *, organization_id: int, name: str, color: str
    ) -> OrganizationTag:
        ...

    def get_organization_tags(self, organization_id: int) -> list[OrganizationTag]:
        ...

    def get_organization_tag(self, tag_id: int) -> Optional[OrganizationTag]:
        ...

    def update_organization_tag(
        self, tag_id: int, changes: Mapping[str, Any]
    ) -> Optional[OrganizationTag]:
        ...

    def delete_organization_tag(self, tag_id: int) -> bool:
        ...

    # Group tags
    def add_group_tag(self, group_id: int, tag_id: int) -> GroupTag:
        ...

    def get_group_tags(self, group_id: int) -> list[GroupTag]:
        ...

    def get_group_tags_with_details(self, group_id: int) -> list[OrganizationTag]:
        ...

    def remove_group_tag(self, group_id: int, tag_id: int) -> bool:
        ...

    # Groups
    def create_group(
        self,
        *,
        name: str,
        organization_id: int,
        created_by: int,
        description: Optional[str] = None,
        category: Optional[str] = None,
        privacy: Optional[str] = None,
        leader_rotation: Optional[int] = None,
    ) -> Group:
        ...

    def get_group(self, group_id: int) -> Optional[Group]:
        ...

    def get_groups(self) -> list[Group]:
        ...

    def get_groups_by_category(self, category: str) -> list[Group]:
        ...

    def get_groups_by_organization(self, organization_id: int) -> list[Group]:
        ...

    def get_user_groups(self, user_id: int) -> list[Group]:
        ...

    def update_group(self, group_id: int, changes: Mapping[str, Any]) -> Optional[Group]:
        ...

    def delete_group(self, group_id: int) -> bool:
        ...

    # Group members
    def add_group_member(
        self,
        group_id: int,
        user_id: int,
        role: Optional[str] = None,
        *,
        added_by: Optional[int] = None,
    ) -> GroupMember:
        ...

    def get_group_members(self, group_id: int) -> list[GroupMember]:
        ...

    def get_group_member(self, group_id: int, user_id: int) -> Optional[GroupMember]:
        ...

    def update_group_member(
        self, group_id: int, user_id: int, role: str
    ) -> Optional[GroupMember]:
        ...

    def remove_group_member(self, group_id: int, user_id: int) -> bool:
        ...

    # Prayer requests
    def create_prayer_request(
        self,
        *,
        group_id: int,
        user_id: int,
        title: str,
        description: str,
        urgency: Optional[str] = None,
        is_anonymous: bool = False,
        status: Optional[str] = None,
        follow_up_date: Optional[datetime] = None,
        is_stale: bool = False,
    ) -> PrayerRequest:
        ...

    def get_prayer_request(self, request_id: int) -> Optional[PrayerRequest]:
        ...

    def get_group_prayer_requests(self, group_id: int) -> list[PrayerRequest]:
        ...

    def get_user_prayer_requests(self, user_id: int) -> list[PrayerRequest]:
        ...

    def get_recent_prayer_requests(self, user_id: int, limit: int = 5) -> list[PrayerRequest]:
        ...

    def update_prayer_request(
        self, request_id: int, changes: Mapping[str, Any]
    ) -> Optional[PrayerRequest]:
        ...

    def delete_prayer_request(self, request_id: int) -> bool:
        ...

    def check_and_update_stale_prayer_requests(self) -> int:
        ...

    # Comments
    def create_comment(
        self, *, prayer_request_id: int, user_id: int, text: str, is_private: bool = False
    ) -> Comment:
        ...

    def get_comment(self, comment_id: int) -> Optional[Comment]:
        ...

    def get_prayer_request_comments(self, prayer_request_id: int) -> list[Comment]:
        ...

    def delete_comment(self, comment_id: int) -> bool:
        ...

    # Notifications
    def create_notification(
        self, *, user_id: int, type: str, message: str, reference_id: Optional[int] = None
    ) -> Notification:
        ...

    def get_user_notifications(self, user_id: int) -> list[Notification]:
        ...

    def mark_notification_read(self, notification_id: int) -> Optional[Notification]:
        ...

    def mark_all_notifications_read(self, user_id: int) -> bool:
        ...

    def delete_notification(self, notification_id: int) -> bool:
        ...

    # Praying for
    def add_praying_for(self, prayer_request_id: int, user_id: int) -> PrayingFor:
        ...

    def remove_praying_for(self, prayer_request_id: int, user_id: int) -> bool:
        ...

    def is_praying_for(self, prayer_request_id: int, user_id: int) -> bool:
        ...

    def get_praying_for_count(self, prayer_request_id: int) -> int:
        ...

    # Password reset
    def create_password_reset_token(self, user_id: int) -> PasswordResetToken:
        ...

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        ...

    def mark_password_reset_token_used(self, token_id: int) -> Optional[PasswordResetToken]:
        ...

    # Notification preferences
    def get_user_notification_preferences(
        self, user_id: int
    ) -> Optional[NotificationPreference]:
        ...

    def create_notification_preferences(
        self, user_id: int, **values: Any
    ) -> NotificationPreference:
        ...

    def update_notification_preferences(
        self, user_id: int, changes: Mapping[str, Any]
    ) -> Optional[NotificationPreference]:
        ...

    def get_group_notification_preferences(
        self, user_id: int, group_id: int
    ) -> Optional[GroupNotificationPreference]:
        ...

    def get_user_group_notification_preferences(
        self, user_id: int
    ) -> list[GroupNotificationPreference]:
        ...

    def create_group_notification_preferences(
        self, user_id: int, group_id: int, **values: Any
    ) -> GroupNotificationPreference:
        ...

    def update_group_notification_preferences(
        self, user_id: int, group_id: int, changes: Mapping[str, Any]
    ) -> Optional[GroupNotificationPreference]:
        ...

    # Meetings
    def create_meeting(
        self,
        *,
        group_id: int,
        title: str,
        meeting_type: str,
        meeting_link: str,
        start_time: datetime,
        created_by: int,
        description: Optional[str] = None,
        end_time: Optional[datetime] = None,
        is_recurring: bool = False,
        recurring_pattern: Optional[str] = None,
        recurring_day: Optional[int] = None,
        recurring_until: Optional[datetime] = None,
        parent_meeting_id: Optional[int] = None,
    ) -> Meeting:
        ...

    def get_meeting(self, meeting_id: int) -> Optional[Meeting]:
        ...

    def get_group_meetings(self, group_id: int) -> list[Meeting]:
        ...

    def get_upcoming_meetings(self, user_id: int) -> list[Meeting]:
        ...

    def update_meeting(
        self, meeting_id: int, changes: Mapping[str, Any], *, actor_id: Optional[int] = None
    ) -> Optional[Meeting]:
        ...

    def delete_meeting(self, meeting_id: int, *, actor_id: Optional[int] = None) -> bool:
        ...

    # Meeting notes
    def create_meeting_note(
        self,
        *,
        meeting_id: int,
        content: str,
        summary: Optional[str] = None,
        is_ai_generated: bool = False,
        created_by: Optional[int] = None,
    ) -> MeetingNote:
        ...

    def get_meeting_notes(self, meeting_id: int) -> list[MeetingNote]:
        ...

    def update_meeting_note(
        self, note_id: int, changes: Mapping[str, Any]
    ) -> Optional[MeetingNote]:
        ...

    def delete_meeting_note(self, note_id: int) -> bool:
        ...

    def create_prayer_requests_from_notes(
        self, meeting_id: int, group_id: int, user_id: int
    ) -> list[PrayerRequest]:
        ...


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        *,
        reset_token_ttl_seconds: int = DEFAULT_RESET_TOKEN_TTL_SECONDS,
    ):
        self.notifier = notifier or Notifier()
        self.reset_token_ttl_seconds = reset_token_ttl_seconds
        self.users: Dict[int, User] = {}
        self.organizations: Dict[int, Organization] = {}
        self.organization_members: Dict[int, OrganizationMember] = {}
        self.organization_tags: Dict[int, OrganizationTag] = {}
        self.group_tags: Dict[int, GroupTag] = {}
        self.groups: Dict[int, Group] = {}
        self.group_members: Dict[int, GroupMember] = {}
        self.prayer_requests: Dict[int, PrayerRequest] = {}
        self.comments: Dict[int, Comment] = {}
        self.notifications: Dict[int, Notification] = {}
        self.praying_for: Dict[int, PrayingFor] = {}
        self.password_reset_tokens: Dict[int, PasswordResetToken] = {}
        self.notification_preferences: Dict[int, NotificationPreference] = {}
        self.group_notification_preferences: Dict[int, GroupNotificationPreference] = {}
        self.meetings: Dict[int, Meeting] = {}
        self.meeting_notes: Dict[int, MeetingNote] = {}
        self._counters: Dict[str, Iterator[int]] = defaultdict(lambda: itertools.count(1))

    def _next_id(self, table: str) -> int:
        return next(self._counters[table])

    def reset(self) -> None:
        """Clear all stored data and id counters (useful in tests)."""
        for table in (
            self.users,
            self.organizations,
            self.organization_members,
            self.organization_tags,
            self.group_tags,
            self.groups,
            self.group_members,
            self.prayer_requests,
            self.comments,
            self.notifications,
            self.praying_for,
            self.password_reset_tokens,
            self.notification_preferences,
            self.group_notification_preferences,
            self.meetings,
            self.meeting_notes,
        ):
            table.clear()
        self._counters.clear()

    # Users

    def get_user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.username == username), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    def get_users(self) -> list[User]:
        return list(self.users.values())

    def _check_user_unique(self, username: str, email: str, user_id: Optional[int] = None) -> None:
        for user in self.users.values():
            if user.id == user_id:
                continue
            if user.username == username:
                raise DuplicateError(f"Username {username!r} is taken")
            if user.email == email:
                raise DuplicateError(f"Email {email!r} is already registered")

    def create_user(
        self,
        *,
        username: str,
        password: str,
        name: str,
        email: str,
        role: Optional[str] = None,
        phone: Optional[str] = None,
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> User:
        self._check_user_unique(username, email)
        user = User(
            id=self._next_id("users"),
            username=username,
            password=password,
            name=name,
            email=email,
            role=coerce_choice(role, USER_ROLES, "regular", field_name="user role"),
            phone=phone,
            avatar=avatar,
            bio=bio,
        )
        self.users[user.id] = user
        return user

    def update_user(self, user_id: int, changes: Mapping[str, Any]) -> Optional[User]:
        user = self.users.get(user_id)
        if not user:
            return None
        updated = merge_changes(user, changes)
        if "role" in changes:
            updated.role = coerce_choice(
                changes["role"], USER_ROLES, "regular", field_name="user role"
            )
        self._check_user_unique(updated.username, updated.email, user_id)
        self.users[user_id] = updated
        return updated

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        return self.update_user(user_id, {"role": role})

    # Organizations

    def create_organization(
        self, *, name: str, created_by: int, description: Optional[str] = None
    ) -> Organization:
        organization = Organization(
            id=self._next_id("organizations"),
            name=name,
            created_by=created_by,
            description=description,
        )
        self.organizations[organization.id] = organization
        self.add_organization_member(organization.id, created_by, "admin")
        return organization

    def get_organization(self, organization_id: int) -> Optional[Organization]:
        return self.organizations.get(organization_id)

    def get_user_organizations(self, user_id: int) -> list[Organization]:
        return [
            self.organizations[m.organization_id]
            for m in self.organization_members.values()
            if m.user_id == user_id and m.organization_id in self.organizations
        ]

    def update_organization(
        self, organization_id: int, changes: Mapping[str, Any]
    ) -> Optional[Organization]:
        organization = self.organizations.get(organization_id)
        if not organization:
            return None
        updated = merge_changes(organization, changes, protected=("created_by",))
        self.organizations[organization_id] = updated
        return updated

    def delete_organization(self, organization_id: int) -> bool:
        if self.organizations.pop(organization_id, None) is None:
            return False
        for member_id in [
            m.id for m in self.organization_members.values()
            if m.organization_id == organization_id
        ]:
            del self.organization_members[member_id]
        for tag_id in [
            t.id for t in self.organization_tags.values()
            if t.organization_id == organization_id
        ]:
            self.delete_organization_tag(tag_id)
        for group_id in [
            g.id for g in self.groups.values() if g.organization_id == organization_id
        ]:
            self.delete_group(group_id)
        return True

    # Organization members

    def add_organization_member(
        self,
        organization_id: int,
        user_id: int,
        role: Optional[str] = None,
        *,
        added_by: Optional[int] = None,
        invited: bool = False,
    ) -> OrganizationMember:
        if self.get_organization_member(organization_id, user_id):
            raise DuplicateError(
                f"User {user_id} is already a member of organization {organization_id}"
            )
        member = OrganizationMember(
            id=self._next_id("organization_members"),
            organization_id=organization_id,
            user_id=user_id,
            role=coerce_choice(role, ORGANIZATION_ROLES, "member", field_name="organization role"),
        )
        self.organization_members[member.id] = member
        self.notifier.organization_member_added(self, member, added_by, invited=invited)
        return member

    def get_organization_members(self, organization_id: int) -> list[OrganizationMember]:
        return [
            m for m in self.organization_members.values()
            if m.organization_id == organization_id
        ]

    def get_organization_member(
        self, organization_id: int, user_id: int
    ) -> Optional[OrganizationMember]:
        return next(
            (
                m for m in self.organization_members.values()
                if m.organization_id == organization_id and m.user_id == user_id
            ),
            None,
        )

    def update_organization_member(
        self, organization_id: int, user_id: int, role: str
    ) -> Optional[OrganizationMember]:
        member = self.get_organization_member(organization_id, user_id)
        if not member:
            return None
        previous_role = member.role
        updated = merge_changes(
            member,
            {"role": coerce_choice(role, ORGANIZATION_ROLES, "member", field_name="organization role")},
        )
        self.organization_members[member.id] = updated
        self.notifier.organization_role_changed(self, updated, previous_role)
        return updated

    def remove_organization_member(self, organization_id: int, user_id: int) -> bool:
        member = self.get_organization_member(organization_id, user_id)
        if not member:
            return False
        del self.organization_members[member.id]
        return True

    # Organization tags

    def create_organization_tag(
        self, *, organization_id: int, name: str, color: str
    ) -> OrganizationTag:
        tag = OrganizationTag(
            id=self._next_id("organization_tags"),
            organization_id=organization_id,
            name=name,
            color=color,
        )
        self.organization_tags[tag.id] = tag
        return tag

    def get_organization_tags(self, organization_id: int) -> list[OrganizationTag]:
        return [
            t for t in self.organization_tags.values()
            if t.organization_id == organization_id
        ]

    def get_organization_tag(self, tag_id: int) -> Optional[OrganizationTag]:
        return self.organization_tags.get(tag_id)

    def update_organization_tag(
        self, tag_id: int, changes: Mapping[str, Any]
    ) -> Optional[OrganizationTag]:
        tag = self.organization_tags.get(tag_id)
        if not tag:
            return None
        updated = merge_changes(tag, changes, protected=("organization_id",))
        self.organization_tags[tag_id] = updated
        return updated

    def delete_organization_tag(self, tag_id: int) -> bool:
        for link_id in [gt.id for gt in self.group_tags.values() if gt.tag_id == tag_id]:
            del self.group_tags[link_id]
        return self.organization_tags.pop(tag_id, None) is not None

    # Group tags

    def add_group_tag(self, group_id: int, tag_id: int) -> GroupTag:
        link = GroupTag(id=self._next_id("group_tags"), group_id=group_id, tag_id=tag_id)
        self.group_tags[link.id] = link
        return link

    def get_group_tags(self, group_id: int) -> list[GroupTag]:
        return [gt for gt in self.group_tags.values() if gt.group_id == group_id]

    def get_group_tags_with_details(self, group_id: int) -> list[OrganizationTag]:
        tag_ids = {gt.tag_id for gt in self.get_group_tags(group_id)}
        return [t for t in self.organization_tags.values() if t.id in tag_ids]

    def remove_group_tag(self, group_id: int, tag_id: int) -> bool:
        link = next(
            (
                gt for gt in self.group_tags.values()
                if gt.group_id == group_id and gt.tag_id == tag_id
            ),
            None,
        )
        if not link:
            return False
        del self.group_tags[link.id]
        return True

    # Groups

    def create_group(
        self,
        *,
        name: str,
        organization_id: int,
        created_by: int,
        description: Optional[str] = None,
        category: Optional[str] = None,
        privacy: Optional[str] = None,
        leader_rotation: Optional[int] = None,
    ) -> Group:
        group = Group(
            id=self._next_id("groups"),
            name=name,
            organization_id=organization_id,
            created_by=created_by,
            description=description,
            category=coerce_choice(category, GROUP_CATEGORIES, "other", field_name="group category"),
            privacy=coerce_choice(privacy, GROUP_PRIVACY, "open", field_name="group privacy"),
            leader_rotation=leader_rotation,
        )
        self.groups[group.id] = group
        self.add_group_member(group.id, created_by, "leader")
        return group

    def get_group(self, group_id: int) -> Optional[Group]:
        return self.groups.get(group_id)

    def get_groups(self) -> list[Group]:
        return list(self.groups.values())

    def get_groups_by_category(self, category: str) -> list[Group]:
        return [g for g in self.groups.values() if g.category == category]

    def get_groups_by_organization(self, organization_id: int) -> list[Group]:
        return [g for g in self.groups.values() if g.organization_id == organization_id]

    def get_user_groups(self, user_id: int) -> list[Group]:
        return [
            self.groups[m.group_id]
            for m in self.group_members.values()
            if m.user_id == user_id and m.group_id in self.groups
        ]

    def update_group(self, group_id: int, changes: Mapping[str, Any]) -> Optional[Group]:
        group = self.groups.get(group_id)
        if not group:
            return None
        updated = merge_changes(group, changes, protected=("created_by",))
        if "category" in changes:
            updated.category = coerce_choice(
                changes["category"], GROUP_CATEGORIES, "other", field_name="group category"
            )
        if "privacy" in changes:
            updated.privacy = coerce_choice(
                changes["privacy"], GROUP_PRIVACY, "open", field_name="group privacy"
            )
        self.groups[group_id] = updated
        return updated

    def delete_group(self, group_id: int) -> bool:
        if self.groups.pop(group_id, None) is None:
            return False
        for request_id in [
            r.id for r in self.prayer_requests.values() if r.group_id == group_id
        ]:
            self.delete_prayer_request(request_id)
        for meeting_id in [m.id for m in self.meetings.values() if m.group_id == group_id]:
            self._delete_meeting_rows(meeting_id)
        for table in (self.group_members, self.group_tags, self.group_notification_preferences):
            for row_id in [row.id for row in table.values() if row.group_id == group_id]:
                del table[row_id]
        return True

    # Group members

    def add_group_member(
        self,
        group_id: int,
        user_id: int,
        role: Optional[str] = None,
        *,
        added_by: Optional[int] = None,
    ) -> GroupMember:
        if self.get_group_member(group_id, user_id):
            raise DuplicateError(f"User {user_id} is already a member of group {group_id}")
        member = GroupMember(
            id=self._next_id("group_members"),
            group_id=group_id,
            user_id=user_id,
            role=coerce_choice(role, GROUP_ROLES, "member", field_name="group role"),
        )
        self.group_members[member.id] = member
        self.notifier.group_member_added(self, member, added_by)
        return member

    def get_group_members(self, group_id: int) -> list[GroupMember]:
        return [m for m in self.group_members.values() if m.group_id == group_id]

    def get_group_member(self, group_id: int, user_id: int) -> Optional[GroupMember]:
        return next(
            (
                m for m in self.group_members.values()
                if m.group_id == group_id and m.user_id == user_id
            ),
            None,
        )

    def update_group_member(
        self, group_id: int, user_id: int, role: str
    ) -> Optional[GroupMember]:
        member = self.get_group_member(group_id, user_id)
        if not member:
            return None
        updated = merge_changes(
            member, {"role": coerce_choice(role, GROUP_ROLES, "member", field_name="group role")}
        )
        self.group_members[member.id] = updated
        return updated

    def remove_group_member(self, group_id: int, user_id: int) -> bool:
        member = self.get_group_member(group_id, user_id)
        if not member:
            return False
        del self.group_members[member.id]
        return True

    # Prayer requests

    def create_prayer_request(
        self,
        *,
        group_id: int,
        user_id: int,
        title: str,
        description: str,
        urgency: Optional[str] = None,
        is_anonymous: bool = False,
        status: Optional[str] = None,
        follow_up_date: Optional[datetime] = None,
        is_stale: bool = False,
    ) -> PrayerRequest:
        now = utcnow()
        request = PrayerRequest(
            id=self._next_id("prayer_requests"),
            group_id=group_id,
            user_id=user_id,
            title=title,
            description=description,
            urgency=coerce_choice(urgency, REQUEST_URGENCIES, "medium", field_name="urgency"),
            is_anonymous=bool(is_anonymous),
            status=coerce_choice(status, REQUEST_STATUSES, "waiting", field_name="status"),
            follow_up_date=follow_up_date,
            is_stale=bool(is_stale),
            created_at=now,
            updated_at=now,
        )
        self.prayer_requests[request.id] = request
        self.notifier.prayer_request_created(self, request)
        return request

    def get_prayer_request(self, request_id: int) -> Optional[PrayerRequest]:
        return self.prayer_requests.get(request_id)

    def get_group_prayer_requests(self, group_id: int) -> list[PrayerRequest]:
        return newest_first(r for r in self.prayer_requests.values() if r.group_id == group_id)

    def get_user_prayer_requests(self, user_id: int) -> list[PrayerRequest]:
        return newest_first(r for r in self.prayer_requests.values() if r.user_id == user_id)

    def get_recent_prayer_requests(self, user_id: int, limit: int = 5) -> list[PrayerRequest]:
        group_ids = {g.id for g in self.get_user_groups(user_id)}
        requests = newest_first(
            r for r in self.prayer_requests.values() if r.group_id in group_ids
        )
        return requests[:limit]

    def update_prayer_request(
        self, request_id: int, changes: Mapping[str, Any]
    ) -> Optional[PrayerRequest]:
        request = self.prayer_requests.get(request_id)
        if not request:
            return None
        updated = merge_changes(request, changes, protected=("group_id", "user_id"))
        if "status" in changes:
            updated.status = coerce_choice(
                changes["status"], REQUEST_STATUSES, "waiting", field_name="status"
            )
        if "urgency" in changes:
            updated.urgency = coerce_choice(
                changes["urgency"], REQUEST_URGENCIES, "medium", field_name="urgency"
            )
        updated.updated_at = utcnow()
        self.prayer_requests[request_id] = updated
        self.notifier.prayer_request_status_changed(self, updated, request.status)
        return updated

    def delete_prayer_request(self, request_id: int) -> bool:
        if self.prayer_requests.pop(request_id, None) is None:
            return False
        for comment_id in [
            c.id for c in self.comments.values() if c.prayer_request_id == request_id
        ]:
            del self.comments[comment_id]
        for record_id in [
            p.id for p in self.praying_for.values() if p.prayer_request_id == request_id
        ]:
            del self.praying_for[record_id]
        for notification_id in [
            n.id for n in self.notifications.values()
            if n.reference_id == request_id and n.type in REQUEST_NOTIFICATION_TYPES
        ]:
            del self.notifications[notification_id]
        return True

    def check_and_update_stale_prayer_requests(self) -> int:
        cutoff = stale_cutoff()
        stale = [
            r for r in self.prayer_requests.values()
            if not r.is_stale
            and r.status == "waiting"
            and r.follow_up_date is not None
            and r.follow_up_date < cutoff
        ]
        for request in stale:
            updated = merge_changes(request, {"is_stale": True})
            self.prayer_requests[request.id] = updated
            self.notifier.prayer_request_stale(self, updated)
        return len(stale)

    # Comments

    def create_comment(
        self, *, prayer_request_id: int, user_id: int, text: str, is_private: bool = False
    ) -> Comment:
        comment = Comment(
            id=self._next_id("comments"),
            prayer_request_id=prayer_request_id,
            user_id=user_id,
            text=text,
            is_private=bool(is_private),
        )
        self.comments[comment.id] = comment
        self.notifier.comment_created(self, comment)
        return comment

    def get_comment(self, comment_id: int) -> Optional[Comment]:
        return self.comments.get(comment_id)

    def get_prayer_request_comments(self, prayer_request_id: int) -> list[Comment]:
        return newest_first(
            c for c in self.comments.values() if c.prayer_request_id == prayer_request_id
        )

    def delete_comment(self, comment_id: int) -> bool:
        return self.comments.pop(comment_id, None) is not None

    # Notifications

    def create_notification(
        self, *, user_id: int, type: str, message: str, reference_id: Optional[int] = None
    ) -> Notification:
        notification = Notification(
            id=self._next_id("notifications"),
            user_id=user_id,
            type=type,
            message=message,
            reference_id=reference_id,
        )
        self.notifications[notification.id] = notification
        return notification

    def get_user_notifications(self, user_id: int) -> list[Notification]:
        return newest_first(n for n in self.notifications.values() if n.user_id == user_id)

    def mark_notification_read(self, notification_id: int) -> Optional[Notification]:
        notification = self.notifications.get(notification_id)
        if not notification:
            return None
        updated = merge_changes(notification, {"read": True})
        self.notifications[notification_id] = updated
        return updated

    def mark_all_notifications_read(self, user_id: int) -> bool:
        for notification in self.get_user_notifications(user_id):
            self.notifications[notification.id] = merge_changes(notification, {"read": True})
        return True

    def delete_notification(self, notification_id: int) -> bool:
        return self.notifications.pop(notification_id, None) is not None

    # Praying for

    def add_praying_for(self, prayer_request_id: int, user_id: int) -> PrayingFor:
        record = PrayingFor(
            id=self._next_id("praying_for"),
            prayer_request_id=prayer_request_id,
            user_id=user_id,
        )
        self.praying_for[record.id] = record
        return record

    def _find_praying_for(self, prayer_request_id: int, user_id: int) -> Optional[PrayingFor]:
        return next(
            (
                p for p in self.praying_for.values()
                if p.prayer_request_id == prayer_request_id and p.user_id == user_id
            ),
            None,
        )

    def remove_praying_for(self, prayer_request_id: int, user_id: int) -> bool:
        record = self._find_praying_for(prayer_request_id, user_id)
        if not record:
            return False
        del self.praying_for[record.id]
        return True

    def is_praying_for(self, prayer_request_id: int, user_id: int) -> bool:
        return self._find_praying_for(prayer_request_id, user_id) is not None

    def get_praying_for_count(self, prayer_request_id: int) -> int:
        return sum(
            1 for p in self.praying_for.values() if p.prayer_request_id == prayer_request_id
        )

    # Password reset

    def create_password_reset_token(self, user_id: int) -> PasswordResetToken:
        now = utcnow()
        token = PasswordResetToken(
            id=self._next_id("password_reset_tokens"),
            user_id=user_id,
            token=secrets.token_hex(32),
            expires_at=now + timedelta(seconds=self.reset_token_ttl_seconds),
            created_at=now,
        )
        self.password_reset_tokens[token.id] = token
        return token

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        now = utcnow()
        return next(
            (
                t for t in self.password_reset_tokens.values()
                if t.token == token and t.is_valid(now)
            ),
            None,
        )

    def mark_password_reset_token_used(self, token_id: int) -> Optional[PasswordResetToken]:
        token = self.password_reset_tokens.get(token_id)
        if not token:
            return None
        updated = merge_changes(token, {"is_used": True})
        self.password_reset_tokens[token_id] = updated
        return updated

    # Notification preferences

    def get_user_notification_preferences(
        self, user_id: int
    ) -> Optional[NotificationPreference]:
        return next(
            (p for p in self.notification_preferences.values() if p.user_id == user_id),
            None,
        )

    def create_notification_preferences(
        self, user_id: int, **values: Any
    ) -> NotificationPreference:
        base = NotificationPreference(
            id=self._next_id("notification_preferences"), user_id=user_id
        )
        preferences = merge_changes(
            base, {k: v for k, v in values.items() if v is not None}, protected=("user_id",)
        )
        self.notification_preferences[preferences.id] = preferences
        return preferences

    def update_notification_preferences(
        self, user_id: int, changes: Mapping[str, Any]
    ) -> Optional[NotificationPreference]:
        existing = self.get_user_notification_preferences(user_id)
        if not existing:
            return None
        updated = merge_changes(existing, changes, protected=("user_id",))
        updated.updated_at = utcnow()
        self.notification_preferences[existing.id] = updated
        return updated

    def get_group_notification_preferences(
        self, user_id: int, group_id: int
    ) -> Optional[GroupNotificationPreference]:
        return next(
            (
                p for p in self.group_notification_preferences.values()
                if p.user_id == user_id and p.group_id == group_id
            ),
            None,
        )

    def get_user_group_notification_preferences(
        self, user_id: int
    ) -> list[GroupNotificationPreference]:
        return [
            p for p in self.group_notification_preferences.values() if p.user_id == user_id
        ]

    def create_group_notification_preferences(
        self, user_id: int, group_id: int, **values: Any
    ) -> GroupNotificationPreference:
        base = GroupNotificationPreference(
            id=self._next_id("group_notification_preferences"),
            user_id=user_id,
            group_id=group_id,
        )
        preferences = merge_changes(
            base,
            {k: v for k, v in values.items() if v is not None},
            protected=("user_id", "group_id"),
        )
        self.group_notification_preferences[preferences.id] = preferences
        return preferences

    def update_group_notification_preferences(
        self, user_id: int, group_id: int, changes: Mapping[str, Any]
    ) -> Optional[GroupNotificationPreference]:
        existing = self.get_group_notification_preferences(user_id, group_id)
        if not existing:
            return None
        updated = merge_changes(existing, changes, protected=("user_id", "group_id"))
        updated.updated_at = utcnow()
        self.group_notification_preferences[existing.id] = updated
        return updated

    # Meetings

    def create_meeting(
        self,
        *,
        group_id: int,
        title: str,
        meeting_type: str,
        meeting_link: str,
        start_time: datetime,
        created_by: int,
        description: Optional[str] = None,
        end_time: Optional[datetime] = None,
        is_recurring: bool = False,
        recurring_pattern: Optional[str] = None,
        recurring_day: Optional[int] = None,
        recurring_until: Optional[datetime] = None,
        parent_meeting_id: Optional[int] = None,
    ) -> Meeting:
        meeting = Meeting(
            id=self._next_id("meetings"),
            group_id=group_id,
            title=title,
            meeting_type=meeting_type,
            meeting_link=meeting_link,
            start_time=start_time,
            created_by=created_by,
            description=description,
            end_time=end_time,
            is_recurring=bool(is_recurring),
            recurring_pattern=recurring_pattern,
            recurring_day=recurring_day,
            recurring_until=recurring_until,
            parent_meeting_id=parent_meeting_id,
        )
        self.meetings[meeting.id] = meeting
        self.notifier.meeting_created(self, meeting)
        return meeting

    def get_meeting(self, meeting_id: int) -> Optional[Meeting]:
        return self.meetings.get(meeting_id)

    def get_group_meetings(self, group_id: int) -> list[Meeting]:
        return sorted(
            (m for m in self.meetings.values() if m.group_id == group_id),
            key=lambda m: (m.start_time, m.id),
        )

    def get_upcoming_meetings(self, user_id: int) -> list[Meeting]:
        group_ids = {g.id for g in self.get_user_groups(user_id)}
        if not group_ids:
            return []
        now = utcnow()
        return sorted(
            (
                m for m in self.meetings.values()
                if m.group_id in group_ids and m.start_time > now
            ),
            key=lambda m: (m.start_time, m.id),
        )

    def update_meeting(
        self, meeting_id: int, changes: Mapping[str, Any], *, actor_id: Optional[int] = None
    ) -> Optional[Meeting]:
        meeting = self.meetings.get(meeting_id)
        if not meeting:
            return None
        updated = merge_changes(meeting, changes, protected=("group_id", "created_by"))
        self.meetings[meeting_id] = updated
        if updated != meeting:
            self.notifier.meeting_updated(self, updated, actor_id)
        return updated

    def delete_meeting(self, meeting_id: int, *, actor_id: Optional[int] = None) -> bool:
        meeting = self.meetings.get(meeting_id)
        if not meeting:
            return False
        self._delete_meeting_rows(meeting_id)
        self.notifier.meeting_cancelled(self, meeting, actor_id)
        return True

    def _delete_meeting_rows(self, meeting_id: int) -> None:
        for note_id in [n.id for n in self.meeting_notes.values() if n.meeting_id == meeting_id]:
            del self.meeting_notes[note_id]
        self.meetings.pop(meeting_id, None)

    # Meeting notes

    def create_meeting_note(
        self,
        *,
        meeting_id: int,
        content: str,
        summary: Optional[str] = None,
        is_ai_generated: bool = False,
        created_by: Optional[int] = None,
    ) -> MeetingNote:
        now = utcnow()
        note = MeetingNote(
            id=self._next_id("meeting_notes"),
            meeting_id=meeting_id,
            content=content,
            summary=summary,
            is_ai_generated=bool(is_ai_generated),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.meeting_notes[note.id] = note
        return note

    def get_meeting_notes(self, meeting_id: int) -> list[MeetingNote]:
        return sorted(
            (n for n in self.meeting_notes.values() if n.meeting_id == meeting_id),
            key=lambda n: (n.created_at, n.id),
        )

    def update_meeting_note(
        self, note_id: int, changes: Mapping[str, Any]
    ) -> Optional[MeetingNote]:
        note = self.meeting_notes.get(note_id)
        if not note:
            return None
        updated = merge_changes(note, changes, protected=("meeting_id",))
        updated.updated_at = utcnow()
        self.meeting_notes[note_id] = updated
        return updated

    def delete_meeting_note(self, note_id: int) -> bool:
        return self.meeting_notes.pop(note_id, None) is not None

    def create_prayer_requests_from_notes(
        self, meeting_id: int, group_id: int, user_id: int
    ) -> list[PrayerRequest]:
        meeting = self.get_meeting(meeting_id)
        if not meeting:
            return []
        return [
            self.create_prayer_request(
                group_id=group_id,
                user_id=user_id,
                title=f"From meeting: {meeting.title}",
                description=note.content,
            )
            for note in self.get_meeting_notes(meeting_id)
            if note.content
        ]
