"""
SQLAlchemy-backed DbClient.

Accepts any SQLAlchemy URL (Postgres in production, SQLite for tests).
Cascading deletes run as a single transaction; the notification fan-out runs
only after the primary transaction has committed.
"""

from __future__ import annotations

import dataclasses
import logging
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator, Mapping, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from prayerhub.db import DEFAULT_RESET_TOKEN_TTL_SECONDS, stale_cutoff
from prayerhub.errors import DuplicateError, StoreError
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
    filter_changes,
    utcnow,
)

logger = logging.getLogger(__name__)


def _to_record(row, record_cls):
    return record_cls(
        **{f.name: getattr(row, f.name) for f in dataclasses.fields(record_cls)}
    )


def _is_unique_violation(exc: IntegrityError) -> bool:
    # 23505 is unique_violation in Postgres; SQLite only reports it in the message.
    if getattr(exc.orig, "sqlstate", None) == "23505":
        return True
    return "unique" in str(exc.orig).lower()


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(
        self,
        database_url: str,
        notifier: Optional[Notifier] = None,
        *,
        reset_token_ttl_seconds: int = DEFAULT_RESET_TOKEN_TTL_SECONDS,
    ):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.notifier = notifier or Notifier()
        self.reset_token_ttl_seconds = reset_token_ttl_seconds
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _write(self, action: str) -> Iterator[Session]:
        """Run a block in one transaction, translating database errors."""
        try:
            with self.Session.begin() as session:
                yield session
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                raise DuplicateError(f"Failed to {action}: duplicate entry") from exc
            logger.exception("Rolled back transaction: %s", action)
            raise StoreError(f"Failed to {action}") from exc
        except SQLAlchemyError as exc:
            logger.exception("Rolled back transaction: %s", action)
            raise StoreError(f"Failed to {action}") from exc

    def _get(self, row_cls, record_cls, row_id: int):
        with self.Session() as session:
            row = session.get(row_cls, row_id)
            return _to_record(row, record_cls) if row else None

    def _list(self, stmt, record_cls) -> list:
        with self.Session() as session:
            return [_to_record(row, record_cls) for row in session.execute(stmt).scalars()]

    def _first(self, stmt, record_cls):
        with self.Session() as session:
            row = session.execute(stmt.limit(1)).scalars().first()
            return _to_record(row, record_cls) if row else None

    def _insert(self, session: Session, row):
        session.add(row)
        session.flush()
        return row

    def _update_row(self, row_cls, record_cls, row_id: int, changes: Mapping[str, Any], action: str):
        with self._write(action) as session:
            row = session.get(row_cls, row_id)
            if not row:
                return None
            for key, value in changes.items():
                setattr(row, key, value)
            session.flush()
            return _to_record(row, record_cls)

    # Users

    def get_user(self, user_id: int) -> Optional[User]:
        return self._get(UserRow, User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._first(select(UserRow).where(UserRow.username == username), User)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._first(select(UserRow).where(UserRow.email == email), User)

    def get_users(self) -> list[User]:
        return self._list(select(UserRow).order_by(UserRow.id), User)

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
        with self._write("create user") as session:
            row = self._insert(
                session,
                UserRow(
                    username=username,
                    password=password,
                    name=name,
                    email=email,
                    role=coerce_choice(role, USER_ROLES, "regular", field_name="user role"),
                    phone=phone,
                    avatar=avatar,
                    bio=bio,
                ),
            )
            return _to_record(row, User)

    def update_user(self, user_id: int, changes: Mapping[str, Any]) -> Optional[User]:
        values = filter_changes(User, changes)
        if "role" in values:
            values["role"] = coerce_choice(
                values["role"], USER_ROLES, "regular", field_name="user role"
            )
        return self._update_row(UserRow, User, user_id, values, "update user")

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        return self.update_user(user_id, {"role": role})

    # Organizations

    def create_organization(
        self, *, name: str, created_by: int, description: Optional[str] = None
    ) -> Organization:
        with self._write("create organization") as session:
            row = self._insert(
                session,
                OrganizationRow(
                    name=name,
                    description=description,
                    created_by=created_by,
                    created_at=utcnow(),
                ),
            )
            self._insert(
                session,
                OrganizationMemberRow(
                    organization_id=row.id,
                    user_id=created_by,
                    role="admin",
                    joined_at=utcnow(),
                ),
            )
            return _to_record(row, Organization)

    def get_organization(self, organization_id: int) -> Optional[Organization]:
        return self._get(OrganizationRow, Organization, organization_id)

    def get_user_organizations(self, user_id: int) -> list[Organization]:
        stmt = (
            select(OrganizationRow)
            .join(
                OrganizationMemberRow,
                OrganizationMemberRow.organization_id == OrganizationRow.id,
            )
            .where(OrganizationMemberRow.user_id == user_id)
            .order_by(OrganizationMemberRow.id)
        )
        return self._list(stmt, Organization)

    def update_organization(
        self, organization_id: int, changes: Mapping[str, Any]
    ) -> Optional[Organization]:
        values = filter_changes(Organization, changes, protected=("created_by",))
        return self._update_row(
            OrganizationRow, Organization, organization_id, values, "update organization"
        )

    def delete_organization(self, organization_id: int) -> bool:
        with self._write(f"delete organization {organization_id}") as session:
            if session.get(OrganizationRow, organization_id) is None:
                return False
            session.execute(
                delete(OrganizationMemberRow)
                .where(OrganizationMemberRow.organization_id == organization_id)
                .execution_options(synchronize_session=False)
            )
            tag_ids = select(OrganizationTagRow.id).where(
                OrganizationTagRow.organization_id == organization_id
            )
            session.execute(
                delete(GroupTagRow)
                .where(GroupTagRow.tag_id.in_(tag_ids))
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(OrganizationTagRow)
                .where(OrganizationTagRow.organization_id == organization_id)
                .execution_options(synchronize_session=False)
            )
            group_ids = session.execute(
                select(GroupRow.id).where(GroupRow.organization_id == organization_id)
            ).scalars().all()
            for group_id in group_ids:
                self._delete_group_rows(session, group_id)
            session.execute(
                delete(OrganizationRow)
                .where(OrganizationRow.id == organization_id)
                .execution_options(synchronize_session=False)
            )
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
        with self._write("add organization member") as session:
            row = self._insert(
                session,
                OrganizationMemberRow(
                    organization_id=organization_id,
                    user_id=user_id,
                    role=coerce_choice(
                        role, ORGANIZATION_ROLES, "member", field_name="organization role"
                    ),
                    joined_at=utcnow(),
                ),
            )
            member = _to_record(row, OrganizationMember)
        self.notifier.organization_member_added(self, member, added_by, invited=invited)
        return member

    def get_organization_members(self, organization_id: int) -> list[OrganizationMember]:
        stmt = (
            select(OrganizationMemberRow)
            .where(OrganizationMemberRow.organization_id == organization_id)
            .order_by(OrganizationMemberRow.id)
        )
        return self._list(stmt, OrganizationMember)

    def get_organization_member(
        self, organization_id: int, user_id: int
    ) -> Optional[OrganizationMember]:
        stmt = select(OrganizationMemberRow).where(
            OrganizationMemberRow.organization_id == organization_id,
            OrganizationMemberRow.user_id == user_id,
        )
        return self._first(stmt, OrganizationMember)

    def update_organization_member(
        self, organization_id: int, user_id: int, role: str
    ) -> Optional[OrganizationMember]:
        with self._write("update organization member") as session:
            row = session.execute(
                select(OrganizationMemberRow).where(
                    OrganizationMemberRow.organization_id == organization_id,
                    OrganizationMemberRow.user_id == user_id,
                )
            ).scalars().first()
            if not row:
                return None
            previous_role = row.role
            row.role = coerce_choice(
                role, ORGANIZATION_ROLES, "member", field_name="organization role"
            )
            member = _to_record(row, OrganizationMember)
        self.notifier.organization_role_changed(self, member, previous_role)
        return member

    def remove_organization_member(self, organization_id: int, user_id: int) -> bool:
        with self._write("remove organization member") as session:
            result = session.execute(
                delete(OrganizationMemberRow)
                .where(
                    OrganizationMemberRow.organization_id == organization_id,
                    OrganizationMemberRow.user_id == user_id,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    # Organization tags

    def create_organization_tag(
        self, *, organization_id: int, name: str, color: str
    ) -> OrganizationTag:
        with self._write("create organization tag") as session:
            row = self._insert(
                session,
                OrganizationTagRow(
                    organization_id=organization_id,
                    name=name,
                    color=color,
                    created_at=utcnow(),
                ),
            )
            return _to_record(row, OrganizationTag)

    def get_organization_tags(self, organization_id: int) -> list[OrganizationTag]:
        stmt = (
            select(OrganizationTagRow)
            .where(OrganizationTagRow.organization_id == organization_id)
            .order_by(OrganizationTagRow.id)
        )
        return self._list(stmt, OrganizationTag)

    def get_organization_tag(self, tag_id: int) -> Optional[OrganizationTag]:
        return self._get(OrganizationTagRow, OrganizationTag, tag_id)

    def update_organization_tag(
        self, tag_id: int, changes: Mapping[str, Any]
    ) -> Optional[OrganizationTag]:
        values = filter_changes(OrganizationTag, changes, protected=("organization_id",))
        return self._update_row(
            OrganizationTagRow, OrganizationTag, tag_id, values, "update organization tag"
        )

    def delete_organization_tag(self, tag_id: int) -> bool:
        with self._write("delete organization tag") as session:
            session.execute(
                delete(GroupTagRow)
                .where(GroupTagRow.tag_id == tag_id)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(
                delete(OrganizationTagRow)
                .where(OrganizationTagRow.id == tag_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    # Group tags

    def add_group_tag(self, group_id: int, tag_id: int) -> GroupTag:
        with self._write("add group tag") as session:
            row = self._insert(session, GroupTagRow(group_id=group_id, tag_id=tag_id))
            return _to_record(row, GroupTag)

    def get_group_tags(self, group_id: int) -> list[GroupTag]:
        stmt = select(GroupTagRow).where(GroupTagRow.group_id == group_id).order_by(GroupTagRow.id)
        return self._list(stmt, GroupTag)

    def get_group_tags_with_details(self, group_id: int) -> list[OrganizationTag]:
        stmt = (
            select(OrganizationTagRow)
            .where(
                OrganizationTagRow.id.in_(
                    select(GroupTagRow.tag_id).where(GroupTagRow.group_id == group_id)
                )
            )
            .order_by(OrganizationTagRow.id)
        )
        return self._list(stmt, OrganizationTag)

    def remove_group_tag(self, group_id: int, tag_id: int) -> bool:
        with self._write("remove group tag") as session:
            result = session.execute(
                delete(GroupTagRow)
                .where(GroupTagRow.group_id == group_id, GroupTagRow.tag_id == tag_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

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
        with self._write("create group") as session:
            row = self._insert(
                session,
                GroupRow(
                    name=name,
                    description=description,
                    organization_id=organization_id,
                    category=coerce_choice(
                        category, GROUP_CATEGORIES, "other", field_name="group category"
                    ),
                    privacy=coerce_choice(
                        privacy, GROUP_PRIVACY, "open", field_name="group privacy"
                    ),
                    leader_rotation=leader_rotation,
                    created_by=created_by,
                    created_at=utcnow(),
                ),
            )
            self._insert(
                session,
                GroupMemberRow(
                    group_id=row.id, user_id=created_by, role="leader", joined_at=utcnow()
                ),
            )
            return _to_record(row, Group)

    def get_group(self, group_id: int) -> Optional[Group]:
        return self._get(GroupRow, Group, group_id)

    def get_groups(self) -> list[Group]:
        return self._list(select(GroupRow).order_by(GroupRow.id), Group)

    def get_groups_by_category(self, category: str) -> list[Group]:
        stmt = select(GroupRow).where(GroupRow.category == category).order_by(GroupRow.id)
        return self._list(stmt, Group)

    def get_groups_by_organization(self, organization_id: int) -> list[Group]:
        stmt = (
            select(GroupRow)
            .where(GroupRow.organization_id == organization_id)
            .order_by(GroupRow.id)
        )
        return self._list(stmt, Group)

    def get_user_groups(self, user_id: int) -> list[Group]:
        stmt = (
            select(GroupRow)
            .join(GroupMemberRow, GroupMemberRow.group_id == GroupRow.id)
            .where(GroupMemberRow.user_id == user_id)
            .order_by(GroupMemberRow.id)
        )
        return self._list(stmt, Group)

    def update_group(self, group_id: int, changes: Mapping[str, Any]) -> Optional[Group]:
        values = filter_changes(Group, changes, protected=("created_by",))
        if "category" in values:
            values["category"] = coerce_choice(
                values["category"], GROUP_CATEGORIES, "other", field_name="group category"
            )
        if "privacy" in values:
            values["privacy"] = coerce_choice(
                values["privacy"], GROUP_PRIVACY, "open", field_name="group privacy"
            )
        return self._update_row(GroupRow, Group, group_id, values, "update group")

    def delete_group(self, group_id: int) -> bool:
        with self._write(f"delete group {group_id}") as session:
            return self._delete_group_rows(session, group_id)

    def _delete_group_rows(self, session: Session, group_id: int) -> bool:
        # Children before parents so a partial run never leaves orphans behind.
        request_ids = select(PrayerRequestRow.id).where(PrayerRequestRow.group_id == group_id)
        meeting_ids = select(MeetingRow.id).where(MeetingRow.group_id == group_id)
        for stmt in (
            delete(CommentRow).where(CommentRow.prayer_request_id.in_(request_ids)),
            delete(PrayingForRow).where(PrayingForRow.prayer_request_id.in_(request_ids)),
            delete(NotificationRow).where(
                NotificationRow.reference_id.in_(request_ids),
                NotificationRow.type.in_(REQUEST_NOTIFICATION_TYPES),
            ),
            delete(PrayerRequestRow).where(PrayerRequestRow.group_id == group_id),
            delete(MeetingNoteRow).where(MeetingNoteRow.meeting_id.in_(meeting_ids)),
            delete(MeetingRow).where(MeetingRow.group_id == group_id),
            delete(GroupMemberRow).where(GroupMemberRow.group_id == group_id),
            delete(GroupTagRow).where(GroupTagRow.group_id == group_id),
            delete(GroupNotificationPreferenceRow).where(
                GroupNotificationPreferenceRow.group_id == group_id
            ),
        ):
            session.execute(stmt.execution_options(synchronize_session=False))
        result = session.execute(
            delete(GroupRow)
            .where(GroupRow.id == group_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    # Group members

    def add_group_member(
        self,
        group_id: int,
        user_id: int,
        role: Optional[str] = None,
        *,
        added_by: Optional[int] = None,
    ) -> GroupMember:
        with self._write("add group member") as session:
            row = self._insert(
                session,
                GroupMemberRow(
                    group_id=group_id,
                    user_id=user_id,
                    role=coerce_choice(role, GROUP_ROLES, "member", field_name="group role"),
                    joined_at=utcnow(),
                ),
            )
            member = _to_record(row, GroupMember)
        self.notifier.group_member_added(self, member, added_by)
        return member

    def get_group_members(self, group_id: int) -> list[GroupMember]:
        stmt = (
            select(GroupMemberRow)
            .where(GroupMemberRow.group_id == group_id)
            .order_by(GroupMemberRow.id)
        )
        return self._list(stmt, GroupMember)

    def get_group_member(self, group_id: int, user_id: int) -> Optional[GroupMember]:
        stmt = select(GroupMemberRow).where(
            GroupMemberRow.group_id == group_id, GroupMemberRow.user_id == user_id
        )
        return self._first(stmt, GroupMember)

    def update_group_member(
        self, group_id: int, user_id: int, role: str
    ) -> Optional[GroupMember]:
        with self._write("update group member") as session:
            row = session.execute(
                select(GroupMemberRow).where(
                    GroupMemberRow.group_id == group_id, GroupMemberRow.user_id == user_id
                )
            ).scalars().first()
            if not row:
                return None
            row.role = coerce_choice(role, GROUP_ROLES, "member", field_name="group role")
            return _to_record(row, GroupMember)

    def remove_group_member(self, group_id: int, user_id: int) -> bool:
        with self._write("remove group member") as session:
            result = session.execute(
                delete(GroupMemberRow)
                .where(GroupMemberRow.group_id == group_id, GroupMemberRow.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

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
        with self._write("create prayer request") as session:
            row = self._insert(
                session,
                PrayerRequestRow(
                    group_id=group_id,
                    user_id=user_id,
                    title=title,
                    description=description,
                    urgency=coerce_choice(
                        urgency, REQUEST_URGENCIES, "medium", field_name="urgency"
                    ),
                    is_anonymous=bool(is_anonymous),
                    status=coerce_choice(status, REQUEST_STATUSES, "waiting", field_name="status"),
                    follow_up_date=follow_up_date,
                    is_stale=bool(is_stale),
                    created_at=now,
                    updated_at=now,
                ),
            )
            request = _to_record(row, PrayerRequest)
        self.notifier.prayer_request_created(self, request)
        return request

    def get_prayer_request(self, request_id: int) -> Optional[PrayerRequest]:
        return self._get(PrayerRequestRow, PrayerRequest, request_id)

    def _requests_newest_first(self):
        return select(PrayerRequestRow).order_by(
            PrayerRequestRow.created_at.desc(), PrayerRequestRow.id.desc()
        )

    def get_group_prayer_requests(self, group_id: int) -> list[PrayerRequest]:
        stmt = self._requests_newest_first().where(PrayerRequestRow.group_id == group_id)
        return self._list(stmt, PrayerRequest)

    def get_user_prayer_requests(self, user_id: int) -> list[PrayerRequest]:
        stmt = self._requests_newest_first().where(PrayerRequestRow.user_id == user_id)
        return self._list(stmt, PrayerRequest)

    def get_recent_prayer_requests(self, user_id: int, limit: int = 5) -> list[PrayerRequest]:
        stmt = (
            self._requests_newest_first()
            .where(
                PrayerRequestRow.group_id.in_(
                    select(GroupMemberRow.group_id).where(GroupMemberRow.user_id == user_id)
                )
            )
            .limit(limit)
        )
        return self._list(stmt, PrayerRequest)

    def update_prayer_request(
        self, request_id: int, changes: Mapping[str, Any]
    ) -> Optional[PrayerRequest]:
        values = filter_changes(PrayerRequest, changes, protected=("group_id", "user_id"))
        if "status" in values:
            values["status"] = coerce_choice(
                values["status"], REQUEST_STATUSES, "waiting", field_name="status"
            )
        if "urgency" in values:
            values["urgency"] = coerce_choice(
                values["urgency"], REQUEST_URGENCIES, "medium", field_name="urgency"
            )
        values["updated_at"] = utcnow()
        with self._write("update prayer request") as session:
            row = session.get(PrayerRequestRow, request_id)
            if not row:
                return None
            previous_status = row.status
            for key, value in values.items():
                setattr(row, key, value)
            session.flush()
            request = _to_record(row, PrayerRequest)
        self.notifier.prayer_request_status_changed(self, request, previous_status)
        return request

    def delete_prayer_request(self, request_id: int) -> bool:
        with self._write(f"delete prayer request {request_id}") as session:
            for stmt in (
                delete(CommentRow).where(CommentRow.prayer_request_id == request_id),
                delete(PrayingForRow).where(PrayingForRow.prayer_request_id == request_id),
                delete(NotificationRow).where(
                    NotificationRow.reference_id == request_id,
                    NotificationRow.type.in_(REQUEST_NOTIFICATION_TYPES),
                ),
            ):
                session.execute(stmt.execution_options(synchronize_session=False))
            result = session.execute(
                delete(PrayerRequestRow)
                .where(PrayerRequestRow.id == request_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def check_and_update_stale_prayer_requests(self) -> int:
        with self._write("mark stale prayer requests") as session:
            rows = session.execute(
                select(PrayerRequestRow).where(
                    PrayerRequestRow.is_stale.is_(False),
                    PrayerRequestRow.status == "waiting",
                    PrayerRequestRow.follow_up_date.is_not(None),
                    PrayerRequestRow.follow_up_date < stale_cutoff(),
                )
            ).scalars().all()
            for row in rows:
                row.is_stale = True
            session.flush()
            stale = [_to_record(row, PrayerRequest) for row in rows]
        for request in stale:
            self.notifier.prayer_request_stale(self, request)
        return len(stale)

    # Comments

    def create_comment(
        self, *, prayer_request_id: int, user_id: int, text: str, is_private: bool = False
    ) -> Comment:
        with self._write("create comment") as session:
            row = self._insert(
                session,
                CommentRow(
                    prayer_request_id=prayer_request_id,
                    user_id=user_id,
                    text=text,
                    is_private=bool(is_private),
                    created_at=utcnow(),
                ),
            )
            comment = _to_record(row, Comment)
        self.notifier.comment_created(self, comment)
        return comment

    def get_comment(self, comment_id: int) -> Optional[Comment]:
        return self._get(CommentRow, Comment, comment_id)

    def get_prayer_request_comments(self, prayer_request_id: int) -> list[Comment]:
        stmt = (
            select(CommentRow)
            .where(CommentRow.prayer_request_id == prayer_request_id)
            .order_by(CommentRow.created_at.desc(), CommentRow.id.desc())
        )
        return self._list(stmt, Comment)

    def delete_comment(self, comment_id: int) -> bool:
        with self._write("delete comment") as session:
            result = session.execute(
                delete(CommentRow)
                .where(CommentRow.id == comment_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    # Notifications

    def create_notification(
        self, *, user_id: int, type: str, message: str, reference_id: Optional[int] = None
    ) -> Notification:
        with self._write("create notification") as session:
            row = self._insert(
                session,
                NotificationRow(
                    user_id=user_id,
                    type=type,
                    message=message,
                    reference_id=reference_id,
                    read=False,
                    created_at=utcnow(),
                ),
            )
            return _to_record(row, Notification)

    def get_user_notifications(self, user_id: int) -> list[Notification]:
        stmt = (
            select(NotificationRow)
            .where(NotificationRow.user_id == user_id)
            .order_by(NotificationRow.created_at.desc(), NotificationRow.id.desc())
        )
        return self._list(stmt, Notification)

    def mark_notification_read(self, notification_id: int) -> Optional[Notification]:
        return self._update_row(
            NotificationRow, Notification, notification_id, {"read": True}, "mark notification read"
        )

    def mark_all_notifications_read(self, user_id: int) -> bool:
        with self._write("mark all notifications read") as session:
            session.execute(
                update(NotificationRow)
                .where(NotificationRow.user_id == user_id)
                .values(read=True)
                .execution_options(synchronize_session=False)
            )
        return True

    def delete_notification(self, notification_id: int) -> bool:
        with self._write("delete notification") as session:
            result = session.execute(
                delete(NotificationRow)
                .where(NotificationRow.id == notification_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    # Praying for

    def add_praying_for(self, prayer_request_id: int, user_id: int) -> PrayingFor:
        with self._write("add praying for") as session:
            row = self._insert(
                session,
                PrayingForRow(
                    prayer_request_id=prayer_request_id,
                    user_id=user_id,
                    timestamp=utcnow(),
                ),
            )
            return _to_record(row, PrayingFor)

    def remove_praying_for(self, prayer_request_id: int, user_id: int) -> bool:
        with self._write("remove praying for") as session:
            result = session.execute(
                delete(PrayingForRow)
                .where(
                    PrayingForRow.prayer_request_id == prayer_request_id,
                    PrayingForRow.user_id == user_id,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def is_praying_for(self, prayer_request_id: int, user_id: int) -> bool:
        stmt = select(PrayingForRow).where(
            PrayingForRow.prayer_request_id == prayer_request_id,
            PrayingForRow.user_id == user_id,
        )
        return self._first(stmt, PrayingFor) is not None

    def get_praying_for_count(self, prayer_request_id: int) -> int:
        with self.Session() as session:
            return session.execute(
                select(func.count(PrayingForRow.id)).where(
                    PrayingForRow.prayer_request_id == prayer_request_id
                )
            ).scalar_one()

    # Password reset

    def create_password_reset_token(self, user_id: int) -> PasswordResetToken:
        now = utcnow()
        with self._write("create password reset token") as session:
            row = self._insert(
                session,
                PasswordResetTokenRow(
                    user_id=user_id,
                    token=secrets.token_hex(32),
                    expires_at=now + timedelta(seconds=self.reset_token_ttl_seconds),
                    is_used=False,
                    created_at=now,
                ),
            )
            return _to_record(row, PasswordResetToken)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        stmt = select(PasswordResetTokenRow).where(
            PasswordResetTokenRow.token == token,
            PasswordResetTokenRow.is_used.is_(False),
            PasswordResetTokenRow.expires_at > utcnow(),
        )
        return self._first(stmt, PasswordResetToken)

    def mark_password_reset_token_used(self, token_id: int) -> Optional[PasswordResetToken]:
        return self._update_row(
            PasswordResetTokenRow,
            PasswordResetToken,
            token_id,
            {"is_used": True},
            "mark password reset token used",
        )

    # Notification preferences

    def get_user_notification_preferences(
        self, user_id: int
    ) -> Optional[NotificationPreference]:
        stmt = select(NotificationPreferenceRow).where(
            NotificationPreferenceRow.user_id == user_id
        )
        return self._first(stmt, NotificationPreference)

    def create_notification_preferences(
        self, user_id: int, **values: Any
    ) -> NotificationPreference:
        now = utcnow()
        accepted = filter_changes(
            NotificationPreference,
            {k: v for k, v in values.items() if v is not None},
            protected=("user_id", "updated_at"),
        )
        with self._write("create notification preferences") as session:
            row = self._insert(
                session,
                NotificationPreferenceRow(
                    user_id=user_id, created_at=now, updated_at=now, **accepted
                ),
            )
            return _to_record(row, NotificationPreference)

    def update_notification_preferences(
        self, user_id: int, changes: Mapping[str, Any]
    ) -> Optional[NotificationPreference]:
        values = filter_changes(NotificationPreference, changes, protected=("user_id",))
        values["updated_at"] = utcnow()
        with self._write("update notification preferences") as session:
            row = session.execute(
                select(NotificationPreferenceRow).where(
                    NotificationPreferenceRow.user_id == user_id
                )
            ).scalars().first()
            if not row:
                return None
            for key, value in values.items():
                setattr(row, key, value)
            session.flush()
            return _to_record(row, NotificationPreference)

    def get_group_notification_preferences(
        self, user_id: int, group_id: int
    ) -> Optional[GroupNotificationPreference]:
        stmt = select(GroupNotificationPreferenceRow).where(
            GroupNotificationPreferenceRow.user_id == user_id,
            GroupNotificationPreferenceRow.group_id == group_id,
        )
        return self._first(stmt, GroupNotificationPreference)

    def get_user_group_notification_preferences(
        self, user_id: int
    ) -> list[GroupNotificationPreference]:
        stmt = (
            select(GroupNotificationPreferenceRow)
            .where(GroupNotificationPreferenceRow.user_id == user_id)
            .order_by(GroupNotificationPreferenceRow.id)
        )
        return self._list(stmt, GroupNotificationPreference)

    def create_group_notification_preferences(
        self, user_id: int, group_id: int, **values: Any
    ) -> GroupNotificationPreference:
        now = utcnow()
        accepted = filter_changes(
            GroupNotificationPreference,
            {k: v for k, v in values.items() if v is not None},
            protected=("user_id", "group_id", "updated_at"),
        )
        with self._write("create group notification preferences") as session:
            row = self._insert(
                session,
                GroupNotificationPreferenceRow(
                    user_id=user_id,
                    group_id=group_id,
                    created_at=now,
                    updated_at=now,
                    **accepted,
                ),
            )
            return _to_record(row, GroupNotificationPreference)

    def update_group_notification_preferences(
        self, user_id: int, group_id: int, changes: Mapping[str, Any]
    ) -> Optional[GroupNotificationPreference]:
        values = filter_changes(
            GroupNotificationPreference, changes, protected=("user_id", "group_id")
        )
        values["updated_at"] = utcnow()
        with self._write("update group notification preferences") as session:
            row = session.execute(
                select(GroupNotificationPreferenceRow).where(
                    GroupNotificationPreferenceRow.user_id == user_id,
                    GroupNotificationPreferenceRow.group_id == group_id,
                )
            ).scalars().first()
            if not row:
                return None
            for key, value in values.items():
                setattr(row, key, value)
            session.flush()
            return _to_record(row, GroupNotificationPreference)

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
        with self._write("create meeting") as session:
            row = self._insert(
                session,
                MeetingRow(
                    group_id=group_id,
                    title=title,
                    description=description,
                    meeting_type=meeting_type,
                    meeting_link=meeting_link,
                    start_time=start_time,
                    end_time=end_time,
                    is_recurring=bool(is_recurring),
                    recurring_pattern=recurring_pattern,
                    recurring_day=recurring_day,
                    recurring_until=recurring_until,
                    parent_meeting_id=parent_meeting_id,
                    created_by=created_by,
                    created_at=utcnow(),
                ),
            )
            meeting = _to_record(row, Meeting)
        self.notifier.meeting_created(self, meeting)
        return meeting

    def get_meeting(self, meeting_id: int) -> Optional[Meeting]:
        return self._get(MeetingRow, Meeting, meeting_id)

    def get_group_meetings(self, group_id: int) -> list[Meeting]:
        stmt = (
            select(MeetingRow)
            .where(MeetingRow.group_id == group_id)
            .order_by(MeetingRow.start_time, MeetingRow.id)
        )
        return self._list(stmt, Meeting)

    def get_upcoming_meetings(self, user_id: int) -> list[Meeting]:
        stmt = (
            select(MeetingRow)
            .where(
                MeetingRow.group_id.in_(
                    select(GroupMemberRow.group_id).where(GroupMemberRow.user_id == user_id)
                ),
                MeetingRow.start_time > utcnow(),
            )
            .order_by(MeetingRow.start_time, MeetingRow.id)
        )
        return self._list(stmt, Meeting)

    def update_meeting(
        self, meeting_id: int, changes: Mapping[str, Any], *, actor_id: Optional[int] = None
    ) -> Optional[Meeting]:
        values = filter_changes(Meeting, changes, protected=("group_id", "created_by"))
        with self._write("update meeting") as session:
            row = session.get(MeetingRow, meeting_id)
            if not row:
                return None
            changed = {key: value for key, value in values.items() if getattr(row, key) != value}
            for key, value in changed.items():
                setattr(row, key, value)
            session.flush()
            meeting = _to_record(row, Meeting)
        if changed:
            self.notifier.meeting_updated(self, meeting, actor_id)
        return meeting

    def delete_meeting(self, meeting_id: int, *, actor_id: Optional[int] = None) -> bool:
        with self._write(f"delete meeting {meeting_id}") as session:
            row = session.get(MeetingRow, meeting_id)
            if not row:
                return False
            meeting = _to_record(row, Meeting)
            session.execute(
                delete(MeetingNoteRow)
                .where(MeetingNoteRow.meeting_id == meeting_id)
                .execution_options(synchronize_session=False)
            )
            session.delete(row)
        self.notifier.meeting_cancelled(self, meeting, actor_id)
        return True

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
        with self._write("create meeting note") as session:
            row = self._insert(
                session,
                MeetingNoteRow(
                    meeting_id=meeting_id,
                    content=content,
                    summary=summary,
                    is_ai_generated=bool(is_ai_generated),
                    created_by=created_by,
                    created_at=now,
                    updated_at=now,
                ),
            )
            return _to_record(row, MeetingNote)

    def get_meeting_notes(self, meeting_id: int) -> list[MeetingNote]:
        stmt = (
            select(MeetingNoteRow)
            .where(MeetingNoteRow.meeting_id == meeting_id)
            .order_by(MeetingNoteRow.created_at, MeetingNoteRow.id)
        )
        return self._list(stmt, MeetingNote)

    def update_meeting_note(
        self, note_id: int, changes: Mapping[str, Any]
    ) -> Optional[MeetingNote]:
        values = filter_changes(MeetingNote, changes, protected=("meeting_id",))
        values["updated_at"] = utcnow()
        return self._update_row(MeetingNoteRow, MeetingNote, note_id, values, "update meeting note")

    def delete_meeting_note(self, note_id: int) -> bool:
        with self._write("delete meeting note") as session:
            result = session.execute(
                delete(MeetingNoteRow)
                .where(MeetingNoteRow.id == note_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

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


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), nullable=False, unique=True)
    password = Column(Text, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(20), nullable=False, default="regular")
    phone = Column(String(64), nullable=True)
    avatar = Column(Text, nullable=True)
    bio = Column(Text, nullable=True)


class PasswordResetTokenRow(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    token = Column(String(128), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    is_used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class OrganizationRow(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class OrganizationMemberRow(Base):
    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_members_org_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    role = Column(String(20), nullable=False, default="member")
    joined_at = Column(DateTime, nullable=False, default=utcnow)


class OrganizationTagRow(Base):
    __tablename__ = "organization_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    color = Column(String(16), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class GroupTagRow(Base):
    __tablename__ = "group_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, nullable=False, index=True)
    tag_id = Column(Integer, nullable=False, index=True)


class GroupRow(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    organization_id = Column(Integer, nullable=False, index=True)
    category = Column(String(20), nullable=False, default="other", index=True)
    privacy = Column(String(20), nullable=False, default="open")
    leader_rotation = Column(Integer, nullable=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class GroupMemberRow(Base):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    role = Column(String(20), nullable=False, default="member")
    joined_at = Column(DateTime, nullable=False, default=utcnow)


class PrayerRequestRow(Base):
    __tablename__ = "prayer_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    urgency = Column(String(20), nullable=False, default="medium")
    is_anonymous = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="waiting", index=True)
    follow_up_date = Column(DateTime, nullable=True)
    is_stale = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class CommentRow(Base):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prayer_request_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    is_private = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class NotificationRow(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    type = Column(String(40), nullable=False)
    message = Column(Text, nullable=False)
    reference_id = Column(Integer, nullable=True, index=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class PrayingForRow(Base):
    __tablename__ = "praying_for"

    id = Column(Integer, primary_key=True, autoincrement=True)
    prayer_request_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)


class NotificationPreferenceRow(Base):
    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, unique=True)
    email_notifications = Column(Boolean, nullable=False, default=True)
    push_notifications = Column(Boolean, nullable=False, default=True)
    in_app_notifications = Column(Boolean, nullable=False, default=True)
    prayer_requests = Column(Boolean, nullable=False, default=True)
    group_invitations = Column(Boolean, nullable=False, default=True)
    comments = Column(Boolean, nullable=False, default=True)
    status_updates = Column(Boolean, nullable=False, default=True)
    group_updates = Column(Boolean, nullable=False, default=True)
    stale_prayer_reminders = Column(Boolean, nullable=False, default=True)
    reminder_interval = Column(Integer, nullable=False, default=7)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class GroupNotificationPreferenceRow(Base):
    __tablename__ = "group_notification_preferences"
    __table_args__ = (
        UniqueConstraint("user_id", "group_id", name="uq_group_notification_preferences"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    group_id = Column(Integer, nullable=False, index=True)
    muted = Column(Boolean, nullable=False, default=False)
    new_prayer_requests = Column(Boolean, nullable=False, default=True)
    prayer_status_updates = Column(Boolean, nullable=False, default=True)
    new_comments = Column(Boolean, nullable=False, default=True)
    group_updates = Column(Boolean, nullable=False, default=True)
    meeting_reminders = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class MeetingRow(Base):
    __tablename__ = "meetings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    meeting_type = Column(String(40), nullable=False)
    meeting_link = Column(Text, nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_pattern = Column(String(40), nullable=True)
    recurring_day = Column(Integer, nullable=True)
    recurring_until = Column(DateTime, nullable=True)
    parent_meeting_id = Column(Integer, nullable=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class MeetingNoteRow(Base):
    __tablename__ = "meeting_notes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    meeting_id = Column(Integer, nullable=False, index=True)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    is_ai_generated = Column(Boolean, nullable=False, default=False)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
