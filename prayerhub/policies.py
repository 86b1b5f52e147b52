"""
Membership guards and caller-level checks.

The stores accept any membership change they are given. Everything that
decides whether a change is allowed lives here so both backends and every
caller (routes, scripts) share one set of rules.
"""

from __future__ import annotations

from typing import Iterable, Optional

from prayerhub.db import DbClient
from prayerhub.errors import (
    AlreadyPrayingError,
    LastAdminError,
    LastLeaderError,
    NotPrayingError,
)
from prayerhub.records import (
    Comment,
    GroupMember,
    OrganizationMember,
    PrayerRequest,
    PrayingFor,
)


def _count_role(members: Iterable, role: str) -> int:
    return sum(1 for member in members if member.role == role)


def _is_last_group_leader(db: DbClient, group_id: int, user_id: int) -> bool:
    member = db.get_group_member(group_id, user_id)
    if not member or member.role != "leader":
        return False
    return _count_role(db.get_group_members(group_id), "leader") <= 1


def _is_last_organization_admin(db: DbClient, organization_id: int, user_id: int) -> bool:
    member = db.get_organization_member(organization_id, user_id)
    if not member or member.role != "admin":
        return False
    return _count_role(db.get_organization_members(organization_id), "admin") <= 1


def ensure_can_remove_group_member(db: DbClient, group_id: int, user_id: int) -> None:
    if _is_last_group_leader(db, group_id, user_id):
        raise LastLeaderError(
            "Cannot remove the last leader. Promote another member to leader first."
        )


def ensure_can_change_group_role(
    db: DbClient, group_id: int, user_id: int, new_role: str
) -> None:
    if new_role != "leader" and _is_last_group_leader(db, group_id, user_id):
        raise LastLeaderError(
            "Cannot demote the last leader. Promote another member to leader first."
        )


def ensure_can_remove_organization_member(
    db: DbClient, organization_id: int, user_id: int
) -> None:
    if _is_last_organization_admin(db, organization_id, user_id):
        raise LastAdminError(
            "Cannot remove the last admin. Promote another member to admin first."
        )


def ensure_can_change_organization_role(
    db: DbClient, organization_id: int, user_id: int, new_role: str
) -> None:
    if new_role != "admin" and _is_last_organization_admin(db, organization_id, user_id):
        raise LastAdminError(
            "Cannot demote the last admin. Promote another member to admin first."
        )


def leave_group(db: DbClient, group_id: int, user_id: int) -> bool:
    if _is_last_group_leader(db, group_id, user_id):
        raise LastLeaderError(
            "You are the only leader. Promote another member to leader before leaving."
        )
    return db.remove_group_member(group_id, user_id)


def remove_group_member(db: DbClient, group_id: int, user_id: int) -> bool:
    ensure_can_remove_group_member(db, group_id, user_id)
    return db.remove_group_member(group_id, user_id)


def change_group_member_role(
    db: DbClient, group_id: int, user_id: int, role: str
) -> Optional[GroupMember]:
    ensure_can_change_group_role(db, group_id, user_id, role)
    return db.update_group_member(group_id, user_id, role)


def leave_organization(db: DbClient, organization_id: int, user_id: int) -> bool:
    if _is_last_organization_admin(db, organization_id, user_id):
        raise LastAdminError(
            "You are the only admin. Promote another member to admin before leaving."
        )
    return db.remove_organization_member(organization_id, user_id)


def remove_organization_member(db: DbClient, organization_id: int, user_id: int) -> bool:
    ensure_can_remove_organization_member(db, organization_id, user_id)
    return db.remove_organization_member(organization_id, user_id)


def change_organization_member_role(
    db: DbClient, organization_id: int, user_id: int, role: str
) -> Optional[OrganizationMember]:
    ensure_can_change_organization_role(db, organization_id, user_id, role)
    return db.update_organization_member(organization_id, user_id, role)


def visible_comments(
    comments: Iterable[Comment], request: PrayerRequest, viewer_id: Optional[int]
) -> list[Comment]:
    """Drop private comments unless the viewer owns the request or wrote the comment."""
    return [
        comment
        for comment in comments
        if not comment.is_private
        or viewer_id == request.user_id
        or viewer_id == comment.user_id
    ]


def start_praying(db: DbClient, request_id: int, user_id: int) -> tuple[PrayingFor, int]:
    if db.is_praying_for(request_id, user_id):
        raise AlreadyPrayingError("Already praying for this request")
    record = db.add_praying_for(request_id, user_id)
    return record, db.get_praying_for_count(request_id)


def stop_praying(db: DbClient, request_id: int, user_id: int) -> int:
    if not db.is_praying_for(request_id, user_id):
        raise NotPrayingError("Not praying for this request")
    db.remove_praying_for(request_id, user_id)
    return db.get_praying_for_count(request_id)
