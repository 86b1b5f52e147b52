"""
HTTP routes for the prayer community API.

The acting user comes from the `X-User-Id` header; authentication itself
happens in front of this service.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from prayerhub import policies
from prayerhub.config import get_settings
from prayerhub.db import DbClient
from prayerhub.dependencies import get_db_client
from prayerhub.notifications import (
    get_or_create_group_notification_preferences,
    get_or_create_notification_preferences,
)
from prayerhub.records import Group, PrayerRequest, User
from prayerhub.schemas import (
    AddGroupMemberPayload,
    AddOrganizationMemberPayload,
    CommentResponse,
    CreateCommentPayload,
    CreateGroupPayload,
    CreateMeetingPayload,
    CreateOrganizationPayload,
    CreatePrayerRequestPayload,
    CreateUserPayload,
    GroupMemberResponse,
    GroupNotificationPreferencePayload,
    GroupNotificationPreferenceResponse,
    GroupResponse,
    InviteOrganizationMemberPayload,
    MeetingResponse,
    NotificationPreferencePayload,
    NotificationPreferenceResponse,
    NotificationResponse,
    OrganizationMemberResponse,
    OrganizationResponse,
    PrayerRequestResponse,
    PrayingForResponse,
    StaleSweepResponse,
    StatusResponse,
    UpdateGroupMemberPayload,
    UpdateMeetingPayload,
    UpdateOrganizationMemberPayload,
    UpdatePrayerRequestPayload,
    UserResponse,
)
from prayerhub.stale_sweep import run_sweep

logger = logging.getLogger(__name__)

router = APIRouter()


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def get_current_user(
    x_user_id: Optional[int] = Header(default=None),
    db: DbClient = Depends(get_db_client),
) -> User:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    user = db.get_user(x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def _require_group(db: DbClient, group_id: int) -> Group:
    group = db.get_group(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


def _require_group_member(db: DbClient, group_id: int, user: User) -> None:
    if not db.get_group_member(group_id, user.id):
        raise HTTPException(status_code=403, detail="Not a member of this group")


def _require_group_leader(db: DbClient, group_id: int, user: User) -> None:
    member = db.get_group_member(group_id, user.id)
    if user.role == "admin":
        return
    if not member or member.role != "leader":
        raise HTTPException(status_code=403, detail="Group leader role required")


def _require_organization_admin(db: DbClient, organization_id: int, user: User) -> None:
    if not db.get_organization(organization_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    member = db.get_organization_member(organization_id, user.id)
    if user.role == "admin":
        return
    if not member or member.role != "admin":
        raise HTTPException(status_code=403, detail="Organization admin role required")


def _require_prayer_request(db: DbClient, request_id: int, user: User) -> PrayerRequest:
    request = db.get_prayer_request(request_id)
    if not request:
        raise HTTPException(status_code=404, detail="Prayer request not found")
    _require_group_member(db, request.group_id, user)
    return request


def _prayer_request_response(
    db: DbClient, request: PrayerRequest, viewer: User
) -> PrayerRequestResponse:
    response = PrayerRequestResponse.model_validate(request)
    response.praying_count = db.get_praying_for_count(request.id)
    if request.is_anonymous and viewer.id != request.user_id:
        response.user_id = None
    return response


# Users


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(payload: CreateUserPayload, db: DbClient = Depends(get_db_client)):
    user = db.create_user(**payload.model_dump())
    return UserResponse.model_validate(user)


@router.get("/users/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)):
    return UserResponse.model_validate(user)


# Organizations


@router.post("/organizations", response_model=OrganizationResponse, status_code=201)
def create_organization(
    payload: CreateOrganizationPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    organization = db.create_organization(
        name=payload.name, description=payload.description, created_by=user.id
    )
    return OrganizationResponse.model_validate(organization)


@router.get("/organizations", response_model=list[OrganizationResponse])
def list_my_organizations(
    user: User = Depends(get_current_user), db: DbClient = Depends(get_db_client)
):
    return [OrganizationResponse.model_validate(o) for o in db.get_user_organizations(user.id)]


@router.get("/organizations/{organization_id}", response_model=OrganizationResponse)
def get_organization(
    organization_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    organization = db.get_organization(organization_id)
    if not organization:
        raise HTTPException(status_code=404, detail="Organization not found")
    return OrganizationResponse.model_validate(organization)


@router.delete("/organizations/{organization_id}", response_model=StatusResponse)
def delete_organization(
    organization_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_organization_admin(db, organization_id, user)
    if not db.delete_organization(organization_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    return StatusResponse()


@router.get(
    "/organizations/{organization_id}/members",
    response_model=list[OrganizationMemberResponse],
)
def list_organization_members(
    organization_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not db.get_organization(organization_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    return [
        OrganizationMemberResponse.model_validate(m)
        for m in db.get_organization_members(organization_id)
    ]


@router.post(
    "/organizations/{organization_id}/members",
    response_model=OrganizationMemberResponse,
    status_code=201,
)
def add_organization_member(
    organization_id: int,
    payload: AddOrganizationMemberPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_organization_admin(db, organization_id, user)
    if not db.get_user(payload.user_id):
        raise HTTPException(status_code=404, detail="User not found")
    member = db.add_organization_member(
        organization_id, payload.user_id, payload.role, added_by=user.id
    )
    return OrganizationMemberResponse.model_validate(member)


@router.post(
    "/organizations/{organization_id}/invite",
    response_model=OrganizationMemberResponse,
    status_code=201,
)
def invite_organization_member(
    organization_id: int,
    payload: InviteOrganizationMemberPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_organization_admin(db, organization_id, user)
    invitee = db.get_user_by_email(payload.email)
    if not invitee:
        raise HTTPException(status_code=404, detail="User with this email not found")
    member = db.add_organization_member(
        organization_id, invitee.id, payload.role, added_by=user.id, invited=True
    )
    return OrganizationMemberResponse.model_validate(member)


@router.patch(
    "/organizations/{organization_id}/members/{user_id}",
    response_model=OrganizationMemberResponse,
)
def update_organization_member(
    organization_id: int,
    user_id: int,
    payload: UpdateOrganizationMemberPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_organization_admin(db, organization_id, user)
    member = policies.change_organization_member_role(
        db, organization_id, user_id, payload.role
    )
    if not member:
        raise HTTPException(status_code=404, detail="Member not found")
    return OrganizationMemberResponse.model_validate(member)


@router.delete(
    "/organizations/{organization_id}/members/{user_id}", response_model=StatusResponse
)
def remove_organization_member(
    organization_id: int,
    user_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_organization_admin(db, organization_id, user)
    if not policies.remove_organization_member(db, organization_id, user_id):
        raise HTTPException(status_code=404, detail="Member not found")
    return StatusResponse()


@router.post("/organizations/{organization_id}/leave", response_model=StatusResponse)
def leave_organization(
    organization_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not policies.leave_organization(db, organization_id, user.id):
        raise HTTPException(status_code=404, detail="Not a member of this organization")
    return StatusResponse()


# Groups


@router.post("/groups", response_model=GroupResponse, status_code=201)
def create_group(
    payload: CreateGroupPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not db.get_organization(payload.organization_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    if not db.get_organization_member(payload.organization_id, user.id):
        raise HTTPException(status_code=403, detail="Not a member of this organization")
    group = db.create_group(created_by=user.id, **payload.model_dump())
    return GroupResponse.model_validate(group)


@router.get("/groups", response_model=list[GroupResponse])
def list_my_groups(user: User = Depends(get_current_user), db: DbClient = Depends(get_db_client)):
    return [GroupResponse.model_validate(g) for g in db.get_user_groups(user.id)]


@router.get("/groups/{group_id}", response_model=GroupResponse)
def get_group(
    group_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return GroupResponse.model_validate(_require_group(db, group_id))


@router.delete("/groups/{group_id}", response_model=StatusResponse)
def delete_group(
    group_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_group_leader(db, group_id, user)
    if not db.delete_group(group_id):
        raise HTTPException(status_code=404, detail="Group not found")
    return StatusResponse()


@router.get("/groups/{group_id}/members", response_model=list[GroupMemberResponse])
def list_group_members(
    group_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    return [GroupMemberResponse.model_validate(m) for m in db.get_group_members(group_id)]


@router.post(
    "/groups/{group_id}/members", response_model=GroupMemberResponse, status_code=201
)
def add_group_member(
    group_id: int,
    payload: AddGroupMemberPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_group_leader(db, group_id, user)
    if not db.get_user(payload.user_id):
        raise HTTPException(status_code=404, detail="User not found")
    member = db.add_group_member(group_id, payload.user_id, payload.role, added_by=user.id)
    return GroupMemberResponse.model_validate(member)


@router.patch(
    "/groups/{group_id}/members/{user_id}", response_model=GroupMemberResponse
)
def update_group_member(
    group_id: int,
    user_id: int,
    payload: UpdateGroupMemberPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_group_leader(db, group_id, user)
    member = policies.change_group_member_role(db, group_id, user_id, payload.role)
    if not member:
        raise HTTPException(status_code=404, detail="Member not found")
    return GroupMemberResponse.model_validate(member)


@router.delete("/groups/{group_id}/members/{user_id}", response_model=StatusResponse)
def remove_group_member(
    group_id: int,
    user_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_group_leader(db, group_id, user)
    if not policies.remove_group_member(db, group_id, user_id):
        raise HTTPException(status_code=404, detail="Member not found")
    return StatusResponse()


@router.post(
    "/groups/{group_id}/join", response_model=GroupMemberResponse, status_code=201
)
def join_group(
    group_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    group = _require_group(db, group_id)
    if group.privacy != "open":
        raise HTTPException(status_code=403, detail="Group is not open to join")
    if db.get_group_member(group_id, user.id):
        raise HTTPException(status_code=409, detail="Already a member of this group")
    member = db.add_group_member(group_id, user.id, "member")
    return GroupMemberResponse.model_validate(member)


@router.post("/groups/{group_id}/leave", response_model=StatusResponse)
def leave_group(
    group_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    if not policies.leave_group(db, group_id, user.id):
        raise HTTPException(status_code=404, detail="Not a member of this group")
    return StatusResponse()


@router.get(
    "/groups/{group_id}/prayer-requests", response_model=list[PrayerRequestResponse]
)
def list_group_prayer_requests(
    group_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_group_member(db, group_id, user)
    return [
        _prayer_request_response(db, request, user)
        for request in db.get_group_prayer_requests(group_id)
    ]


# Prayer requests


@router.post("/prayer-requests", response_model=PrayerRequestResponse, status_code=201)
def create_prayer_request(
    payload: CreatePrayerRequestPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, payload.group_id)
    _require_group_member(db, payload.group_id, user)
    values = payload.model_dump()
    values["follow_up_date"] = _naive_utc(values["follow_up_date"])
    request = db.create_prayer_request(user_id=user.id, **values)
    return _prayer_request_response(db, request, user)


@router.get("/prayer-requests/recent", response_model=list[PrayerRequestResponse])
def recent_prayer_requests(
    user: User = Depends(get_current_user), db: DbClient = Depends(get_db_client)
):
    return [
        _prayer_request_response(db, request, user)
        for request in db.get_recent_prayer_requests(user.id)
    ]


@router.get("/prayer-requests/{request_id}", response_model=PrayerRequestResponse)
def get_prayer_request(
    request_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    request = _require_prayer_request(db, request_id, user)
    return _prayer_request_response(db, request, user)


@router.patch("/prayer-requests/{request_id}", response_model=PrayerRequestResponse)
def update_prayer_request(
    request_id: int,
    payload: UpdatePrayerRequestPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    request = _require_prayer_request(db, request_id, user)
    if request.user_id != user.id:
        _require_group_leader(db, request.group_id, user)
    changes = payload.model_dump(exclude_unset=True)
    if "follow_up_date" in changes:
        changes["follow_up_date"] = _naive_utc(changes["follow_up_date"])
    updated = db.update_prayer_request(request_id, changes)
    if not updated:
        raise HTTPException(status_code=404, detail="Prayer request not found")
    return _prayer_request_response(db, updated, user)


@router.delete("/prayer-requests/{request_id}", response_model=StatusResponse)
def delete_prayer_request(
    request_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    request = _require_prayer_request(db, request_id, user)
    if request.user_id != user.id:
        _require_group_leader(db, request.group_id, user)
    if not db.delete_prayer_request(request_id):
        raise HTTPException(status_code=404, detail="Prayer request not found")
    return StatusResponse()


@router.get(
    "/prayer-requests/{request_id}/comments", response_model=list[CommentResponse]
)
def list_comments(
    request_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    request = _require_prayer_request(db, request_id, user)
    comments = policies.visible_comments(
        db.get_prayer_request_comments(request_id), request, user.id
    )
    return [CommentResponse.model_validate(c) for c in comments]


@router.post(
    "/prayer-requests/{request_id}/comments",
    response_model=CommentResponse,
    status_code=201,
)
def create_comment(
    request_id: int,
    payload: CreateCommentPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_prayer_request(db, request_id, user)
    comment = db.create_comment(
        prayer_request_id=request_id,
        user_id=user.id,
        text=payload.text,
        is_private=payload.is_private,
    )
    return CommentResponse.model_validate(comment)


@router.delete("/comments/{comment_id}", response_model=StatusResponse)
def delete_comment(
    comment_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    comment = db.get_comment(comment_id)
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")
    if comment.user_id != user.id and user.role != "admin":
        raise HTTPException(status_code=403, detail="Only the author can delete a comment")
    db.delete_comment(comment_id)
    return StatusResponse()


@router.post(
    "/prayer-requests/{request_id}/praying", response_model=PrayingForResponse
)
def start_praying(
    request_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_prayer_request(db, request_id, user)
    _, count = policies.start_praying(db, request_id, user.id)
    return PrayingForResponse(praying=True, count=count)


@router.delete(
    "/prayer-requests/{request_id}/praying", response_model=PrayingForResponse
)
def stop_praying(
    request_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_prayer_request(db, request_id, user)
    count = policies.stop_praying(db, request_id, user.id)
    return PrayingForResponse(praying=False, count=count)


# Notifications


@router.get("/notifications", response_model=list[NotificationResponse])
def list_notifications(
    user: User = Depends(get_current_user), db: DbClient = Depends(get_db_client)
):
    return [NotificationResponse.model_validate(n) for n in db.get_user_notifications(user.id)]


@router.post("/notifications/read-all", response_model=StatusResponse)
def mark_all_notifications_read(
    user: User = Depends(get_current_user), db: DbClient = Depends(get_db_client)
):
    db.mark_all_notifications_read(user.id)
    return StatusResponse()


@router.post(
    "/notifications/{notification_id}/read", response_model=NotificationResponse
)
def mark_notification_read(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    owned = {n.id for n in db.get_user_notifications(user.id)}
    if notification_id not in owned:
        raise HTTPException(status_code=404, detail="Notification not found")
    notification = db.mark_notification_read(notification_id)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return NotificationResponse.model_validate(notification)


@router.get(
    "/notification-preferences", response_model=NotificationPreferenceResponse
)
def get_notification_preferences(
    user: User = Depends(get_current_user), db: DbClient = Depends(get_db_client)
):
    preferences = get_or_create_notification_preferences(db, user.id)
    return NotificationPreferenceResponse.model_validate(preferences)


@router.patch(
    "/notification-preferences", response_model=NotificationPreferenceResponse
)
def update_notification_preferences(
    payload: NotificationPreferencePayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    get_or_create_notification_preferences(db, user.id)
    preferences = db.update_notification_preferences(
        user.id, payload.model_dump(exclude_unset=True, exclude_none=True)
    )
    return NotificationPreferenceResponse.model_validate(preferences)


@router.get(
    "/groups/{group_id}/notification-preferences",
    response_model=GroupNotificationPreferenceResponse,
)
def get_group_notification_preferences(
    group_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_group_member(db, group_id, user)
    preferences = get_or_create_group_notification_preferences(db, user.id, group_id)
    return GroupNotificationPreferenceResponse.model_validate(preferences)


@router.patch(
    "/groups/{group_id}/notification-preferences",
    response_model=GroupNotificationPreferenceResponse,
)
def update_group_notification_preferences(
    group_id: int,
    payload: GroupNotificationPreferencePayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_group_member(db, group_id, user)
    get_or_create_group_notification_preferences(db, user.id, group_id)
    preferences = db.update_group_notification_preferences(
        user.id, group_id, payload.model_dump(exclude_unset=True, exclude_none=True)
    )
    return GroupNotificationPreferenceResponse.model_validate(preferences)


# Meetings


@router.get("/groups/{group_id}/meetings", response_model=list[MeetingResponse])
def list_group_meetings(
    group_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_group_member(db, group_id, user)
    return [MeetingResponse.model_validate(m) for m in db.get_group_meetings(group_id)]


@router.post(
    "/groups/{group_id}/meetings", response_model=MeetingResponse, status_code=201
)
def create_meeting(
    group_id: int,
    payload: CreateMeetingPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    _require_group(db, group_id)
    _require_group_leader(db, group_id, user)
    values = payload.model_dump()
    for key in ("start_time", "end_time", "recurring_until"):
        values[key] = _naive_utc(values[key])
    meeting = db.create_meeting(group_id=group_id, created_by=user.id, **values)
    return MeetingResponse.model_validate(meeting)


@router.get("/meetings/upcoming", response_model=list[MeetingResponse])
def upcoming_meetings(
    user: User = Depends(get_current_user), db: DbClient = Depends(get_db_client)
):
    limit = get_settings().upcoming_meetings_limit
    return [
        MeetingResponse.model_validate(m) for m in db.get_upcoming_meetings(user.id)[:limit]
    ]


@router.patch("/meetings/{meeting_id}", response_model=MeetingResponse)
def update_meeting(
    meeting_id: int,
    payload: UpdateMeetingPayload,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    meeting = db.get_meeting(meeting_id)
    if not meeting:
        raise HTTPException(status_code=404, detail="Meeting not found")
    _require_group_leader(db, meeting.group_id, user)
    changes = payload.model_dump(exclude_unset=True)
    for key in ("start_time", "end_time"):
        if key in changes:
            changes[key] = _naive_utc(changes[key])
    updated = db.update_meeting(meeting_id, changes, actor_id=user.id)
    if not updated:
        raise HTTPException(status_code=404, detail="Meeting not found")
    return MeetingResponse.model_validate(updated)


@router.delete("/meetings/{meeting_id}", response_model=StatusResponse)
def cancel_meeting(
    meeting_id: int,
    user: User = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    meeting = db.get_meeting(meeting_id)
    if not meeting:
        raise HTTPException(status_code=404, detail="Meeting not found")
    _require_group_leader(db, meeting.group_id, user)
    db.delete_meeting(meeting_id, actor_id=user.id)
    return StatusResponse()


# Admin


@router.post("/admin/stale-requests/check", response_model=StaleSweepResponse)
def check_stale_requests(
    user: User = Depends(get_current_user), db: DbClient = Depends(get_db_client)
):
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return StaleSweepResponse(updated=run_sweep(db))
