"""
Pydantic schemas for the FastAPI backend.

Request models validate enum fields strictly; the stores still coerce
anything that reaches them by another path.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

UserRole = Literal["regular", "leader", "admin"]
OrganizationRole = Literal["admin", "member"]
GroupRole = Literal["leader", "member"]
GroupCategory = Literal["health", "career", "family", "relationship", "other"]
GroupPrivacy = Literal["open", "request", "invite"]
RequestStatus = Literal["waiting", "answered", "declined"]
RequestUrgency = Literal["low", "medium", "high"]


class RecordModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Users


class CreateUserPayload(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    role: Optional[UserRole] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None
    bio: Optional[str] = None


class UserResponse(RecordModel):
    id: int
    username: str
    name: str
    email: str
    role: str
    phone: Optional[str] = None
    avatar: Optional[str] = None
    bio: Optional[str] = None


# Organizations


class CreateOrganizationPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class OrganizationResponse(RecordModel):
    id: int
    name: str
    description: Optional[str] = None
    created_by: int
    created_at: datetime


class AddOrganizationMemberPayload(BaseModel):
    user_id: int
    role: Optional[OrganizationRole] = None


class InviteOrganizationMemberPayload(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    role: Optional[OrganizationRole] = None


class UpdateOrganizationMemberPayload(BaseModel):
    role: OrganizationRole


class OrganizationMemberResponse(RecordModel):
    id: int
    organization_id: int
    user_id: int
    role: str
    joined_at: datetime


# Groups


class CreateGroupPayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    organization_id: int
    description: Optional[str] = None
    category: Optional[GroupCategory] = None
    privacy: Optional[GroupPrivacy] = None
    leader_rotation: Optional[int] = Field(default=None, ge=0)


class GroupResponse(RecordModel):
    id: int
    name: str
    description: Optional[str] = None
    organization_id: int
    category: str
    privacy: str
    leader_rotation: Optional[int] = None
    created_by: int
    created_at: datetime


class AddGroupMemberPayload(BaseModel):
    user_id: int
    role: Optional[GroupRole] = None


class UpdateGroupMemberPayload(BaseModel):
    role: GroupRole


class GroupMemberResponse(RecordModel):
    id: int
    group_id: int
    user_id: int
    role: str
    joined_at: datetime


# Prayer requests


class CreatePrayerRequestPayload(BaseModel):
    group_id: int
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    urgency: Optional[RequestUrgency] = None
    is_anonymous: bool = False
    follow_up_date: Optional[datetime] = None


class UpdatePrayerRequestPayload(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    urgency: Optional[RequestUrgency] = None
    status: Optional[RequestStatus] = None
    is_anonymous: Optional[bool] = None
    follow_up_date: Optional[datetime] = None
    is_stale: Optional[bool] = None

    @field_validator("title", "urgency", "status", "is_anonymous", "is_stale")
    @classmethod
    def _required_not_null(cls, value):
        # Explicit nulls only; omitted fields never reach this validator.
        if value is None:
            raise ValueError("field cannot be null")
        return value


class PrayerRequestResponse(RecordModel):
    id: int
    group_id: int
    user_id: Optional[int] = None
    title: str
    description: str
    urgency: str
    is_anonymous: bool
    status: str
    follow_up_date: Optional[datetime] = None
    is_stale: bool
    created_at: datetime
    updated_at: datetime
    praying_count: int = 0


# Comments


class CreateCommentPayload(BaseModel):
    text: str = Field(..., min_length=1)
    is_private: bool = False


class CommentResponse(RecordModel):
    id: int
    prayer_request_id: int
    user_id: int
    text: str
    is_private: bool
    created_at: datetime


class PrayingForResponse(BaseModel):
    praying: bool
    count: int


# Notifications


class NotificationResponse(RecordModel):
    id: int
    user_id: int
    type: str
    message: str
    reference_id: Optional[int] = None
    read: bool
    created_at: datetime


class StatusResponse(BaseModel):
    status: str = "ok"


class NotificationPreferencePayload(BaseModel):
    email_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    in_app_notifications: Optional[bool] = None
    prayer_requests: Optional[bool] = None
    group_invitations: Optional[bool] = None
    comments: Optional[bool] = None
    status_updates: Optional[bool] = None
    group_updates: Optional[bool] = None
    stale_prayer_reminders: Optional[bool] = None
    reminder_interval: Optional[int] = Field(default=None, ge=1)


class NotificationPreferenceResponse(RecordModel):
    user_id: int
    email_notifications: bool
    push_notifications: bool
    in_app_notifications: bool
    prayer_requests: bool
    group_invitations: bool
    comments: bool
    status_updates: bool
    group_updates: bool
    stale_prayer_reminders: bool
    reminder_interval: int


class GroupNotificationPreferencePayload(BaseModel):
    muted: Optional[bool] = None
    new_prayer_requests: Optional[bool] = None
    prayer_status_updates: Optional[bool] = None
    new_comments: Optional[bool] = None
    group_updates: Optional[bool] = None
    meeting_reminders: Optional[bool] = None


class GroupNotificationPreferenceResponse(RecordModel):
    user_id: int
    group_id: int
    muted: bool
    new_prayer_requests: bool
    prayer_status_updates: bool
    new_comments: bool
    group_updates: bool
    meeting_reminders: bool


# Meetings


class CreateMeetingPayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    meeting_type: str = Field(..., min_length=1, max_length=40)
    meeting_link: str = Field(..., min_length=1)
    start_time: datetime
    description: Optional[str] = None
    end_time: Optional[datetime] = None
    is_recurring: bool = False
    recurring_pattern: Optional[str] = None
    recurring_day: Optional[int] = Field(default=None, ge=0, le=6)
    recurring_until: Optional[datetime] = None


class UpdateMeetingPayload(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    meeting_type: Optional[str] = Field(default=None, min_length=1, max_length=40)
    meeting_link: Optional[str] = None
    start_time: Optional[datetime] = None
    description: Optional[str] = None
    end_time: Optional[datetime] = None

    @field_validator("title", "meeting_type", "meeting_link", "start_time")
    @classmethod
    def _required_not_null(cls, value):
        if value is None:
            raise ValueError("field cannot be null")
        return value


class MeetingResponse(RecordModel):
    id: int
    group_id: int
    title: str
    description: Optional[str] = None
    meeting_type: str
    meeting_link: str
    start_time: datetime
    end_time: Optional[datetime] = None
    is_recurring: bool
    recurring_pattern: Optional[str] = None
    recurring_day: Optional[int] = None
    recurring_until: Optional[datetime] = None
    parent_meeting_id: Optional[int] = None
    created_by: int
    created_at: datetime


class StaleSweepResponse(BaseModel):
    updated: int
