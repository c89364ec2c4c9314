"""
Mission Track - Pydantic Schemas
================================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from mission_track.core.models import (
    MemberStatus,
    MissionPriority,
    MissionStatus,
    NotificationType,
    TeamRole,
    UserRole,
)


T = TypeVar("T")


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class Pagination(BaseSchema):
    page: int
    limit: int
    total: int
    total_pages: int = Field(alias="totalPages")

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit if limit else 0
        return cls(page=page, limit=limit, total=total, total_pages=total_pages)


class ApiResponse(BaseSchema, Generic[T]):
    """Uniform response envelope."""

    success: bool = True
    data: Optional[T] = None
    error: Optional[str] = None
    message: Optional[str] = None
    pagination: Optional[Pagination] = None


# ==========================================================================
# Auth Schemas
# ==========================================================================

def _check_password(v: str) -> str:
    if not any(c.isupper() for c in v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(c.islower() for c in v):
        raise ValueError("Password must contain at least one lowercase letter")
    if not any(c.isdigit() for c in v):
        raise ValueError("Password must contain at least one digit")
    return v


class ProfileFields(BaseSchema):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    rank: Optional[str] = Field(None, max_length=100)
    department: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    emergency_contact: Optional[str] = Field(None, max_length=255)


class RegisterRequest(BaseSchema):
    """Schema for user registration."""

    email: EmailStr
    password: str = Field(min_length=8, max_length=100)
    role: UserRole = UserRole.RESCUE_TEAM_MEMBER
    profile: ProfileFields

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        """Validate password strength."""
        return _check_password(v)

    @field_validator("role")
    @classmethod
    def forbid_admin_signup(cls, v: UserRole) -> UserRole:
        if v == UserRole.ADMIN:
            raise ValueError("Admin accounts cannot be self-registered")
        return v


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str


class RefreshTokenRequest(BaseSchema):
    refresh_token: str = Field(alias="refreshToken")


class ProfileUpdate(BaseSchema):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    rank: Optional[str] = Field(None, max_length=100)
    department: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    emergency_contact: Optional[str] = Field(None, max_length=255)


class UserSummary(BaseSchema):
    """Public view of a user embedded in other payloads."""

    id: UUID
    email: EmailStr
    first_name: str
    last_name: str
    rank: Optional[str] = None


class UserResponse(UserSummary):
    """Schema for user in responses (no password)."""

    role: UserRole
    department: Optional[str] = None
    phone: Optional[str] = None
    emergency_contact: Optional[str] = None
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TokenResponse(BaseSchema):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until access token expires


class TokenVerification(BaseSchema):
    valid: bool
    user: UserResponse


# ==========================================================================
# Team Schemas
# ==========================================================================

class TeamCreate(BaseSchema):
    name: str = Field(min_length=1, max_length=255)
    description: str = Field("", max_length=2000)


class TeamUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)


class TeamResponse(BaseSchema):
    id: UUID
    name: str
    description: str
    created_at: datetime


class MemberResponse(BaseSchema):
    id: UUID
    team_id: UUID
    user_id: UUID
    role: TeamRole
    status: MemberStatus
    joined_at: datetime
    user: Optional[UserSummary] = None


class TeamWithMembers(TeamResponse):
    members: list[MemberResponse] = []


class UserTeamResponse(MemberResponse):
    team: Optional[TeamResponse] = None


class AddMemberRequest(BaseSchema):
    user_id: UUID = Field(alias="userId")
    role: TeamRole = TeamRole.MEMBER


class UpdateMemberRoleRequest(BaseSchema):
    role: TeamRole


class StatusUpdateRequest(BaseSchema):
    status: MemberStatus


class TeamStats(BaseSchema):
    total_members: int
    total_missions: int
    total_messages: int
    status_counts: dict[str, int]
    role_counts: dict[str, int]
    online_members: int


# ==========================================================================
# Mission Schemas
# ==========================================================================

class MissionCreate(BaseSchema):
    team_id: UUID
    title: str = Field(min_length=1, max_length=255)
    description: str = Field("", max_length=5000)
    priority: MissionPriority = MissionPriority.MEDIUM


class MissionUpdate(BaseSchema):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    status: Optional[MissionStatus] = None
    priority: Optional[MissionPriority] = None


class MissionAssign(BaseSchema):
    user_id: UUID = Field(alias="userId")


class MissionResponse(BaseSchema):
    id: UUID
    team_id: UUID
    title: str
    description: str
    status: MissionStatus
    priority: MissionPriority
    created_by: Optional[UUID] = None
    assigned_to: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime


class MissionDetails(MissionResponse):
    team: Optional[TeamResponse] = None
    created_by_user: Optional[UserSummary] = None
    assigned_user: Optional[UserSummary] = None


class MissionStats(BaseSchema):
    total_missions: int
    status_counts: dict[str, int]
    priority_counts: dict[str, int]
    active_missions: int
    completion_rate: float


# ==========================================================================
# Message Schemas
# ==========================================================================

class MessageCreate(BaseSchema):
    team_id: UUID
    mission_id: Optional[UUID] = None
    content: str = Field(min_length=1, max_length=5000)
    is_encrypted: bool = True


class MessageResponse(BaseSchema):
    id: UUID
    team_id: UUID
    mission_id: Optional[UUID] = None
    sender_id: UUID
    content: str
    is_encrypted: bool
    created_at: datetime
    sender: Optional[UserSummary] = None


class SentMessageResponse(BaseSchema):
    message: MessageResponse
    encryption_key: Optional[str] = Field(None, alias="encryptionKey")


class DecryptRequest(BaseSchema):
    encrypted_message: dict[str, Any] = Field(alias="encryptedMessage")


class DecryptResponse(BaseSchema):
    decrypted_content: str = Field(alias="decryptedContent")


class MessageStats(BaseSchema):
    total_messages: int
    encrypted_messages: int
    unencrypted_messages: int
    recent_messages: int
    messages_by_sender: dict[str, int]
    encryption_rate: float


# ==========================================================================
# Notification Schemas
# ==========================================================================

class NotificationResponse(BaseSchema):
    id: UUID
    user_id: UUID
    type: NotificationType
    title: str
    content: str
    read: bool
    created_at: datetime


class NotificationCreate(BaseSchema):
    user_id: UUID
    type: NotificationType = NotificationType.ALERT
    title: str = Field(min_length=1, max_length=255)
    content: str = Field("", max_length=2000)


class BulkNotificationCreate(BaseSchema):
    team_id: UUID
    type: NotificationType = NotificationType.ALERT
    title: str = Field(min_length=1, max_length=255)
    content: str = Field("", max_length=2000)


class NotificationStats(BaseSchema):
    total: int
    unread: int
    read: int


class FanoutReport(BaseSchema):
    created: int
    delivered_live: int
    failed: list[UUID]


# ==========================================================================
# Misc
# ==========================================================================

class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    realtime_connections: int
    realtime_users: int
