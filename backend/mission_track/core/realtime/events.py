"""
Realtime Wire Events
====================

Every frame on the socket is JSON `{"event": <name>, "data": <payload>}`.
Each server event is a typed model with a fixed field set.
"""

import json
from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from mission_track.core.models import MemberStatus
from mission_track.core.schemas import (
    MemberResponse,
    MessageResponse,
    MissionResponse,
    NotificationResponse,
)


def team_room(team_id: UUID | str) -> str:
    """Room name for a team."""
    return f"team:{team_id}"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ==========================================================================
# Server -> Client
# ==========================================================================

class ServerEvent(WireModel):
    event: ClassVar[str]

    def payload(self) -> Any:
        return self.model_dump(mode="json", by_alias=True)

    def to_frame(self) -> str:
        return json.dumps({"event": self.event, "data": self.payload()})


class MessageNew(ServerEvent):
    event: ClassVar[str] = "message:new"

    message: MessageResponse
    team_id: UUID


class MissionStatusUpdate(ServerEvent):
    event: ClassVar[str] = "mission:status_update"

    mission: MissionResponse
    team_id: UUID


class UserStatusUpdate(ServerEvent):
    event: ClassVar[str] = "user:status_update"

    user_id: UUID
    status: MemberStatus
    team_id: UUID


class NotificationNew(ServerEvent):
    """Carries the notification itself as the payload."""

    event: ClassVar[str] = "notification:new"

    notification: NotificationResponse

    def payload(self) -> Any:
        return self.notification.model_dump(mode="json")


class TeamMemberJoined(ServerEvent):
    event: ClassVar[str] = "team:member_joined"

    member: MemberResponse
    team_id: UUID


class TeamMemberLeft(ServerEvent):
    event: ClassVar[str] = "team:member_left"

    user_id: UUID
    team_id: UUID


class UserTyping(ServerEvent):
    event: ClassVar[str] = "user_typing"

    user_id: UUID
    is_typing: bool


class ErrorEvent(ServerEvent):
    event: ClassVar[str] = "error"

    message: str


# ==========================================================================
# Client -> Server
# ==========================================================================

JOIN_TEAM = "join_team"
LEAVE_TEAM = "leave_team"
TYPING_START = "typing_start"
TYPING_STOP = "typing_stop"
STATUS_UPDATE = "status_update"
AUTHENTICATE = "authenticate"


class ClientFrame(BaseModel):
    event: str
    data: Any = None


class TeamRef(WireModel):
    team_id: UUID


class StatusUpdatePayload(WireModel):
    team_id: UUID
    status: MemberStatus


class FrameError(ValueError):
    """Inbound frame could not be parsed."""


def parse_frame(raw: str) -> ClientFrame:
    try:
        return ClientFrame.model_validate_json(raw)
    except ValidationError as e:
        raise FrameError("Invalid frame") from e


def parse_team_id(data: Any) -> UUID:
    """`join_team`/`leave_team` send a bare id; typing events send {teamId}."""
    try:
        if isinstance(data, dict):
            return TeamRef.model_validate(data).team_id
        return UUID(str(data))
    except (ValidationError, ValueError) as e:
        raise FrameError("Invalid team id") from e


def parse_status_update(data: Any) -> StatusUpdatePayload:
    try:
        return StatusUpdatePayload.model_validate(data)
    except ValidationError as e:
        raise FrameError("Invalid status update") from e
