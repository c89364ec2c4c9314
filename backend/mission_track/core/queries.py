"""
Mission Track - Read Side
=========================

Membership-gated queries behind the HTTP read endpoints, plus the
helpers that render rows with their related users.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from mission_track.core.identity import Identity
from mission_track.core.membership import MembershipAuthority
from mission_track.core.models import (
    MemberStatus,
    Message,
    MissionPriority,
    MissionStatus,
    TeamMember,
    User,
)
from mission_track.core.schemas import (
    MemberResponse,
    MessageResponse,
    MessageStats,
    MissionDetails,
    MissionResponse,
    MissionStats,
    NotificationResponse,
    NotificationStats,
    Pagination,
    TeamResponse,
    TeamStats,
    TeamWithMembers,
    UserSummary,
    UserTeamResponse,
)
from mission_track.core.store import RecordStore


ONLINE_STATUSES = (MemberStatus.SAFE, MemberStatus.IN_PROGRESS, MemberStatus.NEED_BACKUP)
ACTIVE_MISSION_STATUSES = (MissionStatus.PLANNED, MissionStatus.IN_PROGRESS)


# ==========================================================================
# Rendering
# ==========================================================================

def _summary(user: Optional[User]) -> Optional[UserSummary]:
    return UserSummary.model_validate(user) if user is not None else None


def render_member(member: TeamMember, user: Optional[User]) -> MemberResponse:
    return MemberResponse.model_validate(member).model_copy(update={"user": _summary(user)})


def render_message(message: Message, sender: Optional[User]) -> MessageResponse:
    return MessageResponse.model_validate(message).model_copy(update={"sender": _summary(sender)})


async def render_members(store: RecordStore, members: list[TeamMember]) -> list[MemberResponse]:
    users = await store.get_users(m.user_id for m in members)
    return [render_member(m, users.get(m.user_id)) for m in members]


async def render_messages(store: RecordStore, messages: list[Message]) -> list[MessageResponse]:
    users = await store.get_users(m.sender_id for m in messages)
    return [render_message(m, users.get(m.sender_id)) for m in messages]


def _offset(page: int, limit: int) -> int:
    return (page - 1) * limit


# ==========================================================================
# Queries
# ==========================================================================

class QueryService:
    """Read operations; every team-scoped read checks membership first."""

    def __init__(self, store: RecordStore, membership: MembershipAuthority):
        self.store = store
        self.membership = membership

    # Teams

    async def team_with_members(self, actor: Identity, team_id: UUID) -> TeamWithMembers:
        await self.membership.require_member(actor.user_id, team_id)
        team = await self.store.get_team(team_id)
        members = await render_members(self.store, await self.store.list_members(team_id))
        return TeamWithMembers.model_validate(team).model_copy(update={"members": members})

    async def user_teams(self, actor: Identity) -> list[UserTeamResponse]:
        memberships = await self.store.list_user_memberships(actor.user_id)
        teams = []
        for member in memberships:
            team = await self.store.get_team(member.team_id)
            teams.append(
                UserTeamResponse.model_validate(member).model_copy(
                    update={"team": TeamResponse.model_validate(team)}
                )
            )
        return teams

    async def team_stats(self, actor: Identity, team_id: UUID) -> TeamStats:
        await self.membership.require_member(actor.user_id, team_id)
        members = await self.store.list_members(team_id)
        status_counts = Counter(m.status.value for m in members)
        role_counts = Counter(m.role.value for m in members)
        return TeamStats(
            total_members=len(members),
            total_missions=await self.store.count_missions(team_id),
            total_messages=await self.store.count_messages(team_id=team_id),
            status_counts=dict(status_counts),
            role_counts=dict(role_counts),
            online_members=sum(status_counts[s.value] for s in ONLINE_STATUSES),
        )

    # Missions

    async def team_missions(
        self,
        actor: Identity,
        team_id: UUID,
        page: int,
        limit: int,
        status: Optional[MissionStatus] = None,
        priority: Optional[MissionPriority] = None,
    ) -> tuple[list[MissionResponse], Pagination]:
        await self.membership.require_member(actor.user_id, team_id)
        missions = await self.store.list_missions(
            team_id, status=status, priority=priority, limit=limit, offset=_offset(page, limit)
        )
        total = await self.store.count_missions(team_id, status=status, priority=priority)
        return (
            [MissionResponse.model_validate(m) for m in missions],
            Pagination.build(page, limit, total),
        )

    async def mission_details(self, actor: Identity, mission_id: UUID) -> MissionDetails:
        mission = await self.store.get_mission(mission_id)
        await self.membership.require_member(actor.user_id, mission.team_id)
        team = await self.store.get_team(mission.team_id)
        users = await self.store.get_users(
            uid for uid in (mission.created_by, mission.assigned_to) if uid is not None
        )
        return MissionDetails.model_validate(mission).model_copy(
            update={
                "team": TeamResponse.model_validate(team),
                "created_by_user": _summary(users.get(mission.created_by)),
                "assigned_user": _summary(users.get(mission.assigned_to)),
            }
        )

    async def mission_stats(self, actor: Identity, team_id: UUID) -> MissionStats:
        await self.membership.require_member(actor.user_id, team_id)
        missions = await self.store.list_missions(team_id)
        status_counts = Counter(m.status.value for m in missions)
        priority_counts = Counter(m.priority.value for m in missions)
        total = len(missions)
        completed = status_counts[MissionStatus.COMPLETED.value]
        return MissionStats(
            total_missions=total,
            status_counts=dict(status_counts),
            priority_counts=dict(priority_counts),
            active_missions=sum(status_counts[s.value] for s in ACTIVE_MISSION_STATUSES),
            completion_rate=(completed / total) * 100 if total else 0.0,
        )

    # Messages

    async def team_messages(
        self, actor: Identity, team_id: UUID, page: int, limit: int
    ) -> tuple[list[MessageResponse], Pagination]:
        await self.membership.require_member(actor.user_id, team_id)
        messages = await self.store.list_messages(
            team_id=team_id, limit=limit, offset=_offset(page, limit)
        )
        total = await self.store.count_messages(team_id=team_id)
        return await render_messages(self.store, messages), Pagination.build(page, limit, total)

    async def mission_messages(
        self, actor: Identity, mission_id: UUID, page: int, limit: int
    ) -> tuple[list[MessageResponse], Pagination]:
        mission = await self.store.get_mission(mission_id)
        await self.membership.require_member(actor.user_id, mission.team_id)
        messages = await self.store.list_messages(
            mission_id=mission_id, limit=limit, offset=_offset(page, limit)
        )
        total = await self.store.count_messages(mission_id=mission_id)
        return await render_messages(self.store, messages), Pagination.build(page, limit, total)

    async def message_stats(
        self, actor: Identity, team_id: UUID, now: Optional[datetime] = None
    ) -> MessageStats:
        await self.membership.require_member(actor.user_id, team_id)
        messages = await self.store.list_messages(team_id=team_id)
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=24)

        total = len(messages)
        encrypted = sum(1 for m in messages if m.is_encrypted)
        recent = sum(1 for m in messages if _aware(m.created_at) > cutoff)
        by_sender = Counter(str(m.sender_id) for m in messages)

        return MessageStats(
            total_messages=total,
            encrypted_messages=encrypted,
            unencrypted_messages=total - encrypted,
            recent_messages=recent,
            messages_by_sender=dict(by_sender),
            encryption_rate=(encrypted / total) * 100 if total else 0.0,
        )

    # Notifications

    async def notifications(
        self, actor: Identity, page: int, limit: int, unread_only: bool = False
    ) -> tuple[list[NotificationResponse], Pagination]:
        rows = await self.store.list_notifications(
            actor.user_id, unread_only=unread_only, limit=limit, offset=_offset(page, limit)
        )
        total = await self.store.count_notifications(actor.user_id, unread_only=unread_only)
        return (
            [NotificationResponse.model_validate(n) for n in rows],
            Pagination.build(page, limit, total),
        )

    async def notification_stats(self, actor: Identity) -> NotificationStats:
        total = await self.store.count_notifications(actor.user_id)
        unread = await self.store.count_notifications(actor.user_id, unread_only=True)
        return NotificationStats(total=total, unread=unread, read=total - unread)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
