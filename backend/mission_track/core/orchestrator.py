"""
Mission Track - Orchestrator
============================

Write-side use cases for teams, missions and messages.

Each use case runs the same steps in order:

    authorize -> (transform) -> persist -> fan out -> broadcast

A failing step stops the ones after it, so nothing is broadcast for a
change that was not persisted. Fan-out failures are partial by nature
and do not stop the broadcast. Team creation is the only use case that
compensates (it deletes the team row when the leader membership cannot
be written).
"""

from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import structlog

from mission_track.core import encryption
from mission_track.core.errors import (
    AuthorizationError,
    ConflictError,
    MissionTrackError,
    NotFoundError,
    ValidationError,
)
from mission_track.core.identity import Identity
from mission_track.core.membership import MembershipAuthority
from mission_track.core.models import (
    MemberStatus,
    Message,
    Mission,
    MissionPriority,
    MissionStatus,
    NotificationType,
    Team,
    TeamMember,
    TeamRole,
)
from mission_track.core.notifications import FanoutResult, NotificationFanout
from mission_track.core.queries import render_member, render_message
from mission_track.core.realtime.events import (
    MessageNew,
    MissionStatusUpdate,
    TeamMemberJoined,
    TeamMemberLeft,
    UserStatusUpdate,
)
from mission_track.core.realtime.router import RealtimeRouter
from mission_track.core.schemas import MemberResponse, MessageResponse, MissionResponse
from mission_track.core.store import RecordStore

logger = structlog.get_logger(__name__)


MISSION_FIELDS = ("title", "description", "status", "priority")


# ==========================================================================
# Results
# ==========================================================================

@dataclass
class SentMessage:
    """The stored message plus the per-message key, for the sender only."""

    message: MessageResponse
    encryption_key: Optional[str]
    fanout: FanoutResult


@dataclass
class StatusChange:
    member: TeamMember
    fanout: FanoutResult


@dataclass
class MissionChange:
    mission: Mission
    fanout: Optional[FanoutResult] = None


@dataclass
class MemberChange:
    member: MemberResponse
    fanout: Optional[FanoutResult] = None


# ==========================================================================
# Orchestrator
# ==========================================================================

class MissionMessageOrchestrator:
    """Runs the write-side use cases against the store, fan-out and router."""

    def __init__(
        self,
        store: RecordStore,
        membership: MembershipAuthority,
        fanout: NotificationFanout,
        router: RealtimeRouter,
    ):
        self.store = store
        self.membership = membership
        self.fanout = fanout
        self.router = router

    # ----------------------------------------------------------------------
    # Messages
    # ----------------------------------------------------------------------

    async def send_message(
        self,
        actor: Identity,
        team_id: UUID,
        content: str,
        mission_id: Optional[UUID] = None,
        is_encrypted: bool = True,
    ) -> SentMessage:
        """
        Store a team message and push it to the team room.

        Encrypted messages get a fresh key. The stored and broadcast
        content is the sealed envelope; the key only travels back in the
        returned SentMessage.
        """
        await self.membership.require_member(actor.user_id, team_id)

        if not content or not content.strip():
            raise ValidationError("Message content is required")

        if mission_id is not None:
            mission = await self.store.get_mission(mission_id)
            if mission.team_id != team_id:
                raise ValidationError("Mission does not belong to this team")

        sender = await self.store.get_user(actor.user_id)

        key = None
        stored_content = content
        if is_encrypted:
            envelope = encryption.encrypt_e2e(content)
            stored_content = envelope.sealed_json()
            key = envelope.key

        message = await self.store.create_message(
            team_id=team_id,
            mission_id=mission_id,
            sender_id=actor.user_id,
            content=stored_content,
            is_encrypted=is_encrypted,
        )
        rendered = render_message(message, sender)

        fanout = await self.fanout.notify_team(
            team_id,
            actor.user_id,
            NotificationType.MESSAGE,
            "New Message",
            f"New message from {sender.display_name} in team chat",
        )
        await self.router.broadcast_to_team(team_id, MessageNew(message=rendered, team_id=team_id))

        logger.info(
            "Message sent",
            message_id=str(message.id),
            team_id=str(team_id),
            encrypted=is_encrypted,
            notified=len(fanout.notifications),
        )
        return SentMessage(message=rendered, encryption_key=key, fanout=fanout)

    async def delete_message(self, actor: Identity, message_id: UUID) -> None:
        message: Message = await self.store.get_message(message_id)
        if message.sender_id != actor.user_id and not await self.membership.is_leader(
            actor.user_id, message.team_id
        ):
            raise AuthorizationError("Only the sender or a team leader can delete messages")
        await self.store.delete_message(message_id)
        logger.info("Message deleted", message_id=str(message_id), by=str(actor.user_id))

    # ----------------------------------------------------------------------
    # Member status
    # ----------------------------------------------------------------------

    async def update_status(
        self, actor: Identity, team_id: UUID, status: MemberStatus
    ) -> StatusChange:
        """Set the actor's status in a team. Same-status updates still run every step."""
        await self.membership.require_member(actor.user_id, team_id)
        return await self._apply_status(actor.user_id, team_id, status)

    async def _apply_status(self, user_id: UUID, team_id: UUID, status: MemberStatus) -> StatusChange:
        user = await self.store.get_user(user_id)
        member = await self.store.update_member(team_id, user_id, status=status)

        fanout = await self.fanout.notify_team(
            team_id,
            user_id,
            NotificationType.STATUS_CHANGE,
            "Team Member Status Update",
            f"{user.display_name} status changed to {status.value}",
        )
        await self.router.broadcast_to_team(
            team_id, UserStatusUpdate(user_id=user_id, status=status, team_id=team_id)
        )

        logger.info("Status updated", user_id=str(user_id), team_id=str(team_id), status=status.value)
        return StatusChange(member=member, fanout=fanout)

    async def mark_offline(self, user_id: UUID) -> list[UUID]:
        """
        Disconnect cascade: set the user offline in every team.

        Best-effort per team; a failure in one team is logged and the rest
        are still attempted. Returns the teams that were updated.
        """
        try:
            memberships = await self.store.list_user_memberships(user_id)
        except MissionTrackError as e:
            logger.error("Offline cascade could not load teams", user_id=str(user_id), error=e.message)
            return []

        updated = []
        for member in memberships:
            try:
                await self._apply_status(user_id, member.team_id, MemberStatus.OFFLINE)
            except MissionTrackError as e:
                logger.error(
                    "Failed to mark member offline",
                    user_id=str(user_id),
                    team_id=str(member.team_id),
                    error=e.message,
                )
                continue
            updated.append(member.team_id)
        return updated

    # ----------------------------------------------------------------------
    # Missions
    # ----------------------------------------------------------------------

    async def create_mission(
        self,
        actor: Identity,
        team_id: UUID,
        title: str,
        description: str = "",
        priority: MissionPriority = MissionPriority.MEDIUM,
    ) -> MissionChange:
        await self.membership.require_leader(actor.user_id, team_id, "create missions")

        mission = await self.store.create_mission(
            team_id=team_id,
            title=title,
            description=description,
            priority=priority,
            status=MissionStatus.PLANNED,
            created_by=actor.user_id,
        )

        fanout = await self.fanout.notify_team(
            team_id,
            None,
            NotificationType.MISSION_UPDATE,
            "New Mission Created",
            f'New mission "{title}" has been created for your team',
        )
        await self._broadcast_mission(mission)

        logger.info("Mission created", mission_id=str(mission.id), team_id=str(team_id))
        return MissionChange(mission=mission, fanout=fanout)

    async def update_mission(
        self, actor: Identity, mission_id: UUID, changes: dict[str, Any]
    ) -> MissionChange:
        """Apply the non-null fields of `changes`; notify the team only when status moves."""
        mission = await self.store.get_mission(mission_id)
        await self.membership.require_leader(actor.user_id, mission.team_id, "update missions")

        fields = {k: v for k, v in changes.items() if k in MISSION_FIELDS and v is not None}
        if not fields:
            raise ValidationError("No mission fields to update")

        previous_status = mission.status
        mission = await self.store.update_mission(mission_id, **fields)

        fanout = None
        if mission.status != previous_status:
            fanout = await self.fanout.notify_team(
                mission.team_id,
                None,
                NotificationType.MISSION_UPDATE,
                "Mission Status Updated",
                f'Mission "{mission.title}" status changed to {mission.status.value}',
            )
        await self._broadcast_mission(mission)

        logger.info("Mission updated", mission_id=str(mission_id), fields=sorted(fields))
        return MissionChange(mission=mission, fanout=fanout)

    async def assign_mission(
        self, actor: Identity, mission_id: UUID, user_id: UUID
    ) -> MissionChange:
        mission = await self.store.get_mission(mission_id)
        await self.membership.require_leader(actor.user_id, mission.team_id, "assign missions")
        if not await self.membership.is_member(user_id, mission.team_id):
            raise ValidationError("Assignee must be a member of the mission's team")

        mission = await self.store.update_mission(mission_id, assigned_to=user_id)

        fanout = await self.fanout.notify_user(
            user_id,
            NotificationType.MISSION_UPDATE,
            "Mission Assigned",
            f'You have been assigned to mission "{mission.title}"',
        )
        await self._broadcast_mission(mission)
        return MissionChange(mission=mission, fanout=fanout)

    async def delete_mission(self, actor: Identity, mission_id: UUID) -> None:
        mission = await self.store.get_mission(mission_id)
        await self.membership.require_leader(actor.user_id, mission.team_id, "delete missions")
        await self.store.delete_mission(mission_id)
        logger.info("Mission deleted", mission_id=str(mission_id), team_id=str(mission.team_id))

    async def _broadcast_mission(self, mission: Mission) -> None:
        await self.router.broadcast_to_team(
            mission.team_id,
            MissionStatusUpdate(mission=MissionResponse.model_validate(mission), team_id=mission.team_id),
        )

    # ----------------------------------------------------------------------
    # Teams
    # ----------------------------------------------------------------------

    async def create_team(
        self, actor: Identity, name: str, description: str = ""
    ) -> tuple[Team, TeamMember]:
        """Create a team with the actor as its leader."""
        team = await self.store.create_team(name=name, description=description)
        try:
            leader = await self.store.add_member(
                team.id, actor.user_id, role=TeamRole.LEADER, status=MemberStatus.OFFLINE
            )
        except MissionTrackError:
            logger.warning("Leader membership failed, removing team", team_id=str(team.id))
            try:
                await self.store.delete_team(team.id)
            except MissionTrackError as e:
                logger.error("Could not remove orphaned team", team_id=str(team.id), error=e.message)
            raise

        await self.router.attach_user(actor.user_id, team.id)
        logger.info("Team created", team_id=str(team.id), leader=str(actor.user_id))
        return team, leader

    async def update_team(
        self,
        actor: Identity,
        team_id: UUID,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Team:
        await self.membership.require_leader(actor.user_id, team_id, "update team details")
        changes = {k: v for k, v in (("name", name), ("description", description)) if v is not None}
        if not changes:
            return await self.store.get_team(team_id)
        return await self.store.update_team(team_id, **changes)

    async def add_team_member(
        self,
        actor: Identity,
        team_id: UUID,
        user_id: UUID,
        role: TeamRole = TeamRole.MEMBER,
    ) -> MemberChange:
        await self.membership.require_leader(actor.user_id, team_id, "add members")

        user = await self.store.get_user(user_id)
        if await self.membership.is_member(user_id, team_id):
            raise ConflictError("User is already a member of this team")
        team = await self.store.get_team(team_id)

        member = await self.store.add_member(team_id, user_id, role=role)
        rendered = render_member(member, user)

        fanout = await self.fanout.notify_user(
            user_id,
            NotificationType.ALERT,
            "Team Invitation",
            f'You have been added to team "{team.name}"',
        )
        await self.router.attach_user(user_id, team_id)
        await self.router.broadcast_to_team(team_id, TeamMemberJoined(member=rendered, team_id=team_id))

        logger.info("Member added", team_id=str(team_id), user_id=str(user_id), role=role.value)
        return MemberChange(member=rendered, fanout=fanout)

    async def update_member_role(
        self, actor: Identity, team_id: UUID, user_id: UUID, role: TeamRole
    ) -> MemberChange:
        await self.membership.require_leader(actor.user_id, team_id, "change member roles")

        target = await self.membership.membership(user_id, team_id)
        if target is None:
            raise NotFoundError("Team member not found")
        if role != TeamRole.LEADER:
            await self.membership.ensure_leader_remains(team_id, user_id)

        member = await self.store.change_member_role(team_id, user_id, role)
        user = await self.store.get_user(user_id)

        logger.info("Member role changed", team_id=str(team_id), user_id=str(user_id), role=role.value)
        return MemberChange(member=render_member(member, user))

    async def remove_team_member(self, actor: Identity, team_id: UUID, user_id: UUID) -> None:
        """Remove a member. Leaders may remove anyone; anyone may leave."""
        if actor.user_id != user_id and not await self.membership.is_leader(actor.user_id, team_id):
            raise AuthorizationError(
                "Only team leaders can remove members; members can only remove themselves"
            )

        if not await self.membership.is_member(user_id, team_id):
            raise NotFoundError("Team member not found")
        await self.membership.ensure_leader_remains(team_id, user_id)

        await self.store.remove_member_keeping_leader(team_id, user_id)
        await self.router.detach_user(user_id, team_id)
        await self.router.broadcast_to_team(team_id, TeamMemberLeft(user_id=user_id, team_id=team_id))

        logger.info("Member removed", team_id=str(team_id), user_id=str(user_id), by=str(actor.user_id))

    # ----------------------------------------------------------------------
    # Notifications
    # ----------------------------------------------------------------------

    async def notify_team_bulk(
        self,
        actor: Identity,
        team_id: UUID,
        type: NotificationType,
        title: str,
        content: str = "",
    ) -> FanoutResult:
        await self.membership.require_member(actor.user_id, team_id)
        return await self.fanout.notify_team(team_id, actor.user_id, type, title, content)

    async def notify_user(
        self,
        actor: Identity,
        user_id: UUID,
        type: NotificationType,
        title: str,
        content: str = "",
    ) -> FanoutResult:
        if not actor.is_admin and actor.user_id != user_id:
            raise AuthorizationError("Only administrators can notify other users")
        await self.store.get_user(user_id)
        return await self.fanout.notify_user(user_id, type, title, content)
