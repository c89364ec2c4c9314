"""
Mission Track - Membership Authority
====================================

The authorization predicate every team-scoped operation goes through.
"""

from uuid import UUID

from mission_track.core.errors import AuthorizationError, ConflictError
from mission_track.core.models import TeamMember, TeamRole
from mission_track.core.store import RecordStore


class MembershipAuthority:
    """Read-through checks against the record store. Holds no state."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def membership(self, user_id: UUID, team_id: UUID) -> TeamMember | None:
        return await self.store.get_membership(team_id, user_id)

    async def is_member(self, user_id: UUID, team_id: UUID) -> bool:
        return await self.membership(user_id, team_id) is not None

    async def is_leader(self, user_id: UUID, team_id: UUID) -> bool:
        member = await self.membership(user_id, team_id)
        return member is not None and member.role == TeamRole.LEADER

    async def require_member(self, user_id: UUID, team_id: UUID) -> TeamMember:
        member = await self.membership(user_id, team_id)
        if member is None:
            raise AuthorizationError("You are not a member of this team")
        return member

    async def require_leader(self, user_id: UUID, team_id: UUID, action: str = "manage this team") -> TeamMember:
        member = await self.membership(user_id, team_id)
        if member is None or member.role != TeamRole.LEADER:
            raise AuthorizationError(f"Only team leaders can {action}")
        return member

    async def team_ids_for(self, user_id: UUID) -> list[UUID]:
        memberships = await self.store.list_user_memberships(user_id)
        return [m.team_id for m in memberships]

    async def ensure_leader_remains(self, team_id: UUID, user_id: UUID) -> None:
        """
        Refuse to strip leadership from the last leader of a team.

        A fast read-only check. The write itself goes through the store's
        guarded operations, which re-check inside the same statement.

        Raises:
            ConflictError: If `user_id` is a leader and no other leader exists
        """
        member = await self.membership(user_id, team_id)
        if member is None or member.role != TeamRole.LEADER:
            return
        if await self.store.count_leaders(team_id) <= 1:
            raise ConflictError(
                "Team must keep at least one leader. Please assign another leader first."
            )
