"""
Mission Track - Teams API
=========================

Team creation, roster management and member status.
"""

from uuid import UUID

from fastapi import APIRouter, status

from mission_track.api.deps import CurrentIdentity, Orchestrator, Queries
from mission_track.core.schemas import (
    AddMemberRequest,
    ApiResponse,
    MemberResponse,
    StatusUpdateRequest,
    TeamCreate,
    TeamResponse,
    TeamStats,
    TeamUpdate,
    TeamWithMembers,
    UpdateMemberRoleRequest,
    UserTeamResponse,
)

router = APIRouter(prefix="/teams", tags=["Teams"])


# ==========================================================================
# Teams
# ==========================================================================

@router.post(
    "",
    response_model=ApiResponse[TeamResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create a team",
)
async def create_team(
    data: TeamCreate,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[TeamResponse]:
    """Create a team. The caller becomes its first leader."""
    team, _ = await orchestrator.create_team(identity, data.name, data.description)
    return ApiResponse(data=TeamResponse.model_validate(team), message="Team created successfully")


@router.get(
    "/user",
    response_model=ApiResponse[list[UserTeamResponse]],
    summary="List the caller's teams",
)
async def get_user_teams(identity: CurrentIdentity, queries: Queries) -> ApiResponse[list[UserTeamResponse]]:
    return ApiResponse(data=await queries.user_teams(identity))


@router.get(
    "/{team_id}",
    response_model=ApiResponse[TeamWithMembers],
    summary="Get a team with its roster",
)
async def get_team(
    team_id: UUID,
    identity: CurrentIdentity,
    queries: Queries,
) -> ApiResponse[TeamWithMembers]:
    return ApiResponse(data=await queries.team_with_members(identity, team_id))


@router.put(
    "/{team_id}",
    response_model=ApiResponse[TeamResponse],
    summary="Update team details",
)
async def update_team(
    team_id: UUID,
    data: TeamUpdate,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[TeamResponse]:
    team = await orchestrator.update_team(identity, team_id, data.name, data.description)
    return ApiResponse(data=TeamResponse.model_validate(team), message="Team updated successfully")


@router.get(
    "/{team_id}/stats",
    response_model=ApiResponse[TeamStats],
    summary="Team statistics",
)
async def get_team_stats(
    team_id: UUID,
    identity: CurrentIdentity,
    queries: Queries,
) -> ApiResponse[TeamStats]:
    return ApiResponse(data=await queries.team_stats(identity, team_id))


# ==========================================================================
# Members
# ==========================================================================

@router.post(
    "/{team_id}/members",
    response_model=ApiResponse[MemberResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Add a member",
    responses={
        403: {"description": "Caller is not a team leader"},
        404: {"description": "User not found"},
        409: {"description": "User is already a member"},
    },
)
async def add_member(
    team_id: UUID,
    data: AddMemberRequest,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[MemberResponse]:
    change = await orchestrator.add_team_member(identity, team_id, data.user_id, data.role)
    return ApiResponse(data=change.member, message="Member added successfully")


@router.put(
    "/{team_id}/members/{user_id}",
    response_model=ApiResponse[MemberResponse],
    summary="Change a member's role",
)
async def update_member_role(
    team_id: UUID,
    user_id: UUID,
    data: UpdateMemberRoleRequest,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[MemberResponse]:
    change = await orchestrator.update_member_role(identity, team_id, user_id, data.role)
    return ApiResponse(data=change.member, message="Member role updated successfully")


@router.delete(
    "/{team_id}/members/{user_id}",
    response_model=ApiResponse[None],
    summary="Remove a member or leave the team",
    responses={409: {"description": "Last leader cannot leave"}},
)
async def remove_member(
    team_id: UUID,
    user_id: UUID,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[None]:
    await orchestrator.remove_team_member(identity, team_id, user_id)
    message = "Left team successfully" if user_id == identity.user_id else "Member removed successfully"
    return ApiResponse(message=message)


@router.put(
    "/{team_id}/status",
    response_model=ApiResponse[MemberResponse],
    summary="Update the caller's status in a team",
)
async def update_status(
    team_id: UUID,
    data: StatusUpdateRequest,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[MemberResponse]:
    change = await orchestrator.update_status(identity, team_id, data.status)
    return ApiResponse(data=MemberResponse.model_validate(change.member), message="Status updated successfully")
