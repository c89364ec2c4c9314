"""
Mission Track - Missions API
============================

Mission records for a team. Reads need membership; writes need the
team leader role.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from mission_track.api.deps import CurrentIdentity, Orchestrator, Page, Queries
from mission_track.core.models import MissionPriority, MissionStatus
from mission_track.core.schemas import (
    ApiResponse,
    MissionAssign,
    MissionCreate,
    MissionDetails,
    MissionResponse,
    MissionStats,
    MissionUpdate,
)

router = APIRouter(prefix="/missions", tags=["Missions"])


@router.post(
    "",
    response_model=ApiResponse[MissionResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create a mission",
)
async def create_mission(
    data: MissionCreate,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[MissionResponse]:
    change = await orchestrator.create_mission(
        identity, data.team_id, data.title, data.description, data.priority
    )
    return ApiResponse(
        data=MissionResponse.model_validate(change.mission),
        message="Mission created successfully",
    )


@router.get(
    "/team/{team_id}",
    response_model=ApiResponse[list[MissionResponse]],
    summary="List a team's missions",
)
async def get_team_missions(
    team_id: UUID,
    identity: CurrentIdentity,
    queries: Queries,
    page: Page,
    mission_status: Annotated[Optional[MissionStatus], Query(alias="status")] = None,
    priority: Optional[MissionPriority] = None,
) -> ApiResponse[list[MissionResponse]]:
    missions, pagination = await queries.team_missions(
        identity, team_id, page.page, page.limit, status=mission_status, priority=priority
    )
    return ApiResponse(data=missions, pagination=pagination)


@router.get(
    "/team/{team_id}/stats",
    response_model=ApiResponse[MissionStats],
    summary="Mission statistics for a team",
)
async def get_mission_stats(
    team_id: UUID,
    identity: CurrentIdentity,
    queries: Queries,
) -> ApiResponse[MissionStats]:
    return ApiResponse(data=await queries.mission_stats(identity, team_id))


@router.get(
    "/{mission_id}",
    response_model=ApiResponse[MissionDetails],
    summary="Get mission details",
)
async def get_mission(
    mission_id: UUID,
    identity: CurrentIdentity,
    queries: Queries,
) -> ApiResponse[MissionDetails]:
    return ApiResponse(data=await queries.mission_details(identity, mission_id))


@router.put(
    "/{mission_id}",
    response_model=ApiResponse[MissionResponse],
    summary="Update a mission",
)
async def update_mission(
    mission_id: UUID,
    data: MissionUpdate,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[MissionResponse]:
    change = await orchestrator.update_mission(
        identity, mission_id, data.model_dump(exclude_unset=True)
    )
    return ApiResponse(
        data=MissionResponse.model_validate(change.mission),
        message="Mission updated successfully",
    )


@router.post(
    "/{mission_id}/assign",
    response_model=ApiResponse[MissionResponse],
    summary="Assign a mission to a team member",
)
async def assign_mission(
    mission_id: UUID,
    data: MissionAssign,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[MissionResponse]:
    change = await orchestrator.assign_mission(identity, mission_id, data.user_id)
    return ApiResponse(
        data=MissionResponse.model_validate(change.mission),
        message="Mission assigned successfully",
    )


@router.delete(
    "/{mission_id}",
    response_model=ApiResponse[None],
    summary="Delete a mission",
)
async def delete_mission(
    mission_id: UUID,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[None]:
    await orchestrator.delete_mission(identity, mission_id)
    return ApiResponse(message="Mission deleted successfully")
