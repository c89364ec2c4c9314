"""
Mission Track - Notifications API
=================================

A user's notification inbox, plus endpoints that push alerts to a user
or to a whole team.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, status

from mission_track.api.deps import CurrentIdentity, Orchestrator, Page, Queries, Store
from mission_track.core.errors import PersistenceError
from mission_track.core.schemas import (
    ApiResponse,
    BulkNotificationCreate,
    FanoutReport,
    NotificationCreate,
    NotificationResponse,
    NotificationStats,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ==========================================================================
# Inbox
# ==========================================================================

@router.get(
    "",
    response_model=ApiResponse[list[NotificationResponse]],
    summary="List the caller's notifications",
)
async def get_notifications(
    identity: CurrentIdentity,
    queries: Queries,
    page: Page,
    unread_only: Annotated[bool, Query(alias="unreadOnly")] = False,
) -> ApiResponse[list[NotificationResponse]]:
    notifications, pagination = await queries.notifications(
        identity, page.page, page.limit, unread_only=unread_only
    )
    return ApiResponse(data=notifications, pagination=pagination)


@router.get(
    "/stats",
    response_model=ApiResponse[NotificationStats],
    summary="Notification counts",
)
async def get_notification_stats(
    identity: CurrentIdentity,
    queries: Queries,
) -> ApiResponse[NotificationStats]:
    return ApiResponse(data=await queries.notification_stats(identity))


@router.put(
    "/read-all",
    response_model=ApiResponse[dict[str, int]],
    summary="Mark every notification read",
)
async def mark_all_read(identity: CurrentIdentity, store: Store) -> ApiResponse[dict[str, int]]:
    updated = await store.mark_all_notifications_read(identity.user_id)
    return ApiResponse(data={"updated": updated}, message="All notifications marked as read")


@router.put(
    "/{notification_id}/read",
    response_model=ApiResponse[NotificationResponse],
    summary="Mark one notification read",
)
async def mark_read(
    notification_id: UUID,
    identity: CurrentIdentity,
    store: Store,
) -> ApiResponse[NotificationResponse]:
    notification = await store.mark_notification_read(notification_id, identity.user_id)
    return ApiResponse(
        data=NotificationResponse.model_validate(notification),
        message="Notification marked as read",
    )


@router.delete(
    "/{notification_id}",
    response_model=ApiResponse[None],
    summary="Delete a notification",
)
async def delete_notification(
    notification_id: UUID,
    identity: CurrentIdentity,
    store: Store,
) -> ApiResponse[None]:
    await store.delete_notification(notification_id, identity.user_id)
    return ApiResponse(message="Notification deleted successfully")


# ==========================================================================
# Sending
# ==========================================================================

@router.post(
    "",
    response_model=ApiResponse[NotificationResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Notify one user",
    responses={403: {"description": "Only admins can notify other users"}},
)
async def create_notification(
    data: NotificationCreate,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[NotificationResponse]:
    result = await orchestrator.notify_user(identity, data.user_id, data.type, data.title, data.content)
    if not result.notifications:
        raise PersistenceError("Failed to create notification")
    return ApiResponse(
        data=NotificationResponse.model_validate(result.notifications[0]),
        message="Notification created successfully",
    )


@router.post(
    "/bulk",
    response_model=ApiResponse[FanoutReport],
    status_code=status.HTTP_201_CREATED,
    summary="Notify the rest of a team",
)
async def create_bulk_notifications(
    data: BulkNotificationCreate,
    identity: CurrentIdentity,
    orchestrator: Orchestrator,
) -> ApiResponse[FanoutReport]:
    result = await orchestrator.notify_team_bulk(
        identity, data.team_id, data.type, data.title, data.content
    )
    report = FanoutReport(
        created=len(result.notifications),
        delivered_live=len(result.delivered_live),
        failed=list(result.failed),
    )
    return ApiResponse(data=report, message=f"{report.created} notifications created")
