"""
Mission Track - Notification Fan-out
====================================

Creates persisted notification rows and pushes `notification:new` to
recipients that are online. Rows are written first; live delivery is a
best-effort extra on top of them.
"""

from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

import structlog

from mission_track.core.errors import MissionTrackError
from mission_track.core.models import Notification, NotificationType
from mission_track.core.realtime.events import NotificationNew
from mission_track.core.realtime.router import RealtimeRouter
from mission_track.core.schemas import NotificationResponse
from mission_track.core.store import RecordStore

logger = structlog.get_logger(__name__)


@dataclass
class FanoutResult:
    """Outcome of one fan-out call, per recipient."""

    notifications: list[Notification] = field(default_factory=list)
    delivered_live: list[UUID] = field(default_factory=list)
    failed: dict[UUID, str] = field(default_factory=dict)

    @property
    def recipients(self) -> list[UUID]:
        return [n.user_id for n in self.notifications]

    @property
    def complete(self) -> bool:
        return not self.failed


class NotificationFanout:
    """Notification creation and delivery targeting."""

    def __init__(self, store: RecordStore, router: RealtimeRouter):
        self.store = store
        self.router = router

    async def notify_team(
        self,
        team_id: UUID,
        actor_user_id: Optional[UUID],
        type: NotificationType,
        title: str,
        content: str = "",
    ) -> FanoutResult:
        """
        Notify every member of a team except the actor.

        Pass `actor_user_id=None` to include the whole roster. A failure
        for one recipient is recorded in the result and does not stop the
        others.
        """
        members = await self.store.list_members(team_id)
        recipients = [m.user_id for m in members if m.user_id != actor_user_id]

        result = FanoutResult()
        for user_id in recipients:
            await self._notify_one(result, user_id, type, title, content)

        if result.failed:
            logger.warning(
                "Partial notification fan-out",
                team_id=str(team_id),
                notification_type=type.value,
                succeeded=len(result.notifications),
                failed={str(k): v for k, v in result.failed.items()},
            )
        else:
            logger.debug(
                "Notification fan-out complete",
                team_id=str(team_id),
                notification_type=type.value,
                recipients=len(result.notifications),
                live=len(result.delivered_live),
            )
        return result

    async def notify_user(
        self,
        user_id: UUID,
        type: NotificationType,
        title: str,
        content: str = "",
    ) -> FanoutResult:
        result = FanoutResult()
        await self._notify_one(result, user_id, type, title, content)
        if result.failed:
            logger.warning("Notification failed", user_id=str(user_id), error=result.failed[user_id])
        return result

    async def _notify_one(
        self,
        result: FanoutResult,
        user_id: UUID,
        type: NotificationType,
        title: str,
        content: str,
    ) -> None:
        try:
            notification = await self.store.create_notification(
                user_id=user_id,
                type=type,
                title=title,
                content=content,
            )
        except MissionTrackError as e:
            result.failed[user_id] = e.message
            return

        result.notifications.append(notification)
        event = NotificationNew(notification=NotificationResponse.model_validate(notification))
        if await self.router.unicast(user_id, event):
            result.delivered_live.append(user_id)
