"""
Mission Track - Record Store
============================

Durable storage contract for users, teams, memberships, missions,
messages and notifications, plus the SQLAlchemy implementation.

Every operation either completes or raises:
- NotFoundError for keyed reads/updates of rows that do not exist
- ConflictError for unique constraint violations
- PersistenceError for any other storage failure
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from mission_track.core.errors import ConflictError, NotFoundError, PersistenceError
from mission_track.core.models import (
    MemberStatus,
    Message,
    Mission,
    MissionPriority,
    MissionStatus,
    Notification,
    NotificationType,
    Team,
    TeamMember,
    TeamRole,
    User,
)

logger = structlog.get_logger(__name__)


class RecordStore(ABC):
    """Narrow persistence contract consumed by the core."""

    # Users
    @abstractmethod
    async def create_user(self, **fields: Any) -> User: ...

    @abstractmethod
    async def get_user(self, user_id: UUID) -> User: ...

    @abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    async def get_users(self, user_ids: Iterable[UUID]) -> dict[UUID, User]: ...

    @abstractmethod
    async def update_user(self, user_id: UUID, **changes: Any) -> User: ...

    # Teams
    @abstractmethod
    async def create_team(self, name: str, description: str = "") -> Team: ...

    @abstractmethod
    async def get_team(self, team_id: UUID) -> Team: ...

    @abstractmethod
    async def update_team(self, team_id: UUID, **changes: Any) -> Team: ...

    @abstractmethod
    async def delete_team(self, team_id: UUID) -> None: ...

    # Memberships
    @abstractmethod
    async def add_member(
        self,
        team_id: UUID,
        user_id: UUID,
        role: TeamRole = TeamRole.MEMBER,
        status: MemberStatus = MemberStatus.OFFLINE,
    ) -> TeamMember: ...

    @abstractmethod
    async def get_membership(self, team_id: UUID, user_id: UUID) -> Optional[TeamMember]: ...

    @abstractmethod
    async def list_members(self, team_id: UUID) -> list[TeamMember]: ...

    @abstractmethod
    async def list_user_memberships(self, user_id: UUID) -> list[TeamMember]: ...

    @abstractmethod
    async def update_member(self, team_id: UUID, user_id: UUID, **changes: Any) -> TeamMember: ...

    @abstractmethod
    async def count_leaders(self, team_id: UUID) -> int: ...

    @abstractmethod
    async def remove_member_keeping_leader(self, team_id: UUID, user_id: UUID) -> None:
        """Remove a member unless that would leave the team without a leader."""

    @abstractmethod
    async def change_member_role(self, team_id: UUID, user_id: UUID, role: TeamRole) -> TeamMember:
        """Change a member's role unless that would demote the team's last leader."""

    # Missions
    @abstractmethod
    async def create_mission(self, **fields: Any) -> Mission: ...

    @abstractmethod
    async def get_mission(self, mission_id: UUID) -> Mission: ...

    @abstractmethod
    async def update_mission(self, mission_id: UUID, **changes: Any) -> Mission: ...

    @abstractmethod
    async def delete_mission(self, mission_id: UUID) -> None: ...

    @abstractmethod
    async def list_missions(
        self,
        team_id: UUID,
        status: Optional[MissionStatus] = None,
        priority: Optional[MissionPriority] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Mission]: ...

    @abstractmethod
    async def count_missions(
        self,
        team_id: UUID,
        status: Optional[MissionStatus] = None,
        priority: Optional[MissionPriority] = None,
    ) -> int: ...

    # Messages
    @abstractmethod
    async def create_message(self, **fields: Any) -> Message: ...

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Message: ...

    @abstractmethod
    async def delete_message(self, message_id: UUID) -> None: ...

    @abstractmethod
    async def list_messages(
        self,
        team_id: Optional[UUID] = None,
        mission_id: Optional[UUID] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Message]: ...

    @abstractmethod
    async def count_messages(
        self,
        team_id: Optional[UUID] = None,
        mission_id: Optional[UUID] = None,
    ) -> int: ...

    # Notifications
    @abstractmethod
    async def create_notification(
        self,
        user_id: UUID,
        type: NotificationType,
        title: str,
        content: str = "",
    ) -> Notification: ...

    @abstractmethod
    async def list_notifications(
        self,
        user_id: UUID,
        unread_only: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Notification]: ...

    @abstractmethod
    async def count_notifications(self, user_id: UUID, unread_only: bool = False) -> int: ...

    @abstractmethod
    async def mark_notification_read(self, notification_id: UUID, user_id: UUID) -> Notification: ...

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: UUID) -> int: ...

    @abstractmethod
    async def delete_notification(self, notification_id: UUID, user_id: UUID) -> None: ...


# ==========================================================================
# SQLAlchemy Implementation
# ==========================================================================

class SqlRecordStore(RecordStore):
    """RecordStore backed by SQLAlchemy async sessions, one commit per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
            except IntegrityError as e:
                await session.rollback()
                logger.warning("Integrity violation", error=str(e.orig))
                raise ConflictError("Resource already exists") from e
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Storage failure", error=str(e))
                raise PersistenceError() from e
            except Exception:
                await session.rollback()
                raise

    async def _add(self, obj: Any) -> Any:
        async with self._session() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
            return obj

    async def _get(self, model: type, pk: UUID, label: str) -> Any:
        async with self._session() as session:
            obj = await session.get(model, pk)
            if obj is None:
                raise NotFoundError(f"{label} not found")
            return obj

    async def _update(self, model: type, pk: UUID, label: str, changes: dict) -> Any:
        async with self._session() as session:
            obj = await session.get(model, pk)
            if obj is None:
                raise NotFoundError(f"{label} not found")
            for key, value in changes.items():
                setattr(obj, key, value)
            await session.commit()
            await session.refresh(obj)
            return obj

    async def _delete(self, model: type, pk: UUID, label: str) -> None:
        async with self._session() as session:
            result = await session.execute(delete(model).where(model.id == pk))
            if result.rowcount == 0:
                raise NotFoundError(f"{label} not found")
            await session.commit()

    # ----------------------------------------------------------------------
    # Users
    # ----------------------------------------------------------------------

    async def create_user(self, **fields: Any) -> User:
        return await self._add(User(**fields))

    async def get_user(self, user_id: UUID) -> User:
        return await self._get(User, user_id, "User")

    async def find_user_by_email(self, email: str) -> Optional[User]:
        async with self._session() as session:
            result = await session.execute(select(User).where(User.email == email.lower()))
            return result.scalar_one_or_none()

    async def get_users(self, user_ids: Iterable[UUID]) -> dict[UUID, User]:
        ids = set(user_ids)
        if not ids:
            return {}
        async with self._session() as session:
            result = await session.execute(select(User).where(User.id.in_(ids)))
            return {user.id: user for user in result.scalars()}

    async def update_user(self, user_id: UUID, **changes: Any) -> User:
        return await self._update(User, user_id, "User", changes)

    # ----------------------------------------------------------------------
    # Teams
    # ----------------------------------------------------------------------

    async def create_team(self, name: str, description: str = "") -> Team:
        return await self._add(Team(name=name, description=description))

    async def get_team(self, team_id: UUID) -> Team:
        return await self._get(Team, team_id, "Team")

    async def update_team(self, team_id: UUID, **changes: Any) -> Team:
        return await self._update(Team, team_id, "Team", changes)

    async def delete_team(self, team_id: UUID) -> None:
        await self._delete(Team, team_id, "Team")

    # ----------------------------------------------------------------------
    # Memberships
    # ----------------------------------------------------------------------

    async def add_member(
        self,
        team_id: UUID,
        user_id: UUID,
        role: TeamRole = TeamRole.MEMBER,
        status: MemberStatus = MemberStatus.OFFLINE,
    ) -> TeamMember:
        return await self._add(
            TeamMember(team_id=team_id, user_id=user_id, role=role, status=status)
        )

    async def get_membership(self, team_id: UUID, user_id: UUID) -> Optional[TeamMember]:
        async with self._session() as session:
            result = await session.execute(
                select(TeamMember).where(
                    TeamMember.team_id == team_id,
                    TeamMember.user_id == user_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_members(self, team_id: UUID) -> list[TeamMember]:
        async with self._session() as session:
            result = await session.execute(
                select(TeamMember)
                .where(TeamMember.team_id == team_id)
                .order_by(TeamMember.joined_at)
            )
            return list(result.scalars())

    async def list_user_memberships(self, user_id: UUID) -> list[TeamMember]:
        async with self._session() as session:
            result = await session.execute(
                select(TeamMember)
                .where(TeamMember.user_id == user_id)
                .order_by(TeamMember.joined_at)
            )
            return list(result.scalars())

    async def update_member(self, team_id: UUID, user_id: UUID, **changes: Any) -> TeamMember:
        async with self._session() as session:
            result = await session.execute(
                select(TeamMember).where(
                    TeamMember.team_id == team_id,
                    TeamMember.user_id == user_id,
                )
            )
            member = result.scalar_one_or_none()
            if member is None:
                raise NotFoundError("Team member not found")
            for key, value in changes.items():
                setattr(member, key, value)
            await session.commit()
            await session.refresh(member)
            return member

    async def count_leaders(self, team_id: UUID) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(TeamMember)
                .where(TeamMember.team_id == team_id, TeamMember.role == TeamRole.LEADER)
            )
            return result.scalar_one()

    # Guarded writes: the leader count is evaluated inside the write itself.

    @staticmethod
    def _keeps_a_leader(team_id: UUID):
        other = aliased(TeamMember)
        leaders = (
            select(func.count())
            .select_from(other)
            .where(other.team_id == team_id, other.role == TeamRole.LEADER)
            .scalar_subquery()
        )
        return or_(TeamMember.role != TeamRole.LEADER, leaders > 1)

    async def _lock_leaders(self, session: AsyncSession, team_id: UUID) -> None:
        # Row locks for backends that have them; SQLite locks the database on write.
        await session.execute(
            select(TeamMember.id)
            .where(TeamMember.team_id == team_id, TeamMember.role == TeamRole.LEADER)
            .with_for_update()
        )

    async def _explain_refusal(self, session: AsyncSession, team_id: UUID, user_id: UUID):
        result = await session.execute(
            select(TeamMember.id).where(
                TeamMember.team_id == team_id,
                TeamMember.user_id == user_id,
            )
        )
        if result.scalar_one_or_none() is None:
            return NotFoundError("Team member not found")
        return ConflictError(
            "Team must keep at least one leader. Please assign another leader first."
        )

    async def remove_member_keeping_leader(self, team_id: UUID, user_id: UUID) -> None:
        async with self._session() as session:
            await self._lock_leaders(session, team_id)
            result = await session.execute(
                delete(TeamMember)
                .where(
                    TeamMember.team_id == team_id,
                    TeamMember.user_id == user_id,
                    self._keeps_a_leader(team_id),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise await self._explain_refusal(session, team_id, user_id)
            await session.commit()

    async def change_member_role(self, team_id: UUID, user_id: UUID, role: TeamRole) -> TeamMember:
        criteria = [TeamMember.team_id == team_id, TeamMember.user_id == user_id]
        if role != TeamRole.LEADER:
            criteria.append(self._keeps_a_leader(team_id))

        async with self._session() as session:
            await self._lock_leaders(session, team_id)
            result = await session.execute(
                update(TeamMember)
                .where(*criteria)
                .values(role=role)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise await self._explain_refusal(session, team_id, user_id)
            await session.commit()

            result = await session.execute(
                select(TeamMember).where(
                    TeamMember.team_id == team_id,
                    TeamMember.user_id == user_id,
                )
            )
            return result.scalar_one()

    # ----------------------------------------------------------------------
    # Missions
    # ----------------------------------------------------------------------

    async def create_mission(self, **fields: Any) -> Mission:
        return await self._add(Mission(**fields))

    async def get_mission(self, mission_id: UUID) -> Mission:
        return await self._get(Mission, mission_id, "Mission")

    async def update_mission(self, mission_id: UUID, **changes: Any) -> Mission:
        return await self._update(Mission, mission_id, "Mission", changes)

    async def delete_mission(self, mission_id: UUID) -> None:
        async with self._session() as session:
            # Detach chat history first; SQLite does not enforce ON DELETE SET NULL.
            await session.execute(
                update(Message).where(Message.mission_id == mission_id).values(mission_id=None)
            )
            result = await session.execute(delete(Mission).where(Mission.id == mission_id))
            if result.rowcount == 0:
                raise NotFoundError("Mission not found")
            await session.commit()

    @staticmethod
    def _mission_filters(
        team_id: UUID,
        status: Optional[MissionStatus],
        priority: Optional[MissionPriority],
    ) -> list:
        filters = [Mission.team_id == team_id]
        if status is not None:
            filters.append(Mission.status == status)
        if priority is not None:
            filters.append(Mission.priority == priority)
        return filters

    async def list_missions(
        self,
        team_id: UUID,
        status: Optional[MissionStatus] = None,
        priority: Optional[MissionPriority] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Mission]:
        query = (
            select(Mission)
            .where(*self._mission_filters(team_id, status, priority))
            .order_by(Mission.created_at.desc())
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars())

    async def count_missions(
        self,
        team_id: UUID,
        status: Optional[MissionStatus] = None,
        priority: Optional[MissionPriority] = None,
    ) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(Mission)
                .where(*self._mission_filters(team_id, status, priority))
            )
            return result.scalar_one()

    # ----------------------------------------------------------------------
    # Messages
    # ----------------------------------------------------------------------

    async def create_message(self, **fields: Any) -> Message:
        return await self._add(Message(**fields))

    async def get_message(self, message_id: UUID) -> Message:
        return await self._get(Message, message_id, "Message")

    async def delete_message(self, message_id: UUID) -> None:
        await self._delete(Message, message_id, "Message")

    @staticmethod
    def _message_filters(team_id: Optional[UUID], mission_id: Optional[UUID]) -> list:
        filters = []
        if team_id is not None:
            filters.append(Message.team_id == team_id)
        if mission_id is not None:
            filters.append(Message.mission_id == mission_id)
        return filters

    async def list_messages(
        self,
        team_id: Optional[UUID] = None,
        mission_id: Optional[UUID] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Message]:
        query = (
            select(Message)
            .where(*self._message_filters(team_id, mission_id))
            .order_by(Message.created_at.desc())
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars())

    async def count_messages(
        self,
        team_id: Optional[UUID] = None,
        mission_id: Optional[UUID] = None,
    ) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(Message)
                .where(*self._message_filters(team_id, mission_id))
            )
            return result.scalar_one()

    # ----------------------------------------------------------------------
    # Notifications
    # ----------------------------------------------------------------------

    async def create_notification(
        self,
        user_id: UUID,
        type: NotificationType,
        title: str,
        content: str = "",
    ) -> Notification:
        return await self._add(
            Notification(user_id=user_id, type=type, title=title, content=content or "")
        )

    async def list_notifications(
        self,
        user_id: UUID,
        unread_only: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.read.is_(False))
        query = query.order_by(Notification.created_at.desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars())

    async def count_notifications(self, user_id: UUID, unread_only: bool = False) -> int:
        query = select(func.count()).select_from(Notification).where(
            Notification.user_id == user_id
        )
        if unread_only:
            query = query.where(Notification.read.is_(False))
        async with self._session() as session:
            result = await session.execute(query)
            return result.scalar_one()

    async def mark_notification_read(self, notification_id: UUID, user_id: UUID) -> Notification:
        async with self._session() as session:
            notification = await session.get(Notification, notification_id)
            if notification is None or notification.user_id != user_id:
                raise NotFoundError("Notification not found")
            notification.read = True
            await session.commit()
            await session.refresh(notification)
            return notification

    async def mark_all_notifications_read(self, user_id: UUID) -> int:
        async with self._session() as session:
            result = await session.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.read.is_(False))
                .values(read=True)
            )
            await session.commit()
            return result.rowcount

    async def delete_notification(self, notification_id: UUID, user_id: UUID) -> None:
        async with self._session() as session:
            result = await session.execute(
                delete(Notification).where(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                )
            )
            if result.rowcount == 0:
                raise NotFoundError("Notification not found")
            await session.commit()

