"""
Realtime Router
===============

Connection registry, team rooms and event distribution.

One RealtimeRouter instance is created per process and passed by
reference to everything that needs to push events. All registry and room
mutations happen under a single asyncio.Lock.

Delivery goes through a bounded outbox per session. Broadcasts enqueue
to every session of a room while holding the lock, so all sessions in a
room see that room's events in the order they were emitted.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog

from mission_track.core.config import settings
from mission_track.core.errors import MissionTrackError
from mission_track.core.identity import Identity, IdentityProvider
from mission_track.core.membership import MembershipAuthority
from mission_track.core.realtime.events import ErrorEvent, ServerEvent, team_room

logger = structlog.get_logger(__name__)


# ==========================================================================
# Session
# ==========================================================================

@dataclass(eq=False)
class ClientSession:
    """One live connection and the rooms it has joined."""

    identity: Identity
    websocket: Any = None
    outbox_size: int = settings.WS_OUTBOX_SIZE
    id: str = field(default_factory=lambda: str(uuid4()))
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rooms: set[str] = field(default_factory=set)
    is_active: bool = True

    def __post_init__(self) -> None:
        self.outbox: asyncio.Queue[ServerEvent] = asyncio.Queue(maxsize=self.outbox_size)
        self.overflowed = asyncio.Event()

    @property
    def user_id(self) -> UUID:
        return self.identity.user_id

    def deliver(self, event: ServerEvent) -> bool:
        """Queue an event for the writer. Never blocks."""
        if not self.is_active:
            return False
        try:
            self.outbox.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning(
                "Session outbox full, dropping connection",
                session_id=self.id,
                user_id=str(self.user_id),
            )
            self.is_active = False
            self.overflowed.set()
            return False

    def drain(self) -> list[ServerEvent]:
        """Take everything currently queued."""
        events = []
        while not self.outbox.empty():
            events.append(self.outbox.get_nowait())
        return events


# ==========================================================================
# Router
# ==========================================================================

class RealtimeRouter:
    """Routes events to the sessions allowed to see them."""

    def __init__(
        self,
        membership: MembershipAuthority,
        identity_provider: IdentityProvider,
        outbox_size: int = settings.WS_OUTBOX_SIZE,
    ):
        self.membership = membership
        self.identity_provider = identity_provider
        self.outbox_size = outbox_size

        self._sessions: dict[str, ClientSession] = {}
        self._user_sessions: dict[UUID, str] = {}
        self._rooms: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    # ----------------------------------------------------------------------
    # Connection lifecycle
    # ----------------------------------------------------------------------

    async def authenticate(self, credential: Optional[str]) -> Identity:
        """Resolve a handshake credential; raises AuthenticationError."""
        return await self.identity_provider.resolve(credential)

    async def on_connect(self, identity: Identity, websocket: Any = None) -> ClientSession:
        """
        Register a session and join it to the rooms of the user's teams.

        The room set is a snapshot taken now; it only changes afterwards
        through join_room/leave_room or server-side member changes.
        """
        try:
            team_ids = await self.membership.team_ids_for(identity.user_id)
        except MissionTrackError as e:
            logger.error("Failed to load user teams", user_id=str(identity.user_id), error=e.message)
            team_ids = []

        session = ClientSession(identity=identity, websocket=websocket, outbox_size=self.outbox_size)

        async with self._lock:
            previous = self._user_sessions.get(identity.user_id)
            self._sessions[session.id] = session
            self._user_sessions[identity.user_id] = session.id
            for team_id in team_ids:
                self._add_to_room(session, team_room(team_id))

        if previous is not None:
            logger.info("Replacing previous session", user_id=str(identity.user_id), previous=previous)
        logger.info(
            "Session connected",
            session_id=session.id,
            user=identity.email,
            rooms=len(session.rooms),
            total=len(self._sessions),
        )
        return session

    async def on_disconnect(self, session: ClientSession) -> None:
        """Remove the session from the registry and from every room."""
        async with self._lock:
            session.is_active = False
            self._sessions.pop(session.id, None)
            if self._user_sessions.get(session.user_id) == session.id:
                del self._user_sessions[session.user_id]
            for room in list(session.rooms):
                self._remove_from_room(session, room)

        logger.info("Session disconnected", session_id=session.id, total=len(self._sessions))

    # ----------------------------------------------------------------------
    # Rooms
    # ----------------------------------------------------------------------

    def _add_to_room(self, session: ClientSession, room: str) -> None:
        session.rooms.add(room)
        self._rooms.setdefault(room, set()).add(session.id)

    def _remove_from_room(self, session: ClientSession, room: str) -> None:
        session.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(session.id)
            if not members:
                del self._rooms[room]

    async def join_room(self, session: ClientSession, team_id: UUID) -> bool:
        """
        Join a team room after re-checking membership.

        A refusal is reported to the session as an `error` event; the
        connection stays open.
        """
        try:
            allowed = await self.membership.is_member(session.user_id, team_id)
        except MissionTrackError as e:
            logger.error("Membership check failed", team_id=str(team_id), error=e.message)
            session.deliver(ErrorEvent(message="Failed to join team"))
            return False

        if not allowed:
            session.deliver(ErrorEvent(message="Not a team member"))
            return False

        async with self._lock:
            if session.id not in self._sessions:
                return False
            self._add_to_room(session, team_room(team_id))

        logger.debug("Joined room", session_id=session.id, team_id=str(team_id))
        return True

    async def leave_room(self, session: ClientSession, team_id: UUID) -> None:
        async with self._lock:
            self._remove_from_room(session, team_room(team_id))

    async def attach_user(self, user_id: UUID, team_id: UUID) -> bool:
        """Put a user's live session into a team room (member just added)."""
        async with self._lock:
            session = self._session_for_locked(user_id)
            if session is None:
                return False
            self._add_to_room(session, team_room(team_id))
            return True

    async def detach_user(self, user_id: UUID, team_id: UUID) -> bool:
        """Take a user's live session out of a team room (member removed)."""
        async with self._lock:
            session = self._session_for_locked(user_id)
            if session is None:
                return False
            self._remove_from_room(session, team_room(team_id))
            return True

    # ----------------------------------------------------------------------
    # Delivery
    # ----------------------------------------------------------------------

    async def broadcast(
        self,
        room: str,
        event: ServerEvent,
        exclude_session_id: Optional[str] = None,
    ) -> int:
        """Deliver to every session in the room. Returns the number reached."""
        delivered = 0
        async with self._lock:
            for session_id in self._rooms.get(room, ()):
                if session_id == exclude_session_id:
                    continue
                session = self._sessions.get(session_id)
                if session is not None and session.deliver(event):
                    delivered += 1

        logger.debug("Broadcast", room=room, event_name=event.event, delivered=delivered)
        return delivered

    async def broadcast_excluding(
        self,
        room: str,
        event: ServerEvent,
        excluded_session_id: str,
    ) -> int:
        """Broadcast without echoing back to the originating session."""
        return await self.broadcast(room, event, exclude_session_id=excluded_session_id)

    async def broadcast_to_team(self, team_id: UUID, event: ServerEvent) -> int:
        return await self.broadcast(team_room(team_id), event)

    async def unicast(self, user_id: UUID, event: ServerEvent) -> bool:
        """Deliver to the user's current session; False when offline."""
        async with self._lock:
            session = self._session_for_locked(user_id)
            if session is None:
                return False
            return session.deliver(event)

    # ----------------------------------------------------------------------
    # Introspection
    # ----------------------------------------------------------------------

    def _session_for_locked(self, user_id: UUID) -> Optional[ClientSession]:
        session_id = self._user_sessions.get(user_id)
        return self._sessions.get(session_id) if session_id else None

    def session_for(self, user_id: UUID) -> Optional[ClientSession]:
        return self._session_for_locked(user_id)

    def connected_user_ids(self) -> list[UUID]:
        return list(self._user_sessions.keys())

    def is_user_connected(self, user_id: UUID) -> bool:
        return user_id in self._user_sessions

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    def rooms_of(self, session_id: str) -> set[str]:
        session = self._sessions.get(session_id)
        return set(session.rooms) if session else set()

    @property
    def connection_count(self) -> int:
        return len(self._sessions)
