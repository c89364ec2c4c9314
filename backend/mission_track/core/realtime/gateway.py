"""
Realtime Gateway
================

Socket lifecycle for `/ws`:

1. Handshake: a token from the `token` query parameter or an
   `Authorization: Bearer` header is checked before the socket is
   accepted. Without one, the socket is accepted and the first frame
   must be `authenticate` within the handshake timeout. Any failure
   closes with 4401.
2. Session: the router registers the session and joins its team rooms.
   One writer task drains the session outbox; each inbound frame is
   handled in its own task.
3. Teardown: pending frame tasks finish, the session is unregistered,
   and if the user has no newer connection every membership goes
   offline.
"""

import asyncio
from typing import TYPE_CHECKING, Any, Optional

import structlog
from fastapi import WebSocket, WebSocketDisconnect, status

from mission_track.core.config import settings
from mission_track.core.errors import AuthenticationError, MissionTrackError
from mission_track.core.identity import Identity, extract_bearer
from mission_track.core.realtime.events import (
    AUTHENTICATE,
    JOIN_TEAM,
    LEAVE_TEAM,
    STATUS_UPDATE,
    TYPING_START,
    TYPING_STOP,
    ClientFrame,
    ErrorEvent,
    FrameError,
    UserTyping,
    parse_frame,
    parse_status_update,
    parse_team_id,
    team_room,
)
from mission_track.core.realtime.router import ClientSession, RealtimeRouter

if TYPE_CHECKING:
    from mission_track.core.orchestrator import MissionMessageOrchestrator

logger = structlog.get_logger(__name__)


WS_CLOSE_UNAUTHORIZED = 4401


class RealtimeGateway:
    """Binds one websocket to a router session for its lifetime."""

    def __init__(
        self,
        router: RealtimeRouter,
        orchestrator: "MissionMessageOrchestrator",
        handshake_timeout: float = settings.WS_HANDSHAKE_TIMEOUT_SECONDS,
    ):
        self.router = router
        self.orchestrator = orchestrator
        self.handshake_timeout = handshake_timeout

    async def handle(self, websocket: WebSocket) -> None:
        identity = await self._handshake(websocket)
        if identity is None:
            return

        session = await self.router.on_connect(identity, websocket)
        frames: set[asyncio.Task] = set()

        reader = asyncio.create_task(self._read(session, websocket, frames))
        writer = asyncio.create_task(self._pump(session, websocket))
        overflow = asyncio.create_task(session.overflowed.wait())

        try:
            await asyncio.wait({reader, writer, overflow}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, writer, overflow):
                task.cancel()
            await self._finish(frames)
            await self._teardown(session, websocket)

    # ----------------------------------------------------------------------
    # Handshake
    # ----------------------------------------------------------------------

    async def _handshake(self, websocket: WebSocket) -> Optional[Identity]:
        token = websocket.query_params.get("token") or extract_bearer(
            websocket.headers.get("authorization")
        )

        if token:
            try:
                identity = await asyncio.wait_for(
                    self.router.authenticate(token), timeout=self.handshake_timeout
                )
            except asyncio.TimeoutError:
                reason = "Authentication timeout"
            except MissionTrackError as e:
                reason = e.message
            else:
                await websocket.accept()
                return identity
            logger.warning("Realtime handshake refused", reason=reason)
            await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=reason)
            return None

        await websocket.accept()
        try:
            raw = await asyncio.wait_for(websocket.receive_text(), timeout=self.handshake_timeout)
            frame = parse_frame(raw)
            if frame.event != AUTHENTICATE or not isinstance(frame.data, dict):
                raise AuthenticationError("Authentication required")
            return await self.router.authenticate(frame.data.get("token"))
        except WebSocketDisconnect:
            return None
        except asyncio.TimeoutError:
            reason = "Authentication timeout"
        except FrameError as e:
            reason = str(e)
        except MissionTrackError as e:
            reason = e.message

        logger.warning("Realtime handshake refused", reason=reason)
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=reason)
        return None

    # ----------------------------------------------------------------------
    # Session loops
    # ----------------------------------------------------------------------

    async def _pump(self, session: ClientSession, websocket: WebSocket) -> None:
        """Single writer for the socket, in outbox order."""
        while True:
            event = await session.outbox.get()
            try:
                await websocket.send_text(event.to_frame())
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("Send failed, closing session", session_id=session.id, error=str(e))
                return

    async def _read(
        self, session: ClientSession, websocket: WebSocket, frames: set[asyncio.Task]
    ) -> None:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                return
            task = asyncio.create_task(self._dispatch(session, raw))
            frames.add(task)
            task.add_done_callback(frames.discard)

    async def _dispatch(self, session: ClientSession, raw: str) -> None:
        try:
            await self._route(session, parse_frame(raw))
        except FrameError as e:
            session.deliver(ErrorEvent(message=str(e)))
        except MissionTrackError as e:
            logger.info(
                "Realtime request rejected",
                session_id=session.id,
                code=e.code,
                error=e.message,
            )
            session.deliver(ErrorEvent(message=e.message))
        except Exception as e:
            logger.error("Realtime frame handler failed", session_id=session.id, exc_info=e)
            session.deliver(ErrorEvent(message="Internal error"))

    async def _route(self, session: ClientSession, frame: ClientFrame) -> None:
        if frame.event == JOIN_TEAM:
            await self.router.join_room(session, parse_team_id(frame.data))

        elif frame.event == LEAVE_TEAM:
            await self.router.leave_room(session, parse_team_id(frame.data))

        elif frame.event in (TYPING_START, TYPING_STOP):
            await self._typing(session, frame.data, frame.event == TYPING_START)

        elif frame.event == STATUS_UPDATE:
            update = parse_status_update(frame.data)
            await self.orchestrator.update_status(session.identity, update.team_id, update.status)

        elif frame.event == AUTHENTICATE:
            logger.debug("Ignoring repeated authenticate", session_id=session.id)

        else:
            session.deliver(ErrorEvent(message=f"Unknown event: {frame.event}"))

    async def _typing(self, session: ClientSession, data: Any, is_typing: bool) -> None:
        room = team_room(parse_team_id(data))
        if room not in session.rooms:
            session.deliver(ErrorEvent(message="Not a team member"))
            return
        await self.router.broadcast_excluding(
            room,
            UserTyping(user_id=session.user_id, is_typing=is_typing),
            session.id,
        )

    # ----------------------------------------------------------------------
    # Teardown
    # ----------------------------------------------------------------------

    async def _finish(self, frames: set[asyncio.Task]) -> None:
        if not frames:
            return
        results = await asyncio.gather(*frames, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Realtime frame handler crashed", error=repr(result))

    async def _teardown(self, session: ClientSession, websocket: WebSocket) -> None:
        overflowed = session.overflowed.is_set()
        await self.router.on_disconnect(session)

        if not self.router.is_user_connected(session.user_id):
            teams = await self.orchestrator.mark_offline(session.user_id)
            logger.info("User offline", user_id=str(session.user_id), teams=len(teams))

        if overflowed:
            try:
                await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason="Too slow")
            except RuntimeError as e:
                logger.debug("Socket already closed", session_id=session.id, error=str(e))
