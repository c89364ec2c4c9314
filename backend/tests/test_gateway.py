"""
Realtime gateway tests.

A scripted socket stands in for the ASGI websocket: inbound frames are
queued by the test, outbound frames are collected as parsed JSON.
"""

import asyncio
import json
from typing import Any, Optional

import pytest
from fastapi import WebSocketDisconnect

from conftest import create_team, identity_of
from mission_track.core.container import build_services
from mission_track.core.database import create_session_factory
from mission_track.core.errors import AuthenticationError, PersistenceError
from mission_track.core.identity import Identity, IdentityProvider, create_access_token
from mission_track.core.models import MemberStatus
from mission_track.core.realtime.gateway import WS_CLOSE_UNAUTHORIZED, RealtimeGateway
from mission_track.core.realtime.router import RealtimeRouter
from mission_track.core.store import SqlRecordStore

HANG_UP = object()


class SlowProvider(IdentityProvider):
    async def resolve(self, token: Optional[str]) -> Identity:
        await asyncio.sleep(5)
        raise AuthenticationError("Too late")


class BrokenProvider(IdentityProvider):
    async def resolve(self, token: Optional[str]) -> Identity:
        raise PersistenceError()


class FailingStatusStore(SqlRecordStore):
    async def update_member(self, team_id, user_id, **changes):
        raise PersistenceError()


class ScriptedSocket:
    def __init__(self, token: Optional[str] = None, header: Optional[str] = None):
        self.query_params = {"token": token} if token else {}
        self.headers = {"authorization": header} if header else {}
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.accepted = False
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None

    async def accept(self) -> None:
        self.accepted = True

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.close_code = code
        self.close_reason = reason

    async def receive_text(self) -> str:
        item = await self.inbound.get()
        if item is HANG_UP:
            raise WebSocketDisconnect(code=1000)
        return item

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def push(self, event: str, data: Any = None) -> None:
        self.inbound.put_nowait(json.dumps({"event": event, "data": data}))

    def hang_up(self) -> None:
        self.inbound.put_nowait(HANG_UP)

    def events(self, name: str) -> list[Any]:
        return [frame["data"] for frame in self.sent if frame["event"] == name]


async def wait_until(condition, timeout: float = 2.0) -> None:
    async def poll():
        while not condition():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def gateway(services) -> RealtimeGateway:
    return services.gateway


async def connect(gateway, user) -> tuple[ScriptedSocket, asyncio.Task]:
    socket = ScriptedSocket(token=create_access_token(user))
    task = asyncio.create_task(gateway.handle(socket))
    await wait_until(lambda: gateway.router.is_user_connected(user.id))
    return socket, task


async def hang_up(socket: ScriptedSocket, task: asyncio.Task) -> None:
    socket.hang_up()
    await asyncio.wait_for(task, 2.0)


# ==========================================================================
# Handshake
# ==========================================================================

class TestHandshake:
    async def test_bad_token_is_refused_before_accept(self, gateway):
        socket = ScriptedSocket(token="not-a-jwt")

        await gateway.handle(socket)

        assert not socket.accepted
        assert socket.close_code == WS_CLOSE_UNAUTHORIZED
        assert gateway.router.connection_count == 0

    async def test_bearer_header(self, gateway, alice):
        socket = ScriptedSocket(header=f"Bearer {create_access_token(alice)}")
        task = asyncio.create_task(gateway.handle(socket))

        await wait_until(lambda: gateway.router.is_user_connected(alice.id))
        assert socket.accepted

        await hang_up(socket, task)
        assert not gateway.router.is_user_connected(alice.id)

    async def test_authenticate_frame(self, gateway, alice):
        socket = ScriptedSocket()
        socket.push("authenticate", {"token": create_access_token(alice)})
        task = asyncio.create_task(gateway.handle(socket))

        await wait_until(lambda: gateway.router.is_user_connected(alice.id))
        await hang_up(socket, task)

        assert socket.close_code is None

    async def test_first_frame_must_authenticate(self, gateway, alice):
        socket = ScriptedSocket()
        socket.push("join_team", "anything")

        await gateway.handle(socket)

        assert socket.accepted
        assert socket.close_code == WS_CLOSE_UNAUTHORIZED
        assert socket.close_reason == "Authentication required"

    async def test_handshake_timeout(self, gateway):
        socket = ScriptedSocket()

        await gateway.handle(socket)

        assert socket.close_code == WS_CLOSE_UNAUTHORIZED
        assert socket.close_reason == "Authentication timeout"

    async def test_slow_token_lookup_times_out(self, services, alice):
        router = RealtimeRouter(services.membership, SlowProvider())
        gateway = RealtimeGateway(router, services.orchestrator, handshake_timeout=0.2)
        socket = ScriptedSocket(token=create_access_token(alice))

        await asyncio.wait_for(gateway.handle(socket), 1.0)

        assert not socket.accepted
        assert socket.close_code == WS_CLOSE_UNAUTHORIZED
        assert socket.close_reason == "Authentication timeout"
        assert router.connection_count == 0

    async def test_token_lookup_failure_closes_socket(self, services, alice):
        router = RealtimeRouter(services.membership, BrokenProvider())
        gateway = RealtimeGateway(router, services.orchestrator, handshake_timeout=0.2)
        socket = ScriptedSocket(token=create_access_token(alice))

        await gateway.handle(socket)

        assert not socket.accepted
        assert socket.close_code == WS_CLOSE_UNAUTHORIZED
        assert socket.close_reason == "Storage operation failed"


# ==========================================================================
# Inbound frames
# ==========================================================================

class TestFrames:
    async def test_join_rejected_for_outsider(self, gateway, team, carol):
        socket, task = await connect(gateway, carol)

        socket.push("join_team", str(team.id))
        await wait_until(lambda: socket.events("error"))
        await hang_up(socket, task)

        assert socket.events("error") == [{"message": "Not a team member"}]

    async def test_typing_reaches_others_only(self, gateway, team, alice, bob):
        alice_socket, alice_task = await connect(gateway, alice)
        bob_socket, bob_task = await connect(gateway, bob)

        alice_socket.push("typing_start", {"teamId": str(team.id)})
        await wait_until(lambda: bob_socket.events("user_typing"))

        assert bob_socket.events("user_typing") == [{"userId": str(alice.id), "isTyping": True}]
        assert alice_socket.events("user_typing") == []

        await hang_up(alice_socket, alice_task)
        await hang_up(bob_socket, bob_task)

    async def test_typing_outside_room(self, gateway, team, carol):
        socket, task = await connect(gateway, carol)

        socket.push("typing_stop", {"teamId": str(team.id)})
        await wait_until(lambda: socket.events("error"))
        await hang_up(socket, task)

        assert socket.events("user_typing") == []

    async def test_status_update(self, gateway, store, team, alice, bob):
        alice_socket, alice_task = await connect(gateway, alice)
        bob_socket, bob_task = await connect(gateway, bob)

        bob_socket.push("status_update", {"teamId": str(team.id), "status": "need_backup"})
        await wait_until(lambda: alice_socket.events("user:status_update"))

        assert alice_socket.events("user:status_update") == [
            {"userId": str(bob.id), "status": "need_backup", "teamId": str(team.id)}
        ]
        await wait_until(lambda: alice_socket.events("notification:new"))
        assert (await store.get_membership(team.id, bob.id)).status == MemberStatus.NEED_BACKUP

        await hang_up(alice_socket, alice_task)
        await hang_up(bob_socket, bob_task)

    async def test_status_update_for_foreign_team(self, gateway, store, alice, carol):
        other = await create_team(store, alice, name="Bravo")
        socket, task = await connect(gateway, carol)

        socket.push("status_update", {"teamId": str(other.id), "status": "safe"})
        await wait_until(lambda: socket.events("error"))
        await hang_up(socket, task)

        assert "not a member" in socket.events("error")[0]["message"]

    async def test_failed_status_write_is_not_broadcast(self, engine, team, alice, bob):
        services = build_services(
            store=FailingStatusStore(create_session_factory(engine)),
            outbox_size=32,
            handshake_timeout=0.5,
        )
        gateway = services.gateway
        alice_socket, alice_task = await connect(gateway, alice)
        bob_socket, bob_task = await connect(gateway, bob)

        bob_socket.push("status_update", {"teamId": str(team.id), "status": "need_backup"})
        await wait_until(lambda: bob_socket.events("error"))
        await asyncio.sleep(0.1)

        assert bob_socket.events("error") == [{"message": "Storage operation failed"}]
        assert alice_socket.events("user:status_update") == []
        assert alice_socket.events("notification:new") == []

        await hang_up(alice_socket, alice_task)
        await hang_up(bob_socket, bob_task)

    async def test_unexpected_handler_error_reaches_client(self, gateway, monkeypatch, team, bob):
        async def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(gateway.orchestrator, "update_status", broken)
        socket, task = await connect(gateway, bob)

        socket.push("status_update", {"teamId": str(team.id), "status": "safe"})
        await wait_until(lambda: socket.events("error"))
        await hang_up(socket, task)

        assert socket.events("error") == [{"message": "Internal error"}]
        assert socket.close_code is None

    @pytest.mark.parametrize(
        "raw, message",
        [
            ("{not json", "Invalid frame"),
            (json.dumps({"event": "dance"}), "Unknown event: dance"),
            (json.dumps({"event": "status_update", "data": {"status": "lost"}}), "Invalid status update"),
        ],
    )
    async def test_bad_frames_get_error_events(self, gateway, alice, raw, message):
        socket, task = await connect(gateway, alice)

        socket.inbound.put_nowait(raw)
        await wait_until(lambda: socket.events("error"))
        await hang_up(socket, task)

        assert socket.events("error") == [{"message": message}]
        assert socket.close_code is None


# ==========================================================================
# Disconnect
# ==========================================================================

class TestDisconnect:
    async def test_disconnect_marks_user_offline(self, gateway, store, team, alice, bob):
        await store.update_member(team.id, bob.id, status=MemberStatus.SAFE)
        alice_socket, alice_task = await connect(gateway, alice)
        bob_socket, bob_task = await connect(gateway, bob)

        await hang_up(bob_socket, bob_task)

        assert (await store.get_membership(team.id, bob.id)).status == MemberStatus.OFFLINE
        await wait_until(lambda: alice_socket.events("user:status_update"))
        assert alice_socket.events("user:status_update")[0]["status"] == "offline"

        await hang_up(alice_socket, alice_task)

    async def test_replaced_session_does_not_mark_offline(self, gateway, store, team, bob):
        await store.update_member(team.id, bob.id, status=MemberStatus.SAFE)
        first, first_task = await connect(gateway, bob)
        second = ScriptedSocket(token=create_access_token(bob))
        second_task = asyncio.create_task(gateway.handle(second))
        await wait_until(lambda: gateway.router.connection_count == 2)

        await hang_up(first, first_task)

        assert gateway.router.is_user_connected(bob.id)
        assert (await store.get_membership(team.id, bob.id)).status == MemberStatus.SAFE

        await hang_up(second, second_task)
        assert (await store.get_membership(team.id, bob.id)).status == MemberStatus.OFFLINE

    async def test_session_identity(self, gateway, alice):
        socket, task = await connect(gateway, alice)
        session = gateway.router.session_for(alice.id)
        assert session.identity == identity_of(alice)
        await hang_up(socket, task)
