"""
Mission Track - HTTP API Tests
==============================

End-to-end tests through the FastAPI app: envelope shape, status codes
and the authorization gates on every router.
"""

import json

from httpx import AsyncClient

from conftest import TEST_PASSWORD, auth_headers, create_team, identity_of
from mission_track.core.models import MemberStatus, NotificationType, Team, User


API = "/api"


def _flip_first_byte(hex_value: str) -> str:
    raw = bytearray(bytes.fromhex(hex_value))
    raw[0] ^= 0x01
    return raw.hex()


# ==========================================================================
# Authentication
# ==========================================================================

class TestAuth:
    """Registration, login and token handling."""

    async def test_register_success(self, client: AsyncClient):
        response = await client.post(
            f"{API}/auth/register",
            json={
                "email": "New.User@Example.com",
                "password": "ValidPass123",
                "profile": {"first_name": "New", "last_name": "User", "rank": "Sergeant"},
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        user = body["data"]["user"]
        assert user["email"] == "new.user@example.com"
        assert user["rank"] == "Sergeant"
        assert "password_hash" not in user
        assert body["data"]["access_token"]
        assert body["data"]["refresh_token"]

    async def test_register_duplicate_email(self, client: AsyncClient, alice: User):
        response = await client.post(
            f"{API}/auth/register",
            json={
                "email": alice.email,
                "password": "ValidPass123",
                "profile": {"first_name": "Other", "last_name": "Alice"},
            },
        )

        assert response.status_code == 409
        assert response.json() == {"success": False, "error": "User with this email already exists"}

    async def test_register_weak_password(self, client: AsyncClient):
        response = await client.post(
            f"{API}/auth/register",
            json={
                "email": "weak@example.com",
                "password": "weakpass123",
                "profile": {"first_name": "Weak", "last_name": "Pass"},
            },
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        assert "uppercase" in body["message"]

    async def test_admin_cannot_self_register(self, client: AsyncClient):
        response = await client.post(
            f"{API}/auth/register",
            json={
                "email": "root@example.com",
                "password": "ValidPass123",
                "role": "admin",
                "profile": {"first_name": "Root", "last_name": "User"},
            },
        )

        assert response.status_code == 400

    async def test_login_success(self, client: AsyncClient, alice: User):
        response = await client.post(
            f"{API}/auth/login",
            json={"email": "ALICE@example.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["id"] == str(alice.id)
        assert data["user"]["last_login"] is not None
        assert data["token_type"] == "bearer"

    async def test_login_wrong_password(self, client: AsyncClient, alice: User):
        response = await client.post(
            f"{API}/auth/login",
            json={"email": alice.email, "password": "WrongPass123"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid email or password"

    async def test_login_unknown_email_matches_wrong_password(self, client: AsyncClient):
        response = await client.post(
            f"{API}/auth/login",
            json={"email": "ghost@example.com", "password": TEST_PASSWORD},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid email or password"

    async def test_refresh(self, client: AsyncClient, alice: User):
        login = await client.post(
            f"{API}/auth/login",
            json={"email": alice.email, "password": TEST_PASSWORD},
        )
        refresh_token = login.json()["data"]["refresh_token"]

        response = await client.post(f"{API}/auth/refresh", json={"refreshToken": refresh_token})

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == alice.email

    async def test_access_token_cannot_refresh(self, client: AsyncClient, alice: User):
        access_token = auth_headers(alice)["Authorization"].split()[1]

        response = await client.post(f"{API}/auth/refresh", json={"refreshToken": access_token})

        assert response.status_code == 401

    async def test_missing_token(self, client: AsyncClient):
        response = await client.get(f"{API}/auth/profile")

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Access token required"}

    async def test_invalid_token(self, client: AsyncClient):
        response = await client.get(
            f"{API}/auth/profile",
            headers={"Authorization": "Bearer not-a-token"},
        )

        assert response.status_code == 401

    async def test_verify(self, client: AsyncClient, alice: User):
        response = await client.get(f"{API}/auth/verify", headers=auth_headers(alice))

        assert response.status_code == 200
        assert response.json()["data"]["valid"] is True

    async def test_update_profile(self, client: AsyncClient, alice: User):
        response = await client.put(
            f"{API}/auth/profile",
            headers=auth_headers(alice),
            json={"department": "Search and Rescue"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["department"] == "Search and Rescue"
        assert data["first_name"] == "Alice"


# ==========================================================================
# Teams
# ==========================================================================

class TestTeams:
    """Team creation and roster management."""

    async def test_create_team(self, client: AsyncClient, alice: User):
        response = await client.post(
            f"{API}/teams",
            headers=auth_headers(alice),
            json={"name": "Echo", "description": "Night shift"},
        )

        assert response.status_code == 201
        team_id = response.json()["data"]["id"]

        roster = await client.get(f"{API}/teams/{team_id}", headers=auth_headers(alice))
        members = roster.json()["data"]["members"]
        assert [(m["user_id"], m["role"]) for m in members] == [(str(alice.id), "leader")]

    async def test_user_teams(self, client: AsyncClient, team: Team, bob: User):
        response = await client.get(f"{API}/teams/user", headers=auth_headers(bob))

        data = response.json()["data"]
        assert [t["team"]["name"] for t in data] == ["Alpha"]
        assert data[0]["role"] == "member"

    async def test_outsider_cannot_read_team(self, client: AsyncClient, team: Team, carol: User):
        response = await client.get(f"{API}/teams/{team.id}", headers=auth_headers(carol))

        assert response.status_code == 403
        assert response.json()["success"] is False

    async def test_add_member(self, client: AsyncClient, team: Team, alice: User, carol: User):
        response = await client.post(
            f"{API}/teams/{team.id}/members",
            headers=auth_headers(alice),
            json={"userId": str(carol.id)},
        )

        assert response.status_code == 201
        member = response.json()["data"]
        assert member["user"]["email"] == carol.email
        assert member["status"] == "offline"

        again = await client.post(
            f"{API}/teams/{team.id}/members",
            headers=auth_headers(alice),
            json={"userId": str(carol.id)},
        )
        assert again.status_code == 409

    async def test_member_cannot_add_member(self, client: AsyncClient, team: Team, bob: User, carol: User):
        response = await client.post(
            f"{API}/teams/{team.id}/members",
            headers=auth_headers(bob),
            json={"userId": str(carol.id)},
        )

        assert response.status_code == 403

    async def test_sole_leader_cannot_leave(self, client: AsyncClient, team: Team, alice: User):
        response = await client.delete(
            f"{API}/teams/{team.id}/members/{alice.id}",
            headers=auth_headers(alice),
        )

        assert response.status_code == 409

    async def test_member_leaves(self, client: AsyncClient, team: Team, bob: User):
        response = await client.delete(
            f"{API}/teams/{team.id}/members/{bob.id}",
            headers=auth_headers(bob),
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Left team successfully"

    async def test_status_update(self, client: AsyncClient, team: Team, alice: User, bob: User):
        response = await client.put(
            f"{API}/teams/{team.id}/status",
            headers=auth_headers(bob),
            json={"status": "safe"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "safe"

        stats = await client.get(f"{API}/teams/{team.id}/stats", headers=auth_headers(alice))
        data = stats.json()["data"]
        assert data["total_members"] == 2
        assert data["status_counts"] == {"safe": 1, "offline": 1}
        assert data["online_members"] == 1

    async def test_invalid_status(self, client: AsyncClient, team: Team, bob: User):
        response = await client.put(
            f"{API}/teams/{team.id}/status",
            headers=auth_headers(bob),
            json={"status": "lost"},
        )

        assert response.status_code == 400


# ==========================================================================
# Missions
# ==========================================================================

class TestMissions:
    """Mission CRUD through the API."""

    async def _create(self, client: AsyncClient, team: Team, user: User, title: str = "Recon", **extra):
        return await client.post(
            f"{API}/missions",
            headers=auth_headers(user),
            json={"team_id": str(team.id), "title": title, **extra},
        )

    async def test_create_and_list(self, client: AsyncClient, team: Team, alice: User, bob: User):
        created = await self._create(client, team, alice, priority="high")
        assert created.status_code == 201
        assert created.json()["data"]["status"] == "planned"

        await self._create(client, team, alice, "Supply run")

        response = await client.get(
            f"{API}/missions/team/{team.id}",
            headers=auth_headers(bob),
            params={"priority": "high"},
        )
        body = response.json()
        assert [m["title"] for m in body["data"]] == ["Recon"]
        assert body["pagination"] == {"page": 1, "limit": 20, "total": 1, "totalPages": 1}

    async def test_member_cannot_create(self, client: AsyncClient, team: Team, bob: User):
        response = await self._create(client, team, bob)

        assert response.status_code == 403
        assert response.json()["error"] == "Only team leaders can create missions"

    async def test_update_and_filter_by_status(self, client: AsyncClient, team: Team, alice: User):
        mission_id = (await self._create(client, team, alice)).json()["data"]["id"]

        response = await client.put(
            f"{API}/missions/{mission_id}",
            headers=auth_headers(alice),
            json={"status": "in_progress"},
        )
        assert response.status_code == 200

        listed = await client.get(
            f"{API}/missions/team/{team.id}",
            headers=auth_headers(alice),
            params={"status": "in_progress"},
        )
        assert [m["id"] for m in listed.json()["data"]] == [mission_id]

    async def test_details_and_stats(self, client: AsyncClient, team: Team, alice: User, bob: User):
        mission_id = (await self._create(client, team, alice)).json()["data"]["id"]
        await client.post(
            f"{API}/missions/{mission_id}/assign",
            headers=auth_headers(alice),
            json={"userId": str(bob.id)},
        )

        details = await client.get(f"{API}/missions/{mission_id}", headers=auth_headers(bob))
        data = details.json()["data"]
        assert data["team"]["name"] == "Alpha"
        assert data["assigned_user"]["first_name"] == "Bob"

        stats = await client.get(f"{API}/missions/team/{team.id}/stats", headers=auth_headers(bob))
        assert stats.json()["data"]["active_missions"] == 1

    async def test_outsider_cannot_read(self, client: AsyncClient, team: Team, alice: User, carol: User):
        mission_id = (await self._create(client, team, alice)).json()["data"]["id"]

        response = await client.get(f"{API}/missions/{mission_id}", headers=auth_headers(carol))

        assert response.status_code == 403

    async def test_delete(self, client: AsyncClient, team: Team, alice: User):
        mission_id = (await self._create(client, team, alice)).json()["data"]["id"]

        response = await client.delete(f"{API}/missions/{mission_id}", headers=auth_headers(alice))
        assert response.status_code == 200

        missing = await client.get(f"{API}/missions/{mission_id}", headers=auth_headers(alice))
        assert missing.status_code == 404


# ==========================================================================
# Messages
# ==========================================================================

class TestMessages:
    """Encrypted chat through the API."""

    async def _send(self, client: AsyncClient, team: Team, user: User, content: str = "hello", **extra):
        return await client.post(
            f"{API}/messages",
            headers=auth_headers(user),
            json={"team_id": str(team.id), "content": content, **extra},
        )

    async def test_send_returns_key_once(self, client: AsyncClient, team: Team, alice: User, bob: User):
        response = await self._send(client, team, alice)

        assert response.status_code == 201
        data = response.json()["data"]
        key = data["encryptionKey"]
        sealed = json.loads(data["message"]["content"])
        assert set(sealed) == {"ciphertext", "iv", "authTag"}

        history = await client.get(f"{API}/messages/team/{team.id}", headers=auth_headers(bob))
        assert key not in history.text
        assert history.json()["pagination"]["limit"] == 50

        decrypted = await client.post(
            f"{API}/messages/decrypt",
            headers=auth_headers(bob),
            json={"encryptedMessage": {**sealed, "key": key}},
        )
        assert decrypted.status_code == 200
        assert decrypted.json()["data"]["decryptedContent"] == "hello"

    async def test_tampered_envelope(self, client: AsyncClient, team: Team, alice: User):
        data = (await self._send(client, team, alice)).json()["data"]
        sealed = json.loads(data["message"]["content"])
        sealed["authTag"] = _flip_first_byte(sealed["authTag"])

        response = await client.post(
            f"{API}/messages/decrypt",
            headers=auth_headers(alice),
            json={"encryptedMessage": {**sealed, "key": data["encryptionKey"]}},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid encryption key or corrupted message"

    async def test_plaintext_message(self, client: AsyncClient, team: Team, alice: User):
        data = (await self._send(client, team, alice, "open channel", is_encrypted=False)).json()["data"]

        assert data["message"]["content"] == "open channel"
        assert "encryptionKey" not in data or data["encryptionKey"] is None

    async def test_outsider_cannot_send(self, client: AsyncClient, team: Team, carol: User):
        response = await self._send(client, team, carol)

        assert response.status_code == 403

    async def test_stats(self, client: AsyncClient, team: Team, alice: User, bob: User):
        await self._send(client, team, alice)
        await self._send(client, team, bob, "copy", is_encrypted=False)

        response = await client.get(f"{API}/messages/team/{team.id}/stats", headers=auth_headers(alice))

        data = response.json()["data"]
        assert data["total_messages"] == 2
        assert data["encrypted_messages"] == 1
        assert data["recent_messages"] == 2
        assert data["encryption_rate"] == 50.0

    async def test_mission_messages(self, client: AsyncClient, store, team: Team, alice: User):
        mission = await store.create_mission(team_id=team.id, title="Recon", created_by=alice.id)
        await self._send(client, team, alice, "on station", mission_id=str(mission.id), is_encrypted=False)
        await self._send(client, team, alice, "general chatter", is_encrypted=False)

        response = await client.get(f"{API}/messages/mission/{mission.id}", headers=auth_headers(alice))

        assert [m["content"] for m in response.json()["data"]] == ["on station"]

    async def test_delete_rules(self, client: AsyncClient, team: Team, alice: User, bob: User):
        message_id = (await self._send(client, team, alice)).json()["data"]["message"]["id"]

        denied = await client.delete(f"{API}/messages/{message_id}", headers=auth_headers(bob))
        assert denied.status_code == 403

        allowed = await client.delete(f"{API}/messages/{message_id}", headers=auth_headers(alice))
        assert allowed.status_code == 200


# ==========================================================================
# Notifications
# ==========================================================================

class TestNotifications:
    """Inbox endpoints and sending."""

    async def test_inbox_flow(self, client: AsyncClient, store, alice: User):
        first = await store.create_notification(alice.id, NotificationType.ALERT, "First")
        await store.create_notification(alice.id, NotificationType.ALERT, "Second")

        marked = await client.put(f"{API}/notifications/{first.id}/read", headers=auth_headers(alice))
        assert marked.json()["data"]["read"] is True

        unread = await client.get(
            f"{API}/notifications",
            headers=auth_headers(alice),
            params={"unreadOnly": "true"},
        )
        assert [n["title"] for n in unread.json()["data"]] == ["Second"]

        stats = await client.get(f"{API}/notifications/stats", headers=auth_headers(alice))
        assert stats.json()["data"] == {"total": 2, "unread": 1, "read": 1}

        read_all = await client.put(f"{API}/notifications/read-all", headers=auth_headers(alice))
        assert read_all.json()["data"] == {"updated": 1}

    async def test_cannot_touch_others_notifications(self, client: AsyncClient, store, alice: User, bob: User):
        note = await store.create_notification(alice.id, NotificationType.ALERT, "Private")

        response = await client.delete(f"{API}/notifications/{note.id}", headers=auth_headers(bob))

        assert response.status_code == 404

    async def test_admin_notifies_user(self, client: AsyncClient, admin: User, bob: User):
        response = await client.post(
            f"{API}/notifications",
            headers=auth_headers(admin),
            json={"user_id": str(bob.id), "title": "Drill at 0600"},
        )

        assert response.status_code == 201
        assert response.json()["data"]["user_id"] == str(bob.id)

    async def test_non_admin_cannot_notify_others(self, client: AsyncClient, alice: User, bob: User):
        response = await client.post(
            f"{API}/notifications",
            headers=auth_headers(alice),
            json={"user_id": str(bob.id), "title": "Hey"},
        )

        assert response.status_code == 403

    async def test_bulk(self, client: AsyncClient, store, alice: User, bob: User, carol: User):
        team = await create_team(store, alice, [bob, carol], status=MemberStatus.SAFE)

        response = await client.post(
            f"{API}/notifications/bulk",
            headers=auth_headers(alice),
            json={"team_id": str(team.id), "type": "alert", "title": "Storm incoming"},
        )

        assert response.status_code == 201
        assert response.json()["data"] == {"created": 2, "delivered_live": 0, "failed": []}


# ==========================================================================
# Health
# ==========================================================================

class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["realtime_connections"] == 0
        assert data["realtime_users"] == 0

    async def test_health_counts_connected_users(self, client: AsyncClient, services, alice):
        await services.router.on_connect(identity_of(alice))
        await services.router.on_connect(identity_of(alice))

        data = (await client.get("/health")).json()

        assert data["realtime_connections"] == 2
        assert data["realtime_users"] == 1

    async def test_unknown_route_uses_envelope(self, client: AsyncClient):
        response = await client.get(f"{API}/nowhere")

        assert response.status_code == 404
        assert response.json()["success"] is False
