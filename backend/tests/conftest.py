"""
Mission Track - Test Fixtures
============================

Shared pytest fixtures for all tests.
"""

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-32-chars-abc")

from collections.abc import AsyncGenerator
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from mission_track.api.main import create_app
from mission_track.core import encryption
from mission_track.core.config import settings
from mission_track.core.container import Services, build_services
from mission_track.core.database import create_session_factory, init_db
from mission_track.core.identity import Identity, create_access_token, hash_password
from mission_track.core.models import MemberStatus, Team, TeamRole, User, UserRole
from mission_track.core.store import SqlRecordStore


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_PASSWORD = "TestPass123!"

# bcrypt is slow; hash once and reuse
_PASSWORD_HASH = hash_password(TEST_PASSWORD)


@pytest.fixture(scope="session", autouse=True)
def default_encryption_key() -> None:
    encryption.initialize(settings.ENCRYPTION_KEY)


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine: AsyncEngine) -> SqlRecordStore:
    return SqlRecordStore(create_session_factory(engine))


@pytest.fixture
def services(store: SqlRecordStore) -> Services:
    return build_services(store=store, outbox_size=32, handshake_timeout=0.5)


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client against a fresh app.

    ASGITransport does not run the lifespan, so the services are attached
    directly.
    """
    app = create_app()
    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ==========================================================================
# User Fixtures
# ==========================================================================

async def create_user(
    store: SqlRecordStore,
    email: str,
    first_name: str = "Test",
    role: UserRole = UserRole.RESCUE_TEAM_MEMBER,
    **fields: Any,
) -> User:
    return await store.create_user(
        email=email,
        password_hash=_PASSWORD_HASH,
        role=role,
        first_name=first_name,
        last_name="User",
        **fields,
    )


def identity_of(user: User) -> Identity:
    return Identity.from_user(user)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest_asyncio.fixture
async def alice(store: SqlRecordStore) -> User:
    return await create_user(store, "alice@example.com", "Alice")


@pytest_asyncio.fixture
async def bob(store: SqlRecordStore) -> User:
    return await create_user(store, "bob@example.com", "Bob")


@pytest_asyncio.fixture
async def carol(store: SqlRecordStore) -> User:
    return await create_user(store, "carol@example.com", "Carol")


@pytest_asyncio.fixture
async def admin(store: SqlRecordStore) -> User:
    return await create_user(store, "admin@example.com", "Admin", role=UserRole.ADMIN)


# ==========================================================================
# Team Fixtures
# ==========================================================================

async def create_team(
    store: SqlRecordStore,
    leader: User,
    members: Optional[list[User]] = None,
    name: str = "Alpha",
    status: MemberStatus = MemberStatus.OFFLINE,
) -> Team:
    team = await store.create_team(name=name, description=f"{name} team")
    await store.add_member(team.id, leader.id, role=TeamRole.LEADER, status=status)
    for member in members or []:
        await store.add_member(team.id, member.id, role=TeamRole.MEMBER, status=status)
    return team


@pytest_asyncio.fixture
async def team(store: SqlRecordStore, alice: User, bob: User) -> Team:
    """Alice leads, Bob is a member."""
    return await create_team(store, alice, [bob])
