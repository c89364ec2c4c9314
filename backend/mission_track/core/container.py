"""
Mission Track - Service Container
=================================

Wires the core components together once per application. The router is
created here and shared by reference; nothing in the core is a
module-level singleton.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mission_track.core.config import settings
from mission_track.core.database import AsyncSessionLocal
from mission_track.core.identity import IdentityProvider, JwtIdentityProvider
from mission_track.core.membership import MembershipAuthority
from mission_track.core.notifications import NotificationFanout
from mission_track.core.orchestrator import MissionMessageOrchestrator
from mission_track.core.queries import QueryService
from mission_track.core.realtime import RealtimeGateway, RealtimeRouter
from mission_track.core.store import RecordStore, SqlRecordStore


@dataclass
class Services:
    store: RecordStore
    identity_provider: IdentityProvider
    membership: MembershipAuthority
    router: RealtimeRouter
    fanout: NotificationFanout
    orchestrator: MissionMessageOrchestrator
    queries: QueryService
    gateway: RealtimeGateway


def build_services(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    store: Optional[RecordStore] = None,
    identity_provider: Optional[IdentityProvider] = None,
    outbox_size: int = settings.WS_OUTBOX_SIZE,
    handshake_timeout: float = settings.WS_HANDSHAKE_TIMEOUT_SECONDS,
) -> Services:
    """
    Build the component graph.

    Pass either a session factory (the usual case) or a ready store.
    """
    if store is None:
        store = SqlRecordStore(session_factory or AsyncSessionLocal)

    identity_provider = identity_provider or JwtIdentityProvider(store)
    membership = MembershipAuthority(store)
    router = RealtimeRouter(membership, identity_provider, outbox_size=outbox_size)
    fanout = NotificationFanout(store, router)
    orchestrator = MissionMessageOrchestrator(store, membership, fanout, router)

    return Services(
        store=store,
        identity_provider=identity_provider,
        membership=membership,
        router=router,
        fanout=fanout,
        orchestrator=orchestrator,
        queries=QueryService(store, membership),
        gateway=RealtimeGateway(router, orchestrator, handshake_timeout=handshake_timeout),
    )
