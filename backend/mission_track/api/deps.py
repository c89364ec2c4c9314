"""
Mission Track - API Dependencies
================================

Shared dependencies for FastAPI endpoints.
"""

from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mission_track.core.config import settings
from mission_track.core.container import Services
from mission_track.core.errors import AuthenticationError, AuthorizationError
from mission_track.core.identity import Identity
from mission_track.core.orchestrator import MissionMessageOrchestrator
from mission_track.core.queries import QueryService
from mission_track.core.store import RecordStore


# ==========================================================================
# Security
# ==========================================================================

security = HTTPBearer(auto_error=False)


# ==========================================================================
# Services
# ==========================================================================

def get_services(request: Request) -> Services:
    """Component graph built in the application lifespan."""
    return request.app.state.services


def get_store(services: Annotated[Services, Depends(get_services)]) -> RecordStore:
    return services.store


def get_orchestrator(
    services: Annotated[Services, Depends(get_services)],
) -> MissionMessageOrchestrator:
    return services.orchestrator


def get_queries(services: Annotated[Services, Depends(get_services)]) -> QueryService:
    return services.queries


# ==========================================================================
# Identity Dependencies
# ==========================================================================

async def get_current_identity(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    services: Annotated[Services, Depends(get_services)],
) -> Identity:
    """
    Resolve the bearer token on the request.

    Raises:
        AuthenticationError: If the token is missing, invalid or expired,
            or the account no longer exists or is deactivated
    """
    if credentials is None:
        raise AuthenticationError("Access token required")
    return await services.identity_provider.resolve(credentials.credentials)


async def get_current_admin(
    identity: Annotated[Identity, Depends(get_current_identity)],
) -> Identity:
    if not identity.is_admin:
        raise AuthorizationError("Admin access required")
    return identity


# ==========================================================================
# Pagination
# ==========================================================================

@dataclass
class PageParams:
    page: int
    limit: int


def page_params(
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=settings.MAX_PAGE_SIZE)] = settings.DEFAULT_PAGE_SIZE,
) -> PageParams:
    return PageParams(page=page, limit=limit)


def message_page_params(
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=settings.MAX_PAGE_SIZE)] = settings.MESSAGE_PAGE_SIZE,
) -> PageParams:
    return PageParams(page=page, limit=limit)


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
CurrentAdmin = Annotated[Identity, Depends(get_current_admin)]
ServicesDep = Annotated[Services, Depends(get_services)]
Store = Annotated[RecordStore, Depends(get_store)]
Orchestrator = Annotated[MissionMessageOrchestrator, Depends(get_orchestrator)]
Queries = Annotated[QueryService, Depends(get_queries)]
Page = Annotated[PageParams, Depends(page_params)]
MessagePage = Annotated[PageParams, Depends(message_page_params)]
