"""
Mission Track - Authentication API
==================================

Registration, login, token refresh and profile endpoints.
"""

from datetime import datetime, timezone
from uuid import UUID

import structlog
from fastapi import APIRouter, status

from mission_track.api.deps import CurrentIdentity, Store
from mission_track.core.config import settings
from mission_track.core.errors import AuthenticationError, ConflictError, NotFoundError
from mission_track.core.identity import (
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_password,
    verify_password,
)
from mission_track.core.models import User
from mission_track.core.schemas import (
    ApiResponse,
    LoginRequest,
    ProfileUpdate,
    RefreshTokenRequest,
    RegisterRequest,
    TokenResponse,
    TokenVerification,
    UserResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _tokens(user: User) -> TokenResponse:
    return TokenResponse(
        user=UserResponse.model_validate(user),
        access_token=create_access_token(user),
        refresh_token=create_refresh_token(user),
        token_type="bearer",
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


# ==========================================================================
# Registration
# ==========================================================================

@router.post(
    "/register",
    response_model=ApiResponse[TokenResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
    responses={
        201: {"description": "User created successfully"},
        400: {"description": "Validation error"},
        409: {"description": "Email already registered"},
    },
)
async def register(data: RegisterRequest, store: Store) -> ApiResponse[TokenResponse]:
    """
    Register a new user account and sign them in.

    Admin accounts cannot be self-registered.
    """
    email = data.email.lower()
    if await store.find_user_by_email(email) is not None:
        raise ConflictError("User with this email already exists")

    user = await store.create_user(
        email=email,
        password_hash=hash_password(data.password),
        role=data.role,
        **data.profile.model_dump(),
    )
    logger.info("User registered", user_id=str(user.id), role=user.role.value)

    return ApiResponse(data=_tokens(user), message="User registered successfully")


# ==========================================================================
# Login / Tokens
# ==========================================================================

@router.post(
    "/login",
    response_model=ApiResponse[TokenResponse],
    summary="Login and get tokens",
    responses={
        200: {"description": "Login successful"},
        401: {"description": "Invalid credentials"},
    },
)
async def login(data: LoginRequest, store: Store) -> ApiResponse[TokenResponse]:
    """
    Authenticate with email and password.

    Unknown email, wrong password and deactivated account all return the
    same 401.
    """
    user = await store.find_user_by_email(data.email.lower())

    if user is None or not verify_password(data.password, user.password_hash):
        raise AuthenticationError("Invalid email or password")
    if not user.is_active:
        raise AuthenticationError("Invalid email or password")

    user = await store.update_user(user.id, last_login=datetime.now(timezone.utc))
    logger.info("User logged in", user_id=str(user.id))

    return ApiResponse(data=_tokens(user), message="Login successful")


@router.post(
    "/refresh",
    response_model=ApiResponse[TokenResponse],
    summary="Refresh access token",
)
async def refresh_token(data: RefreshTokenRequest, store: Store) -> ApiResponse[TokenResponse]:
    payload = decode_token(data.refresh_token, expected_type="refresh")

    try:
        user = await store.get_user(UUID(payload.get("sub", "")))
    except (ValueError, NotFoundError) as e:
        raise AuthenticationError("Invalid refresh token") from e

    if not user.is_active:
        raise AuthenticationError("User account is deactivated")

    return ApiResponse(data=_tokens(user), message="Token refreshed")


@router.get(
    "/verify",
    response_model=ApiResponse[TokenVerification],
    summary="Check an access token",
)
async def verify(identity: CurrentIdentity, store: Store) -> ApiResponse[TokenVerification]:
    user = await store.get_user(identity.user_id)
    return ApiResponse(data=TokenVerification(valid=True, user=UserResponse.model_validate(user)))


# ==========================================================================
# Profile
# ==========================================================================

@router.get(
    "/profile",
    response_model=ApiResponse[UserResponse],
    summary="Get current user profile",
)
async def get_profile(identity: CurrentIdentity, store: Store) -> ApiResponse[UserResponse]:
    user = await store.get_user(identity.user_id)
    return ApiResponse(data=UserResponse.model_validate(user))


@router.put(
    "/profile",
    response_model=ApiResponse[UserResponse],
    summary="Update current user profile",
)
async def update_profile(
    data: ProfileUpdate,
    identity: CurrentIdentity,
    store: Store,
) -> ApiResponse[UserResponse]:
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    user = await store.update_user(identity.user_id, **changes)
    return ApiResponse(data=UserResponse.model_validate(user), message="Profile updated successfully")
