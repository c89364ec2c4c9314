"""
Mission Track - Identity
========================

Bearer credential handling shared by HTTP requests and realtime
handshakes: token issuing, token verification and password hashing.
"""

import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.hash import bcrypt

from mission_track.core.config import settings
from mission_track.core.errors import AuthenticationError, NotFoundError
from mission_track.core.models import User, UserRole

if TYPE_CHECKING:
    from mission_track.core.store import RecordStore


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""

    user_id: UUID
    email: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(user_id=user.id, email=user.email, role=user.role)


# ==========================================================================
# Passwords
# ==========================================================================

def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against a hash."""
    return bcrypt.verify(password, password_hash)


# ==========================================================================
# Token Utilities
# ==========================================================================

def _encode(user: User | Identity, token_type: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    user_id = user.user_id if isinstance(user, Identity) else user.id
    payload = {
        "sub": str(user_id),
        "email": user.email,
        "role": user.role.value,
        "type": token_type,
        "iat": now,
        "exp": now + expires_delta,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_access_token(
    user: User | Identity,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a new access token.

    Args:
        user: Token subject
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _encode(user, "access", expires_delta)


def create_refresh_token(
    user: User | Identity,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a long-lived refresh token."""
    if expires_delta is None:
        expires_delta = timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    return _encode(user, "refresh", expires_delta)


def decode_token(token: str, expected_type: str = "access") -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        AuthenticationError: If the token is invalid, expired or of the
            wrong type
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except ExpiredSignatureError as e:
        raise AuthenticationError("Token has expired") from e
    except JWTError as e:
        raise AuthenticationError("Invalid token") from e

    if payload.get("type") != expected_type:
        raise AuthenticationError("Invalid token type")
    return payload


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Pull the token out of an `Authorization: Bearer ...` header."""
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


# ==========================================================================
# Providers
# ==========================================================================

class IdentityProvider(ABC):
    """Resolves a bearer credential to an identity."""

    @abstractmethod
    async def resolve(self, token: Optional[str]) -> Identity:
        """Return the identity or raise AuthenticationError."""


class JwtIdentityProvider(IdentityProvider):
    """Verifies access tokens and checks the account is still usable."""

    def __init__(self, store: "RecordStore"):
        self.store = store

    async def resolve(self, token: Optional[str]) -> Identity:
        if not token:
            raise AuthenticationError("Authentication token required")

        payload = decode_token(token, expected_type="access")

        try:
            user_id = UUID(payload.get("sub", ""))
        except ValueError as e:
            raise AuthenticationError("Invalid token payload") from e

        try:
            user = await self.store.get_user(user_id)
        except NotFoundError as e:
            raise AuthenticationError("User not found") from e

        if not user.is_active:
            raise AuthenticationError("User account is deactivated")

        return Identity.from_user(user)
