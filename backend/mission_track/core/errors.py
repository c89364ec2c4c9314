"""
Mission Track - Error Taxonomy
==============================

Domain errors raised by the core and mapped to HTTP responses or
realtime `error` events at the edges.
"""

from fastapi import status


class MissionTrackError(Exception):
    """Base class for all domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    default_message: str = "An unexpected error occurred"

    def __init__(self, message: str | None = None, detail: str | None = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class AuthenticationError(MissionTrackError):
    """Missing, malformed or expired credential."""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_FAILED"
    default_message = "Authentication failed"


class AuthorizationError(MissionTrackError):
    """Authenticated but not permitted."""
    status_code = status.HTTP_403_FORBIDDEN
    code = "ACCESS_DENIED"
    default_message = "Access denied"


class ValidationError(MissionTrackError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class NotFoundError(MissionTrackError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(MissionTrackError):
    """A state constraint would be violated."""
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    default_message = "Resource conflict"


class DecryptionError(MissionTrackError):
    """Envelope could not be authenticated or decoded."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "DECRYPTION_FAILED"
    default_message = "Invalid encryption key or corrupted message"


class PersistenceError(MissionTrackError):
    """The record store failed to complete an operation."""
    code = "PERSISTENCE_ERROR"
    default_message = "Storage operation failed"


class ConfigurationError(MissionTrackError):
    code = "CONFIGURATION_ERROR"
    default_message = "Invalid configuration"
