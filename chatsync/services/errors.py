"""Error taxonomy shared by the backend gateway and the client services."""
from __future__ import annotations

from ..schemas.errors import ClassifiedError, ErrorKind


class SyncError(RuntimeError):
    """Base class for every error surfaced by the sync subsystem."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_code = "ERR000"
    default_user_message = "Something went wrong"

    def __init__(self, message: str = "", *, code: str | None = None, user_message: str | None = None) -> None:
        super().__init__(message or self.default_user_message)
        self.code = code or self.default_code
        self.user_message = user_message or self.default_user_message
        self.classified: ClassifiedError | None = None


class AuthError(SyncError):
    kind = ErrorKind.AUTH
    default_code = "AUTH_001"
    default_user_message = "Please log in to continue"


class ValidationError(SyncError):
    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_001"
    default_user_message = "Please check your input"


class PermissionDeniedError(SyncError):
    kind = ErrorKind.PERMISSION
    default_code = "42501"
    default_user_message = "You do not have permission to perform this action"


class ConflictError(SyncError):
    kind = ErrorKind.CONFLICT
    default_code = "23505"
    default_user_message = "This item already exists"


class NetworkError(SyncError):
    kind = ErrorKind.NETWORK
    default_code = "NET_001"
    default_user_message = "No internet connection. Please check your network and try again."


class NotFoundError(SyncError):
    kind = ErrorKind.NOT_FOUND
    default_code = "PGRST116"
    default_user_message = "Not found"


class RateLimitedError(SyncError):
    kind = ErrorKind.RATE_LIMITED
    default_code = "RATE_001"
    default_user_message = "Too many requests. Please wait and try again."

    def __init__(self, message: str = "", *, retry_after_ms: int | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms


class UnknownError(SyncError):
    kind = ErrorKind.UNKNOWN


ERROR_TYPES: dict[ErrorKind, type[SyncError]] = {
    ErrorKind.AUTH: AuthError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.PERMISSION: PermissionDeniedError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.UNKNOWN: UnknownError,
}


__all__ = [
    "SyncError",
    "AuthError",
    "ValidationError",
    "PermissionDeniedError",
    "ConflictError",
    "NetworkError",
    "NotFoundError",
    "RateLimitedError",
    "UnknownError",
    "ERROR_TYPES",
]
