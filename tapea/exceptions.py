"""Custom exceptions for ride synchronization."""

from typing import Optional


class RideSyncError(Exception):
    """Base class for every error raised by the ride protocol client."""

    retryable = False

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NetworkError(RideSyncError):
    """Raised when the server cannot be reached."""
    retryable = True


class ServerError(RideSyncError):
    """Raised on 5xx responses."""
    retryable = True


class ValidationError(RideSyncError):
    """Raised on 4xx responses rejecting the request body, or on invalid local input."""
    pass


class AuthError(RideSyncError):
    """Raised on 401/403 responses."""
    pass


class LocalTimeoutError(RideSyncError):
    """Raised when a client-local wait expires."""
    retryable = True


class ConnectionTimeout(LocalTimeoutError):
    """Raised when the realtime handshake does not complete in time."""
    pass


class ProtocolError(RideSyncError):
    """Raised when the realtime server rejects an operation (join refused, token mismatch)."""
    pass


class RideNotFoundError(RideSyncError):
    """Raised when no ride can be found for the operation."""
    pass


class InvalidTransitionError(RideSyncError):
    """Raised when a ride status change is not allowed for the current state or role."""
    pass
