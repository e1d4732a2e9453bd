from typing import Any, Optional


class ApiError(Exception):
    """Non-success response from the backend."""

    silent = False

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


class TransportError(ApiError):
    """Timeout or network failure; no response was received."""


class UnauthenticatedError(ApiError):
    """401 on a request that carried no token. Expected for anonymous browsing."""

    silent = True


class SessionExpiredError(ApiError):
    """401 after a token was attached and the session could not be refreshed. The store is cleared."""

    USER_MESSAGE = "Your session has expired. Please sign in again."


class AuthorizationError(ApiError):
    """401 on a request that was already retried once with a refreshed token."""


class StaleSessionError(ApiError):
    """The session changed (logout or new login) while the request was in flight."""


class RefreshFailedError(Exception):
    """Internal: the refresh call was rejected or could not be completed."""
