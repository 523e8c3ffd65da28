"""Error taxonomy for the highlight sync engine.

Remote errors carry a ``retriable`` flag so the retry layer never has to guess.
Engine errors describe run-level conditions that callers must react to.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from highlight_sync.sync.models import SyncStatistics


class ErrorType(Enum):
    """Classification used for retry decisions and statistics."""

    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    AUTH_ERROR = "auth_error"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class RemoteServiceError(Exception):
    """Base exception for errors raised by the remote highlight service."""

    error_type: ErrorType = ErrorType.UNKNOWN
    retriable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class NetworkError(RemoteServiceError):
    """Connection, DNS or transport level failure."""

    error_type = ErrorType.NETWORK
    retriable = True


class RequestTimeoutError(NetworkError):
    """A single attempt did not finish within its time budget."""


class RateLimitError(RemoteServiceError):
    """The remote service asked us to slow down."""

    error_type = ErrorType.RATE_LIMIT
    retriable = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        status_code: int | None = 429,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, details=details)
        self.retry_after = retry_after


class ServerError(RemoteServiceError):
    """5xx response from the remote service."""

    error_type = ErrorType.SERVER_ERROR
    retriable = True


class AuthenticationError(RemoteServiceError):
    """Credentials were rejected. Never retried."""

    error_type = ErrorType.AUTH_ERROR


class ValidationError(RemoteServiceError):
    """The remote service rejected the payload. Never retried."""

    error_type = ErrorType.VALIDATION


class UnknownRemoteError(RemoteServiceError):
    """Unexpected response; treated as non-retriable."""


class SyncError(Exception):
    """Base exception for engine-level failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SyncInProgressError(SyncError):
    """Raised when ``sync()`` is called while another run is active."""


class CircuitOpenSyncError(SyncError):
    """Too many consecutive failures; the run stopped and needs a human."""

    def __init__(
        self,
        message: str = "Sync stopped due to too many consecutive failures",
        *,
        statistics: SyncStatistics | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.statistics = statistics


class StateStoreError(SyncError):
    """The local sync state cannot be read or written at all."""


class InvalidBatchTransitionError(SyncError):
    """A batch status change would move backwards."""
