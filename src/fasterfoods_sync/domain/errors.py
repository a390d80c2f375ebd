"""Error types shared by the sync core and the remote client."""

from enum import StrEnum

AUTH_REQUIRED_MESSAGE = "Authentication required. Please log in again."

_RETRYABLE_CLIENT_STATUSES = {408, 425, 429}


class SyncError(Exception):
    """Base class for sync subsystem errors."""


class APIError(SyncError):
    """A remote call that did not complete successfully."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        is_network_error: bool = False,
        unverified: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.is_network_error = is_network_error
        self.unverified = unverified

    @property
    def is_auth_error(self) -> bool:
        if self.status_code in {401, 403}:
            return True
        return self.status_code is None and self.message == AUTH_REQUIRED_MESSAGE

    @property
    def is_not_found(self) -> bool:
        return self.status_code in {404, 410}

    def __repr__(self) -> str:
        return (
            f"APIError(status_code={self.status_code!r}, message={self.message!r}, "
            f"is_network_error={self.is_network_error!r})"
        )


class EntityNotFoundError(SyncError, LookupError):
    """Raised when a mutation targets an entity missing from the local snapshot."""


class FailureKind(StrEnum):
    """How a failed remote call affects the queued operation."""

    CONNECTIVITY = "connectivity"
    AUTHENTICATION = "authentication"
    REJECTED = "rejected"
    TRANSIENT = "transient"


def classify_failure(error: APIError) -> FailureKind:
    """Map a remote failure to its retry policy."""
    if error.is_network_error:
        return FailureKind.CONNECTIVITY
    if error.is_auth_error:
        return FailureKind.AUTHENTICATION
    status = error.status_code
    if status in _RETRYABLE_CLIENT_STATUSES:
        return FailureKind.TRANSIENT
    if status is not None and 400 <= status < 500:  # noqa: PLR2004
        return FailureKind.REJECTED
    return FailureKind.TRANSIENT
