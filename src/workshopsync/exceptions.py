"""Custom exception hierarchy for workshopsync."""

from __future__ import annotations


class WorkshopError(Exception):
    """Base exception for all workshopsync errors."""


class WorkshopConfigError(WorkshopError):
    """Invalid or missing configuration."""


class WorkshopTransportError(WorkshopError):
    """HTTP-level failure (network, timeout, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        path: str = "",
    ) -> None:
        self.status_code = status_code
        self.path = path
        super().__init__(message)


class WorkshopApiError(WorkshopError):
    """The data service rejected a request (application-level error)."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        table: str = "",
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.table = table
        self.status_code = status_code
        super().__init__(message)


class WorkshopRowNotFoundError(WorkshopApiError):
    """A single-row query matched no row (PostgREST ``PGRST116``).

    During startup this is how a valid auth session without an employee
    profile is recognised; it is handled as "not signed in", not as an error.
    """


class WorkshopAuthenticationError(WorkshopApiError):
    """Sign-in failed or the session is no longer accepted."""


class WorkshopSessionExpiredError(WorkshopAuthenticationError):
    """Access token rejected by the server (HTTP 401 / JWT expired).

    Raised from row/storage calls; callers may refresh the session and retry.
    """


class WorkshopMutationError(WorkshopError):
    """A create/update/delete was rejected by the data service.

    The cache is never modified when this is raised.
    """

    def __init__(self, message: str, *, table: str = "", operation: str = "") -> None:
        self.table = table
        self.operation = operation
        super().__init__(message)


class WorkshopSessionInitError(WorkshopError):
    """Session initialisation failed or exceeded its time ceiling."""
