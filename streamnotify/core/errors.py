"""Error hierarchy shared by the API client, the registry and the routers.

Every error carries structured context so callers branch on the class, never
on message text. ``status_code`` and ``public_message`` describe what the
registration API answers; the detailed ``message`` and upstream fields are
only ever logged.
"""

from __future__ import annotations


class NotifierError(Exception):
    """Base class for all service errors."""

    status_code: int = 500
    public_message: str = "Internal server error"

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        status: int | None = None,
        upstream_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.status = status
        self.upstream_message = upstream_message

    def context(self) -> str:
        """One-line summary for log records."""
        parts = [f"{type(self).__name__}: {self.message}"]
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.status is not None:
            parts.append(f"status={self.status}")
        if self.upstream_message:
            parts.append(f"upstream={self.upstream_message!r}")
        return " | ".join(parts)


class TransportError(NotifierError):
    """The request to Twitch could not be sent or timed out."""

    status_code = 502
    public_message = "Upstream service unreachable"


class RemoteApiError(NotifierError):
    """Twitch answered with a status we do not treat as success."""

    status_code = 502
    public_message = "Upstream service error"


class AuthError(NotifierError):
    """Twitch rejected the credentials we presented."""

    status_code = 502
    public_message = "Upstream authorization failed"


class ConflictError(NotifierError):
    """The resource already exists (duplicate registration, existing subscription)."""

    status_code = 409
    public_message = "Notification already registered"


class PersistenceError(NotifierError):
    """The database failed or is unavailable."""

    status_code = 503
    public_message = "Database unavailable"


class ValidationError(NotifierError):
    """Malformed inbound payload or unknown resource."""

    status_code = 400
    public_message = "Bad request"


class ConcurrencyError(NotifierError):
    """An internal lock could not be acquired in time."""

    status_code = 503
    public_message = "Service busy, retry later"


class InternalError(NotifierError):
    """An invariant was violated, e.g. Twitch reports a conflict we cannot find."""

    status_code = 500
    public_message = "Internal server error"
