"""Error taxonomy for the integration core.

Validation and terminal errors are surfaced immediately and never retried.
Transient errors are retried internally and only escape once the retry budget
is exhausted.
"""

from __future__ import annotations

from typing import Any


class IntegrationError(Exception):
    """Base class for every failure raised by the integration core."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        connection_id: str | None = None,
        resource_id: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.connection_id = connection_id
        self.resource_id = resource_id
        self.status_code = status_code
        self.details = details or {}

    def context(self) -> dict[str, Any]:
        """Return a serializable view for audit entries and API responses."""
        payload: dict[str, Any] = {
            "error": type(self).__name__,
            "message": self.message,
        }
        if self.connection_id:
            payload["connection_id"] = self.connection_id
        if self.resource_id:
            payload["resource_id"] = self.resource_id
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidIdentifier(IntegrationError):
    """National identifier failed the format or checksum check."""


class AuthError(IntegrationError):
    """Credential exchange failed."""


class TerminalAuthError(AuthError):
    """Credentials rejected; the connection is degraded until reconnected."""


class RetryableAuthError(AuthError):
    """Credential exchange failed for a transient reason."""

    retryable = True


class TransientNetworkError(IntegrationError):
    """Timeout, transport failure or 5xx from the remote side."""

    retryable = True


class RateLimited(TransientNetworkError):
    """Remote side answered 429; ``retry_after`` carries its hint in seconds."""

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class RejectedError(IntegrationError):
    """Non-retryable 4xx answer from the remote protocol."""


class NotFound(IntegrationError):
    """No matching resource exists on the remote side."""


class MappingError(IntegrationError):
    """Remote payload did not match the expected schema."""


class SubmissionRejected(IntegrationError):
    """Remote validation rejected a specific transfer or compliance item."""


class AuditWriteFailure(IntegrationError):
    """Audit log could not be written; the triggering operation fails closed."""
