"""Domain exceptions for mailhub.

Shared error taxonomy for every mailbox operation. Adapters translate
backend-native failures into these types so calling code never branches
on backend identity. The presentation layer maps them to HTTP responses
in exception handlers.
"""

from typing import Any


class MailhubException(Exception):
    """Base exception for all mailhub errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code.
        details: Additional error context (e.g. account_id, backend).
    """

    # Whether bounded internal retry may recover from this error.
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            error_code: Optional machine-readable code; defaults to class name.
            details: Optional dict of extra context.
        """
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class AuthExpiredException(MailhubException):
    """Credential unusable; the account must be re-authorized. Never retried."""

    def __init__(
        self,
        account_id: str,
        message: str = "Credential expired or revoked; re-authorization required",
        credential_revoked: bool = False,
    ) -> None:
        super().__init__(
            message,
            "AUTH_EXPIRED",
            {"account_id": account_id, "credential_revoked": credential_revoked},
        )

    @property
    def credential_revoked(self) -> bool:
        return bool(self.details.get("credential_revoked"))


class RateLimitedException(MailhubException):
    """Backend throttled the request (429 or quota reason)."""

    retryable = True

    def __init__(
        self,
        message: str = "Backend rate limit exceeded",
        retry_after: float | None = None,
        backend: str | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if retry_after is not None:
            details["retry_after"] = retry_after
        if backend:
            details["backend"] = backend
        super().__init__(message, "RATE_LIMITED", details)

    @property
    def retry_after(self) -> float | None:
        return self.details.get("retry_after")


class BackendUnavailableException(MailhubException):
    """Transient backend or network failure."""

    retryable = True

    def __init__(
        self,
        message: str = "Backend temporarily unavailable",
        backend: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if backend:
            details["backend"] = backend
        if retry_after is not None:
            details["retry_after"] = retry_after
        super().__init__(message, "BACKEND_UNAVAILABLE", details)

    @property
    def retry_after(self) -> float | None:
        return self.details.get("retry_after")


class NotFoundException(MailhubException):
    """Referenced entity is absent (at the backend or in a local store)."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            "NOT_FOUND",
            {"resource_type": resource_type, "resource_id": resource_id},
        )


class ValidationException(MailhubException):
    """Malformed or unsupported request shape."""

    def __init__(self, message: str, field: str | None = None) -> None:
        details = {"field": field} if field else {}
        super().__init__(message, "VALIDATION_ERROR", details)


class SubscriptionExpiredException(MailhubException):
    """Notifications requested against a subscription that is not active."""

    def __init__(self, account_id: str, state: str, reason: str | None = None) -> None:
        details: dict[str, Any] = {"account_id": account_id, "state": state}
        if reason:
            details["reason"] = reason
        super().__init__(
            f"Subscription for account {account_id} is not active (state={state})",
            "SUBSCRIPTION_EXPIRED",
            details,
        )


class OperationTimeoutException(MailhubException):
    """The caller's deadline elapsed before the backend call completed."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Operation {operation} exceeded its deadline of {timeout_seconds}s",
            "TIMEOUT",
            {"operation": operation, "timeout_seconds": timeout_seconds},
        )
