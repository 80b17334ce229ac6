"""Translation of backend-native failures into the shared error taxonomy.

Only this module knows how Google and Microsoft report errors. Adapters and
OAuth drivers call into it so nothing past the adapter boundary ever sees an
HttpError, an httpx response, or a Graph error body.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from mailhub.domain.enums import BackendKind
from mailhub.domain.exceptions import (
    AuthExpiredException,
    BackendUnavailableException,
    MailhubException,
    NotFoundException,
    RateLimitedException,
    ValidationException,
)

# Gmail 403 reasons that mean throttling rather than a permission problem.
GMAIL_RATE_LIMIT_REASONS = frozenset({
    "rateLimitExceeded",
    "userRateLimitExceeded",
    "quotaExceeded",
    "dailyLimitExceeded",
})

# Graph error codes that mean the referenced item is gone.
GRAPH_NOT_FOUND_CODES = frozenset({
    "ErrorItemNotFound",
    "ResourceNotFound",
    "itemNotFound",
    "ErrorFolderNotFound",
})

# OAuth error codes meaning the refresh token itself is dead.
OAUTH_REVOKED_CODES = frozenset({"invalid_grant"})


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After header in seconds (HTTP-date form is ignored)."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_for_status(
    status: int,
    *,
    backend: BackendKind,
    account_id: str,
    resource: tuple[str, str] | None = None,
    message: str = "",
    retry_after: float | None = None,
) -> MailhubException:
    """Map an HTTP status to the taxonomy (status-only view; callers refine by code)."""
    text = message or f"{backend.value} request failed with status {status}"
    if status == 401:
        return AuthExpiredException(account_id, message=text)
    if status == 429:
        return RateLimitedException(text, retry_after=retry_after, backend=backend.value)
    if status in (404, 410):
        resource_type, resource_id = resource or ("resource", "unknown")
        return NotFoundException(resource_type, resource_id)
    if status >= 500:
        return BackendUnavailableException(text, backend=backend.value, retry_after=retry_after)
    if status == 408:
        return BackendUnavailableException(text, backend=backend.value)
    return ValidationException(text)


def _gmail_error_payload(content: bytes | str | None) -> tuple[str, str]:
    """Return (reason, message) from a Gmail error body."""
    if not content:
        return "", ""
    try:
        data = json.loads(content)
    except (ValueError, TypeError):
        return "", ""
    error = data.get("error", {}) if isinstance(data, dict) else {}
    if not isinstance(error, dict):
        return "", str(error)
    errors = error.get("errors") or []
    reason = errors[0].get("reason", "") if errors and isinstance(errors[0], dict) else ""
    if not reason:
        details = error.get("details") or []
        for detail in details:
            if isinstance(detail, dict) and detail.get("reason"):
                reason = str(detail["reason"])
                break
    return reason, str(error.get("message", ""))


def translate_gmail_http_error(
    exc: Any,
    *,
    account_id: str,
    resource: tuple[str, str] | None = None,
) -> MailhubException:
    """Translate googleapiclient.errors.HttpError (duck-typed on resp/content)."""
    status = int(getattr(exc.resp, "status", 0) or 0)
    reason, message = _gmail_error_payload(getattr(exc, "content", None))
    retry_after = parse_retry_after(
        exc.resp.get("retry-after") if hasattr(exc.resp, "get") else None
    )
    if status == 403 and reason in GMAIL_RATE_LIMIT_REASONS:
        return RateLimitedException(
            message or reason, retry_after=retry_after, backend=BackendKind.GMAIL.value
        )
    if status == 400 and reason == "failedPrecondition":
        return ValidationException(message or "Gmail rejected the request")
    return error_for_status(
        status,
        backend=BackendKind.GMAIL,
        account_id=account_id,
        resource=resource,
        message=message,
        retry_after=retry_after,
    )


def translate_graph_response(
    response: httpx.Response,
    *,
    account_id: str,
    resource: tuple[str, str] | None = None,
) -> MailhubException:
    """Translate a non-2xx Microsoft Graph response."""
    code = ""
    message = ""
    try:
        body = response.json()
        error = body.get("error", {}) if isinstance(body, dict) else {}
        if isinstance(error, dict):
            code = str(error.get("code", ""))
            message = str(error.get("message", ""))
    except ValueError:
        pass
    retry_after = parse_retry_after(response.headers.get("Retry-After"))
    status = response.status_code
    if code in GRAPH_NOT_FOUND_CODES and status in (400, 404):
        resource_type, resource_id = resource or ("resource", "unknown")
        return NotFoundException(resource_type, resource_id)
    if code == "ApplicationThrottled" or code == "TooManyRequests":
        return RateLimitedException(
            message or code, retry_after=retry_after, backend=BackendKind.OUTLOOK.value
        )
    return error_for_status(
        status,
        backend=BackendKind.OUTLOOK,
        account_id=account_id,
        resource=resource,
        message=f"{code}: {message}" if code else message,
        retry_after=retry_after,
    )


def translate_transport_error(exc: Exception, backend: BackendKind) -> BackendUnavailableException:
    """Network-level failure (connect/read errors, DNS, TLS)."""
    return BackendUnavailableException(
        f"{backend.value} unreachable: {exc.__class__.__name__}", backend=backend.value
    )


def translate_oauth_response(
    response: httpx.Response,
    *,
    account_id: str,
    backend: BackendKind,
) -> MailhubException:
    """Translate a failed refresh-token exchange.

    invalid_grant means the refresh token is revoked or expired for good; the
    credential must be marked revoked. Other 4xx are terminal for the call but
    do not revoke (e.g. a misconfigured client secret).
    """
    status = response.status_code
    error_code = ""
    description = ""
    try:
        body = response.json()
        if isinstance(body, dict):
            error_code = str(body.get("error", ""))
            description = str(body.get("error_description", ""))
    except ValueError:
        pass
    retry_after = parse_retry_after(response.headers.get("Retry-After"))
    if error_code in OAUTH_REVOKED_CODES:
        return AuthExpiredException(
            account_id,
            message=f"{backend.value} refresh token rejected: {error_code}",
            credential_revoked=True,
        )
    if status == 429:
        return RateLimitedException(
            "Token endpoint throttled", retry_after=retry_after, backend=backend.value
        )
    if status >= 500 or status == 408:
        return BackendUnavailableException(
            f"Token endpoint unavailable (status {status})",
            backend=backend.value,
            retry_after=retry_after,
        )
    return AuthExpiredException(
        account_id,
        message=f"{backend.value} token refresh failed: {error_code or status} {description}".strip(),
        credential_revoked=False,
    )
