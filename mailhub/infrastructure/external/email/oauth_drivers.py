"""OAuth provider drivers: refresh-token exchange per backend.

Authorization-code exchange and consent screens live outside this service;
drivers only turn a refresh token into a new access token and classify
failures into the shared error taxonomy.
"""

from __future__ import annotations

from abc import ABC
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, ClassVar

import httpx

from mailhub.domain.enums import BackendKind
from mailhub.infrastructure.external.email.errors import (
    translate_oauth_response,
    translate_transport_error,
)
from mailhub.shared.telemetry.logging import get_logger
from mailhub.shared.utils.datetime import utc_now

logger = get_logger(__name__)


@dataclass
class OAuthTokens:
    """Normalized OAuth token response."""

    access_token: str
    refresh_token: str | None
    token_type: str
    expires_in: int
    expires_at: datetime
    scope: str
    provider_metadata: dict[str, Any] | None = None


class OAuthDriver(ABC):
    """Abstract OAuth driver: refresh-token grant against the backend's token endpoint."""

    PROVIDER_NAME: ClassVar[str]
    BACKEND_KIND: ClassVar[BackendKind]
    TOKEN_ENDPOINT: ClassVar[str]
    DEFAULT_SCOPES: ClassVar[tuple[str, ...]] = ()
    _SENSITIVE_KEYS: ClassVar[frozenset[str]] = frozenset(
        {"access_token", "refresh_token", "id_token"}
    )

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        scopes: list[str] | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = list(scopes) if scopes is not None else list(self.DEFAULT_SCOPES)
        self._shared_http = http_client
        self._timeout = timeout

    @property
    def provider_name(self) -> str:
        return self.PROVIDER_NAME

    @property
    def token_endpoint(self) -> str:
        return self.TOKEN_ENDPOINT

    @asynccontextmanager
    async def _http_cm(self) -> AsyncIterator[httpx.AsyncClient]:
        """Yield shared HTTP client or a short-lived one (connection reuse when shared)."""
        if self._shared_http is not None:
            yield self._shared_http
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    def _refresh_params(self, refresh_token: str) -> dict[str, str]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    async def refresh_access_token(self, account_id: str, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        Raises:
            AuthExpiredException: Refresh token rejected (credential_revoked=True
                for invalid_grant).
            RateLimitedException: Token endpoint throttled.
            BackendUnavailableException: Network failure or 5xx.
        """
        try:
            async with self._http_cm() as client:
                response = await client.post(
                    self.token_endpoint, data=self._refresh_params(refresh_token)
                )
        except httpx.TransportError as e:
            raise translate_transport_error(e, self.BACKEND_KIND) from e
        if response.status_code != 200:
            logger.error(
                "%s token refresh failed: status=%d account=%s",
                self.provider_name,
                response.status_code,
                account_id,
            )
            raise translate_oauth_response(
                response, account_id=account_id, backend=self.BACKEND_KIND
            )
        return self._normalize_token_response(response.json())

    def _normalize_token_response(self, token_data: dict[str, Any]) -> OAuthTokens:
        """Normalize provider response to OAuthTokens (refresh_token None when not rotated)."""
        expires_in = int(token_data.get("expires_in", 3600))
        expires_at = utc_now() + timedelta(seconds=expires_in)
        safe_metadata = {
            k: v for k, v in token_data.items() if k not in self._SENSITIVE_KEYS
        }
        return OAuthTokens(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            token_type=token_data.get("token_type", "Bearer"),
            expires_in=expires_in,
            expires_at=expires_at,
            scope=token_data.get("scope", " ".join(self.scopes)),
            provider_metadata=safe_metadata,
        )


class GmailDriver(OAuthDriver):
    """Google OAuth driver."""

    PROVIDER_NAME = "Gmail"
    BACKEND_KIND = BackendKind.GMAIL
    TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
    DEFAULT_SCOPES = ("https://www.googleapis.com/auth/gmail.modify",)


class OutlookDriver(OAuthDriver):
    """Microsoft identity platform driver (v2.0 endpoint, tenant-scoped)."""

    PROVIDER_NAME = "Microsoft 365"
    BACKEND_KIND = BackendKind.OUTLOOK
    TOKEN_ENDPOINT = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
    DEFAULT_SCOPES = (
        "offline_access",
        "https://graph.microsoft.com/Mail.ReadWrite",
        "https://graph.microsoft.com/Mail.Send",
    )

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        scopes: list[str] | None = None,
        *,
        tenant: str = "common",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(
            client_id, client_secret, scopes, http_client=http_client, timeout=timeout
        )
        self.tenant = tenant

    @property
    def token_endpoint(self) -> str:
        return self.TOKEN_ENDPOINT.format(tenant=self.tenant)

    def _refresh_params(self, refresh_token: str) -> dict[str, str]:
        # Microsoft requires scope on refresh; it may rotate the refresh token.
        return {**super()._refresh_params(refresh_token), "scope": " ".join(self.scopes)}


class OAuthDriverRegistry:
    """Driver class per backend kind (closed set)."""

    _drivers: ClassVar[dict[BackendKind, type[OAuthDriver]]] = {
        BackendKind.GMAIL: GmailDriver,
        BackendKind.OUTLOOK: OutlookDriver,
    }

    @classmethod
    def driver_class(cls, kind: BackendKind) -> type[OAuthDriver]:
        try:
            return cls._drivers[kind]
        except KeyError:
            raise ValueError(
                f"Unsupported backend: {kind}. Supported: {', '.join(k.value for k in cls._drivers)}"
            ) from None

    @classmethod
    def list_backends(cls) -> list[BackendKind]:
        return list(cls._drivers.keys())
