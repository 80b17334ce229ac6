"""Credential lifecycle manager: keeps per-account access tokens live.

At most one refresh exchange runs per account at a time. Concurrent callers
that find the credential inside the safety margin share the in-flight refresh
instead of issuing their own; a flight re-reads the store before refreshing,
so callers that arrive just after a refresh completed see the new credential
and trigger nothing.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta

from mailhub.application.interfaces.repositories import ICredentialRepository
from mailhub.domain.entities import Credential, CredentialLease
from mailhub.domain.enums import BackendKind
from mailhub.domain.exceptions import (
    AuthExpiredException,
    BackendUnavailableException,
    MailhubException,
    NotFoundException,
)
from mailhub.infrastructure.external.email.oauth_drivers import OAuthDriver
from mailhub.shared.telemetry.logging import get_logger
from mailhub.shared.telemetry.metrics import MailhubMetrics
from mailhub.shared.telemetry.tracing import traced
from mailhub.shared.utils.datetime import Clock, SystemClock
from mailhub.shared.utils.retry import RetryPolicy, retry_async

logger = get_logger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(minutes=2)
DEFAULT_LEASE_TTL = timedelta(minutes=5)


class CredentialLifecycleManager:
    """Sole writer of credential records."""

    def __init__(
        self,
        credential_repo: ICredentialRepository,
        drivers: Mapping[BackendKind, OAuthDriver],
        *,
        clock: Clock | None = None,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        lease_ttl: timedelta = DEFAULT_LEASE_TTL,
        retry_policy: RetryPolicy | None = None,
        metrics: MailhubMetrics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.credential_repo = credential_repo
        self._drivers = dict(drivers)
        self._clock = clock or SystemClock()
        self._refresh_margin = refresh_margin
        self._lease_ttl = lease_ttl
        self._retry_policy = retry_policy or RetryPolicy()
        self._metrics = metrics or MailhubMetrics()
        self._sleep = sleep
        self._inflight: dict[str, asyncio.Task[Credential]] = {}

    async def register_credential(self, credential: Credential) -> None:
        """Store a newly authorized credential (replaces any previous one)."""
        await self.credential_repo.replace(credential)
        logger.info(
            "Credential registered for account %s (%s)",
            credential.account_id,
            credential.backend_kind.value,
        )

    async def acquire_live_credential(self, account_id: str) -> Credential:
        """Return a credential valid beyond the safety margin, refreshing if needed.

        Raises:
            NotFoundException: No credential stored for the account.
            AuthExpiredException: Credential revoked or refresh rejected.
            BackendUnavailableException: Refresh kept failing transiently.
        """
        credential = await self._load(account_id)
        if not credential.needs_refresh(self._clock.now(), self._refresh_margin):
            return credential
        flight = self._inflight.get(account_id)
        if flight is None:
            flight = asyncio.create_task(self._refresh_flight(account_id))
            self._inflight[account_id] = flight
            flight.add_done_callback(lambda t: self._flight_done(account_id, t))
        # A cancelled caller must not cancel the refresh other callers share.
        return await asyncio.shield(flight)

    async def lease(self, account_id: str) -> CredentialLease:
        """Time-boxed read-only view of a live credential for an adapter."""
        credential = await self.acquire_live_credential(account_id)
        expires_at = min(credential.expires_at, self._clock.now() + self._lease_ttl)
        return CredentialLease(
            account_id=credential.account_id,
            backend_kind=credential.backend_kind,
            access_token=credential.access_token,
            expires_at=expires_at,
            credential_version=credential.version,
        )

    def refresh_in_flight(self, account_id: str) -> bool:
        return account_id in self._inflight

    def _flight_done(self, account_id: str, task: asyncio.Task[Credential]) -> None:
        if self._inflight.get(account_id) is task:
            del self._inflight[account_id]
        if not task.cancelled():
            # Mark the outcome retrieved even if every waiter went away.
            task.exception()

    async def _load(self, account_id: str) -> Credential:
        credential = await self.credential_repo.get(account_id)
        if credential is None:
            raise NotFoundException("credential", account_id)
        if credential.is_revoked:
            raise AuthExpiredException(
                account_id,
                message="Credential revoked; re-authorization required",
                credential_revoked=True,
            )
        return credential

    async def _refresh_flight(self, account_id: str) -> Credential:
        credential = await self._load(account_id)
        if not credential.needs_refresh(self._clock.now(), self._refresh_margin):
            return credential
        return await self._refresh(credential)

    @traced("credential.refresh")
    async def _refresh(self, credential: Credential) -> Credential:
        account_id = credential.account_id
        backend = credential.backend_kind.value
        if not credential.refresh_token:
            self._metrics.record_refresh(backend, "failure")
            raise AuthExpiredException(
                account_id, message="No refresh token stored; re-authorization required"
            )
        driver = self._drivers[credential.backend_kind]
        refresh_token = credential.refresh_token
        try:
            tokens = await retry_async(
                lambda: driver.refresh_access_token(account_id, refresh_token),
                self._retry_policy,
                description=f"credential refresh for {account_id}",
                sleep=self._sleep,
            )
        except AuthExpiredException as e:
            if e.credential_revoked:
                await self.credential_repo.replace(credential.revoked(self._clock.now()))
                self._metrics.record_refresh(backend, "revoked")
                logger.warning("Credential revoked for account %s: %s", account_id, e.message)
            else:
                self._metrics.record_refresh(backend, "failure")
                logger.error("Credential refresh rejected for account %s: %s", account_id, e.message)
            raise
        except MailhubException as e:
            self._metrics.record_refresh(backend, "failure")
            if not e.retryable:
                raise
            logger.error(
                "Credential refresh for account %s failed after %d attempts: %s",
                account_id,
                self._retry_policy.max_attempts,
                e.message,
            )
            raise BackendUnavailableException(
                f"Credential refresh for account {account_id} failed after "
                f"{self._retry_policy.max_attempts} attempts",
                backend=backend,
            ) from e

        refreshed = credential.refreshed(
            tokens.access_token,
            tokens.refresh_token,
            self._clock.now() + timedelta(seconds=tokens.expires_in),
        )
        await self.credential_repo.replace(refreshed)
        self._metrics.record_refresh(backend, "success")
        logger.info(
            "Credential refreshed for account %s (version %d, expires %s)",
            account_id,
            refreshed.version,
            refreshed.expires_at.isoformat(),
        )
        return refreshed
