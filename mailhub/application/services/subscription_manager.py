"""Push subscription lifecycle: register, renew, expire, revoke.

The manager is the only writer of subscription records. All transitions for
one account run under that account's lock, so a scheduled renewal, a
lifecycle-triggered renewal and an explicit cancel never interleave.
"""

from __future__ import annotations

import asyncio
import hmac
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from datetime import datetime, timedelta

from mailhub.application.interfaces.repositories import ISubscriptionRepository
from mailhub.application.services.provider_resolver import ProviderResolver
from mailhub.domain.entities import Subscription
from mailhub.domain.enums import BackendKind, SubscriptionState
from mailhub.domain.exceptions import (
    MailhubException,
    NotFoundException,
    SubscriptionExpiredException,
    ValidationException,
)
from mailhub.infrastructure.external.email.protocols import IMailboxAdapter, SubscriptionGrant
from mailhub.shared.telemetry.logging import get_logger
from mailhub.shared.telemetry.metrics import MailhubMetrics
from mailhub.shared.telemetry.tracing import traced
from mailhub.shared.utils.datetime import Clock, SystemClock
from mailhub.shared.utils.generators import generate_client_secret
from mailhub.shared.utils.locks import KeyedLocks
from mailhub.shared.utils.retry import RetryPolicy, retry_async

logger = get_logger(__name__)

_LIVE_STATES = frozenset({SubscriptionState.ACTIVE, SubscriptionState.RENEWAL_DUE})
# Granted expiries this much shorter than requested are reported.
_SHORT_GRANT_TOLERANCE = timedelta(minutes=1)


class SubscriptionManager:
    """Per-account subscription state machine driver."""

    def __init__(
        self,
        subscription_repo: ISubscriptionRepository,
        resolver: ProviderResolver,
        *,
        callback_urls: Mapping[BackendKind, str] | None = None,
        shared_secrets: Mapping[BackendKind, str] | None = None,
        lifetime: timedelta = timedelta(minutes=4230),
        renewal_margin: timedelta = timedelta(hours=1),
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        metrics: MailhubMetrics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Args:
            callback_urls: Notification URL per backend (Gmail pushes through a
                Pub/Sub topic configured on the adapter and needs none).
            shared_secrets: Fixed validation secret per backend. Backends absent
                here get a fresh random secret per registration.
        """
        self.subscription_repo = subscription_repo
        self.resolver = resolver
        self._callback_urls = dict(callback_urls or {})
        self._shared_secrets = dict(shared_secrets or {})
        self._lifetime = lifetime
        self._renewal_margin = renewal_margin
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self._clock = clock or SystemClock()
        self._metrics = metrics or MailhubMetrics()
        self._sleep = sleep
        self._locks: KeyedLocks[asyncio.Lock] = KeyedLocks(asyncio.Lock)

    # ---- reads ----

    async def get(self, account_id: str) -> Subscription | None:
        return await self.subscription_repo.get(account_id)

    async def find_by_backend_id(self, backend_subscription_id: str) -> Subscription | None:
        return await self.subscription_repo.get_by_backend_id(backend_subscription_id)

    async def require_active(self, account_id: str) -> Subscription:
        """Return the subscription if it accepts notifications.

        Raises:
            SubscriptionExpiredException: Missing or not ACTIVE/RENEWAL_DUE.
        """
        subscription = await self.subscription_repo.get(account_id)
        if subscription is None:
            raise SubscriptionExpiredException(account_id, SubscriptionState.UNREGISTERED.value)
        if subscription.state not in _LIVE_STATES:
            raise SubscriptionExpiredException(
                account_id, subscription.state.value, subscription.failure_reason
            )
        return subscription

    # ---- registration ----

    def _requested_expiry(self, adapter: IMailboxAdapter, now: datetime) -> datetime:
        ceiling = timedelta(minutes=adapter.max_subscription_lifetime_minutes)
        if self._lifetime > ceiling:
            logger.debug(
                "Requested lifetime %s exceeds %s maximum %s",
                self._lifetime,
                adapter.backend_kind.value,
                ceiling,
            )
        return now + min(self._lifetime, ceiling)

    def _secret_for(self, kind: BackendKind) -> str:
        if kind in self._shared_secrets:
            return self._shared_secrets[kind]
        if kind == BackendKind.GMAIL:
            # Pub/Sub pushes carry the token configured on the push subscription.
            raise ValidationException(
                "Gmail push verification token is not configured",
                field="gmail_push_verification_token",
            )
        return generate_client_secret()

    def _callback_for(self, kind: BackendKind) -> str:
        url = self._callback_urls.get(kind, "")
        if kind == BackendKind.OUTLOOK and not url:
            raise ValidationException(
                "Outlook notification URL is not configured", field="outlook_notification_url"
            )
        return url

    def _record_grant(
        self, subscription: Subscription, grant: SubscriptionGrant, requested: datetime
    ) -> Subscription:
        """ACTIVE with what the backend granted, not what was requested."""
        if grant.expires_at < requested - _SHORT_GRANT_TOLERANCE:
            logger.warning(
                "Subscription for account %s granted until %s, requested %s",
                subscription.account_id,
                grant.expires_at.isoformat(),
                requested.isoformat(),
            )
        return subscription.transition_to(
            SubscriptionState.ACTIVE,
            backend_subscription_id=grant.backend_subscription_id,
            expires_at=grant.expires_at,
            history_cursor=subscription.history_cursor or grant.history_cursor,
            failure_reason=None,
            renewal_attempts=0,
        )

    @traced("subscription.subscribe")
    async def subscribe(self, account_id: str) -> Subscription:
        """Register change notifications for an account.

        A live subscription is returned unchanged. Expired, revoked or never
        registered accounts start a fresh Pending -> Active cycle.
        """
        async with self._locks[account_id]:
            existing = await self.subscription_repo.get(account_id)
            if existing is not None and existing.state in _LIVE_STATES:
                return existing
            account = await self.resolver.get_account(account_id)
            base = existing or Subscription(account_id=account_id, backend_kind=account.backend_kind)
            if base.state == SubscriptionState.PENDING:
                # Left over from an interrupted registration.
                base = base.transition_to(SubscriptionState.UNREGISTERED)
            async with self.resolver.adapter_for(account_id) as adapter:
                now = self._clock.now()
                requested = self._requested_expiry(adapter, now)
                pending = base.transition_to(
                    SubscriptionState.PENDING,
                    backend_subscription_id=None,
                    expires_at=None,
                    client_secret=self._secret_for(adapter.backend_kind),
                    callback_url=self._callback_for(adapter.backend_kind),
                    requested_expiry=requested,
                    history_cursor=None,
                    failure_reason=None,
                    renewal_attempts=0,
                )
                await self.subscription_repo.save(pending)
                try:
                    grant = await retry_async(
                        lambda: adapter.create_subscription(
                            callback_url=pending.callback_url or "",
                            expires_at=requested,
                            client_secret=pending.client_secret or "",
                        ),
                        self._retry_policy,
                        description=f"subscription registration for {account_id}",
                        sleep=self._sleep,
                    )
                except MailhubException as e:
                    await self.subscription_repo.save(
                        pending.transition_to(
                            SubscriptionState.UNREGISTERED,
                            failure_reason=f"{e.error_code}: {e.message}",
                        )
                    )
                    logger.error("Subscription registration failed for account %s: %s", account_id, e.message)
                    raise
            active = self._record_grant(pending, grant, requested)
            await self.subscription_repo.save(active)
            logger.info(
                "Subscription active for account %s until %s",
                account_id,
                active.expires_at.isoformat() if active.expires_at else None,
            )
            return active

    # ---- renewal ----

    @traced("subscription.renew")
    async def renew(self, account_id: str) -> Subscription:
        """Renew now, whatever the remaining lifetime.

        Raises:
            NotFoundException: No subscription for the account.
            SubscriptionExpiredException: Not live, lapsed before renewal, or
                the backend refused the renewal (the record is now Expired).
        """
        async with self._locks[account_id]:
            subscription = await self.subscription_repo.get(account_id)
            if subscription is None:
                raise NotFoundException("subscription", account_id)
            return await self._renew_locked(subscription)

    async def _renew_if_due(self, account_id: str) -> Subscription | None:
        async with self._locks[account_id]:
            subscription = await self.subscription_repo.get(account_id)
            if subscription is None or not self._is_due(subscription, self._clock.now()):
                return None
            return await self._renew_locked(subscription)

    def _is_due(self, subscription: Subscription, now: datetime) -> bool:
        # RENEWAL_DUE at rest means a renewal was interrupted.
        return subscription.state == SubscriptionState.RENEWAL_DUE or subscription.renewal_due(
            now, self._renewal_margin
        )

    async def _expire(self, subscription: Subscription, reason: str) -> Subscription:
        expired = subscription.transition_to(
            SubscriptionState.EXPIRED,
            failure_reason=reason,
            renewal_attempts=subscription.renewal_attempts + 1,
        )
        await self.subscription_repo.save(expired)
        self._metrics.record_renewal(subscription.backend_kind.value, "expired")
        logger.warning("Subscription for account %s expired: %s", subscription.account_id, reason)
        return expired

    async def _renew_locked(self, subscription: Subscription) -> Subscription:
        account_id = subscription.account_id
        if subscription.state == SubscriptionState.ACTIVE:
            subscription = subscription.transition_to(SubscriptionState.RENEWAL_DUE)
            await self.subscription_repo.save(subscription)
        elif subscription.state != SubscriptionState.RENEWAL_DUE:
            raise SubscriptionExpiredException(
                account_id, subscription.state.value, subscription.failure_reason
            )

        now = self._clock.now()
        if subscription.is_lapsed(now):
            reason = "backend expiry passed before renewal"
            await self._expire(subscription, reason)
            raise SubscriptionExpiredException(account_id, SubscriptionState.EXPIRED.value, reason)

        try:
            async with self.resolver.adapter_for(account_id) as adapter:
                requested = self._requested_expiry(adapter, now)
                grant = await retry_async(
                    lambda: adapter.renew_subscription(
                        subscription.backend_subscription_id or "",
                        callback_url=subscription.callback_url or "",
                        expires_at=requested,
                        client_secret=subscription.client_secret or "",
                    ),
                    self._retry_policy,
                    description=f"subscription renewal for {account_id}",
                    sleep=self._sleep,
                )
        except MailhubException as e:
            reason = f"{e.error_code}: {e.message}"
            await self._expire(subscription, reason)
            raise SubscriptionExpiredException(
                account_id, SubscriptionState.EXPIRED.value, reason
            ) from e

        renewed = self._record_grant(subscription, grant, requested)
        await self.subscription_repo.save(renewed)
        self._metrics.record_renewal(subscription.backend_kind.value, "renewed")
        logger.info(
            "Subscription renewed for account %s until %s",
            account_id,
            renewed.expires_at.isoformat() if renewed.expires_at else None,
        )
        return renewed

    async def renew_due(self) -> list[Subscription]:
        """Renew every subscription inside its renewal margin (scheduler tick).

        Accounts renew concurrently; one account's failure does not stop the
        others. Returns the subscriptions renewed on this tick.
        """
        now = self._clock.now()
        due = [s.account_id for s in await self.subscription_repo.list_all() if self._is_due(s, now)]
        if not due:
            return []
        results = await asyncio.gather(
            *(self._renew_if_due(account_id) for account_id in due), return_exceptions=True
        )
        renewed: list[Subscription] = []
        for account_id, result in zip(due, results):
            if isinstance(result, Subscription):
                renewed.append(result)
            elif isinstance(result, MailhubException):
                logger.warning("Renewal for account %s failed: %s", account_id, result.message)
            elif isinstance(result, BaseException):
                raise result
        return renewed

    # ---- backend-driven and explicit endings ----

    async def mark_expired(self, account_id: str, reason: str) -> Subscription:
        """The backend removed the subscription on its side."""
        async with self._locks[account_id]:
            subscription = await self.subscription_repo.get(account_id)
            if subscription is None:
                raise NotFoundException("subscription", account_id)
            if subscription.state not in _LIVE_STATES:
                return subscription
            return await self._expire(subscription, reason)

    async def unsubscribe(self, account_id: str) -> Subscription:
        """Cancel notifications. Best-effort on the backend, always local."""
        async with self._locks[account_id]:
            subscription = await self.subscription_repo.get(account_id)
            if subscription is None:
                raise NotFoundException("subscription", account_id)
            if subscription.state == SubscriptionState.REVOKED:
                return subscription
            if subscription.state == SubscriptionState.RENEWAL_DUE:
                subscription = subscription.transition_to(
                    SubscriptionState.EXPIRED, failure_reason="cancelled during renewal"
                )
            if not subscription.can_transition_to(SubscriptionState.REVOKED):
                raise ValidationException(
                    f"No registered subscription to cancel (state={subscription.state.value})",
                    field="state",
                )
            if subscription.backend_subscription_id:
                try:
                    async with self.resolver.adapter_for(account_id) as adapter:
                        await adapter.cancel_subscription(subscription.backend_subscription_id)
                except MailhubException as e:
                    logger.warning(
                        "Backend cancel failed for account %s (revoking locally): %s",
                        account_id,
                        e.message,
                    )
            revoked = subscription.transition_to(SubscriptionState.REVOKED)
            await self.subscription_repo.save(revoked)
            logger.info("Subscription revoked for account %s", account_id)
            return revoked

    async def handle_lifecycle_event(
        self, backend_subscription_id: str, event: str, presented_secret: str | None
    ) -> Subscription | None:
        """Apply a Graph lifecycle notification.

        reauthorizationRequired renews now, subscriptionRemoved expires the
        record, missed is only logged (the next delta catches up). Events
        whose clientState does not match are dropped.
        """
        subscription = await self.find_by_backend_id(backend_subscription_id)
        if subscription is None:
            logger.warning("Lifecycle event %s for unknown subscription %s", event, backend_subscription_id)
            return None
        if not subscription.client_secret or presented_secret is None or not hmac.compare_digest(
            subscription.client_secret.encode(), presented_secret.encode()
        ):
            logger.warning(
                "Dropping lifecycle event %s for account %s: secret mismatch",
                event,
                subscription.account_id,
            )
            return None
        if event == "reauthorizationRequired":
            return await self.renew(subscription.account_id)
        if event == "subscriptionRemoved":
            return await self.mark_expired(subscription.account_id, "removed by backend")
        logger.info("Lifecycle event %s for account %s", event, subscription.account_id)
        return subscription

    # ---- notification expansion state ----

    async def advance_history_cursor(self, account_id: str, cursor: str) -> Subscription | None:
        """Record where incremental change listing resumes for the account."""
        async with self._locks[account_id]:
            subscription = await self.subscription_repo.get(account_id)
            if subscription is None or subscription.history_cursor == cursor:
                return subscription
            updated = replace(subscription, history_cursor=cursor)
            await self.subscription_repo.save(updated)
            return updated


class RenewalScheduler:
    """Background loop that renews subscriptions as they enter the renewal margin.

    Each tick also runs `redeliver` (the dispatcher's outbox drain) so events
    left behind by a failed consumer do not wait for the account's next
    notification.
    """

    def __init__(
        self,
        manager: SubscriptionManager,
        *,
        interval_seconds: float = 60.0,
        redeliver: Callable[[], Awaitable[None]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.manager = manager
        self._redeliver = redeliver
        self._interval = interval_seconds
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    async def run_once(self) -> list[Subscription]:
        try:
            return await self.manager.renew_due()
        finally:
            if self._redeliver is not None:
                await self._redeliver()

    async def run(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Subscription renewal tick failed")
            await self._sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="subscription-renewal")
            logger.info("Subscription renewal scheduler started (every %ss)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Subscription renewal scheduler stopped")
