"""Change event dispatcher: inbound notifications -> ordered, deduplicated events.

Pipeline per notification:
    route to subscription -> validate shared secret and state -> deduplicate
    on (account, notification id) -> expand (Gmail history) -> assign
    per-account sequence numbers -> append to the account outbox -> deliver.

Everything after routing runs under a per-account lock, so sequence numbers
are handed out and delivered in one order per account no matter how the
webhook deliveries interleave. Consumers see at-least-once delivery and must
be idempotent on (account_id, sequence).
"""

from __future__ import annotations

import asyncio
import hmac
from collections import OrderedDict, defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from mailhub.application.interfaces.repositories import (
    IAccountRepository,
    IChangeSequenceRepository,
)
from mailhub.application.services.provider_resolver import ProviderResolver
from mailhub.application.services.subscription_manager import SubscriptionManager
from mailhub.domain.entities import (
    ChangeDescriptor,
    ChangeEvent,
    InboundNotification,
    Subscription,
)
from mailhub.domain.exceptions import NotFoundException
from mailhub.shared.telemetry.logging import get_logger
from mailhub.shared.telemetry.metrics import MailhubMetrics
from mailhub.shared.telemetry.tracing import add_span_attributes, traced
from mailhub.shared.utils.datetime import Clock, SystemClock
from mailhub.shared.utils.generators import generate_cuid
from mailhub.shared.utils.locks import KeyedLocks

logger = get_logger(__name__)

ChangeConsumer = Callable[[ChangeEvent], Awaitable[None]]


class DispatchOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    UNROUTABLE = "unroutable"


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    account_id: str | None = None
    events: list[ChangeEvent] = field(default_factory=list)


class NotificationDeduplicator:
    """Bounded-retention set of seen (account, notification id) keys.

    Keys older than the retention window are forgotten, so a very late
    redelivery is treated as new. The entry cap bounds memory under bursts.
    """

    def __init__(self, retention: timedelta, max_entries: int, clock: Clock) -> None:
        self._retention = retention
        self._max_entries = max_entries
        self._clock = clock
        self._seen: OrderedDict[tuple[str, str], datetime] = OrderedDict()

    def _purge(self, now: datetime) -> None:
        cutoff = now - self._retention
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff and len(self._seen) <= self._max_entries:
                break
            del self._seen[key]

    def seen(self, key: tuple[str, str]) -> bool:
        self._purge(self._clock.now())
        return key in self._seen

    def record(self, key: tuple[str, str]) -> None:
        now = self._clock.now()
        self._seen[key] = now
        self._seen.move_to_end(key)
        self._purge(now)

    def __len__(self) -> int:
        return len(self._seen)


class ChangeEventDispatcher:
    """Turns webhook notifications into per-account ordered ChangeEvents."""

    def __init__(
        self,
        subscription_manager: SubscriptionManager,
        account_repo: IAccountRepository,
        sequence_repo: IChangeSequenceRepository,
        resolver: ProviderResolver,
        *,
        consumers: list[ChangeConsumer] | None = None,
        clock: Clock | None = None,
        retention: timedelta = timedelta(hours=1),
        max_entries: int = 100_000,
        metrics: MailhubMetrics | None = None,
    ) -> None:
        self.subscription_manager = subscription_manager
        self.account_repo = account_repo
        self.sequence_repo = sequence_repo
        self.resolver = resolver
        self._consumers: list[ChangeConsumer] = list(consumers or [])
        self._clock = clock or SystemClock()
        self._dedup = NotificationDeduplicator(retention, max_entries, self._clock)
        self._metrics = metrics or MailhubMetrics()
        self._locks: KeyedLocks[asyncio.Lock] = KeyedLocks(asyncio.Lock)
        self._outbox: defaultdict[str, deque[ChangeEvent]] = defaultdict(deque)

    def add_consumer(self, consumer: ChangeConsumer) -> None:
        self._consumers.append(consumer)

    def pending(self, account_id: str) -> list[ChangeEvent]:
        """Events assigned but not yet delivered to every consumer."""
        return list(self._outbox.get(account_id, ()))

    async def _route(self, notification: InboundNotification) -> Subscription | None:
        if notification.backend_subscription_id:
            subscription = await self.subscription_manager.find_by_backend_id(
                notification.backend_subscription_id
            )
        elif notification.mailbox_address:
            account = await self.account_repo.get_by_email(notification.mailbox_address)
            subscription = (
                await self.subscription_manager.get(account.id) if account is not None else None
            )
        else:
            subscription = None
        if subscription is not None and subscription.backend_kind != notification.backend_kind:
            return None
        return subscription

    @staticmethod
    def _secret_matches(subscription: Subscription, presented: str | None) -> bool:
        if not subscription.client_secret or presented is None:
            return False
        return hmac.compare_digest(subscription.client_secret.encode(), presented.encode())

    @traced("notification.dispatch")
    async def dispatch(self, notification: InboundNotification) -> DispatchResult:
        """Validate, deduplicate, sequence and deliver one notification.

        Rejections are logged and counted, never raised: webhook callers get
        an acknowledgement regardless. The notification is recorded as seen
        only once its events are in the outbox; any earlier failure propagates
        and leaves it unrecorded, so a redelivery is processed.
        """
        backend = notification.backend_kind.value
        subscription = await self._route(notification)
        if subscription is None:
            self._metrics.record_notification(backend, "unroutable")
            logger.warning(
                "Dropping %s notification %s: no matching subscription",
                backend,
                notification.notification_id,
            )
            return DispatchResult(DispatchOutcome.UNROUTABLE)
        account_id = subscription.account_id
        add_span_attributes(account_id=account_id, backend=backend)
        if not self._secret_matches(subscription, notification.presented_secret):
            self._metrics.record_notification(backend, "rejected")
            logger.warning(
                "Dropping notification %s for account %s: secret mismatch",
                notification.notification_id,
                account_id,
            )
            return DispatchResult(DispatchOutcome.REJECTED, account_id)
        if not subscription.state.accepts_notifications:
            self._metrics.record_notification(backend, "rejected")
            logger.warning(
                "Dropping notification %s for account %s: subscription is %s",
                notification.notification_id,
                account_id,
                subscription.state.value,
            )
            return DispatchResult(DispatchOutcome.REJECTED, account_id)

        key = (account_id, notification.notification_id)
        async with self._locks[account_id]:
            if self._dedup.seen(key):
                self._metrics.record_notification(backend, "duplicate")
                logger.debug("Duplicate notification %s for account %s", key[1], account_id)
                return DispatchResult(DispatchOutcome.DUPLICATE, account_id)
            changes = list(notification.changes)
            next_cursor = None
            if notification.history_id is not None:
                changes, next_cursor = await self._expand(account_id)
            events = [await self._to_event(account_id, change) for change in changes]
            self._outbox[account_id].extend(events)
            if next_cursor:
                await self.subscription_manager.advance_history_cursor(account_id, next_cursor)
            self._dedup.record(key)
            await self._deliver(account_id)
        self._metrics.record_notification(backend, "accepted")
        return DispatchResult(DispatchOutcome.ACCEPTED, account_id, events)

    async def _expand(self, account_id: str) -> tuple[list[ChangeDescriptor], str | None]:
        """List backend changes since the subscription's history cursor.

        Returns the changes and the cursor to resume from; the caller advances
        it once the events are queued. The cursor is re-read under the account
        lock; the copy taken at routing time may predate an expansion that
        just finished.
        """
        subscription = await self.subscription_manager.get(account_id)
        cursor = subscription.history_cursor if subscription is not None else None
        async with self.resolver.adapter_for(account_id) as adapter:
            try:
                batch = await adapter.list_changes(cursor)
            except NotFoundException:
                logger.warning(
                    "History cursor %s for account %s is no longer available; resyncing",
                    cursor,
                    account_id,
                )
                batch = await adapter.list_changes(None)
        return list(batch.changes), batch.next_cursor

    async def _to_event(self, account_id: str, change: ChangeDescriptor) -> ChangeEvent:
        return ChangeEvent(
            event_id=generate_cuid(),
            account_id=account_id,
            sequence=await self.sequence_repo.next_value(account_id),
            kind=change.kind,
            message_id=change.message_id,
            thread_id=change.thread_id,
            received_at=self._clock.now(),
        )

    async def _deliver(self, account_id: str) -> None:
        """Drain the account outbox in sequence order; stop at the first failure."""
        outbox = self._outbox[account_id]
        while outbox:
            event = outbox[0]
            for consumer in self._consumers:
                try:
                    await consumer(event)
                except Exception:
                    logger.exception(
                        "Consumer failed on event %d for account %s; will redeliver",
                        event.sequence,
                        account_id,
                    )
                    return
            outbox.popleft()
        del self._outbox[account_id]

    async def redeliver_pending(self, account_id: str | None = None) -> None:
        """Retry delivery of undelivered events (one account or all)."""
        account_ids = [account_id] if account_id else [a for a, q in self._outbox.items() if q]
        for pending_account in account_ids:
            async with self._locks[pending_account]:
                await self._deliver(pending_account)
