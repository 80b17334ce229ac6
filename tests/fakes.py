"""In-memory doubles for the backend boundary: clock, OAuth driver, mailbox adapter.

build_hub() wires the real services (credential manager, resolver, mailbox
service, subscription manager, dispatcher) over in-memory repositories and
these fakes, with one Gmail and one Outlook account.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from mailhub.application.services import (
    ChangeEventDispatcher,
    CredentialLifecycleManager,
    MailboxService,
    ProviderResolver,
    SubscriptionManager,
)
from mailhub.domain.entities import (
    Account,
    ChangeDescriptor,
    ChangeEvent,
    Credential,
    CredentialLease,
    OutgoingMessage,
    UnifiedFolder,
    UnifiedMessage,
    UnifiedThread,
)
from mailhub.domain.enums import BackendKind
from mailhub.domain.exceptions import NotFoundException, ValidationException
from mailhub.infrastructure.external.email.normalizer import CapabilityNormalizer
from mailhub.infrastructure.external.email.oauth_drivers import OAuthTokens
from mailhub.infrastructure.external.email.protocols import (
    ChangeBatch,
    NativeQuery,
    SubscriptionGrant,
)
from mailhub.infrastructure.persistence.repositories import (
    InMemoryAccountRepository,
    InMemoryChangeSequenceRepository,
    InMemoryCredentialRepository,
    InMemorySubscriptionRepository,
)
from mailhub.shared.telemetry.metrics import MailhubMetrics
from mailhub.shared.utils.retry import RetryPolicy

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

GMAIL_ACCOUNT = "acct-gmail"
GMAIL_ADDRESS = "ada@gmail.example"
OUTLOOK_ACCOUNT = "acct-outlook"
OUTLOOK_ADDRESS = "grace@outlook.example"
GMAIL_PUSH_TOKEN = "pubsub-verification-token"
OUTLOOK_CALLBACK = "https://hooks.example/api/v1/webhooks/outlook"


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


async def no_sleep(_: float) -> None:
    await asyncio.sleep(0)


def make_message(
    message_id: str,
    *,
    labels: list[str] | None = None,
    received_at: datetime = T0,
    thread_id: str | None = None,
    is_read: bool = False,
) -> UnifiedMessage:
    return UnifiedMessage(
        id=message_id,
        thread_id=thread_id,
        sender="sender@example.com",
        to=["ada@gmail.example"],
        subject=f"Subject {message_id}",
        received_at=received_at,
        is_read=is_read,
        labels=list(labels or []),
    )


class FakeDriver:
    """Refresh-token exchange with scripted failures.

    Each call consumes one entry of `failures`; once they run out, calls
    succeed with a fresh access token.
    """

    def __init__(self, clock: FakeClock, *, expires_in: int = 3600) -> None:
        self.clock = clock
        self.expires_in = expires_in
        self.failures: list[Exception] = []
        self.calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None
        self.rotated_refresh_token: str | None = None
        self._counter = itertools.count(1)

    async def refresh_access_token(self, account_id: str, refresh_token: str) -> OAuthTokens:
        self.calls.append((account_id, refresh_token))
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        n = next(self._counter)
        return OAuthTokens(
            access_token=f"access-{account_id}-{n}",
            refresh_token=self.rotated_refresh_token,
            token_type="Bearer",
            expires_in=self.expires_in,
            expires_at=self.clock.now() + timedelta(seconds=self.expires_in),
            scope="",
        )


@dataclass
class FakeMailbox:
    """Backend-side state for one account, shared by every adapter bound to it."""

    kind: BackendKind
    messages: dict[str, UnifiedMessage] = field(default_factory=dict)
    folders: list[UnifiedFolder] = field(default_factory=list)
    calls: list[str] = field(default_factory=list)
    read_failures: list[Exception] = field(default_factory=list)
    create_failures: list[Exception] = field(default_factory=list)
    renew_error: Exception | None = None
    grant_shortfall: timedelta = timedelta(0)
    history_id: int = 100
    history: list[tuple[int, ChangeDescriptor]] = field(default_factory=list)
    expired_cursors: set[str] = field(default_factory=set)
    cancelled: list[str] = field(default_factory=list)
    sent: list[OutgoingMessage] = field(default_factory=list)
    list_queries: list[NativeQuery] = field(default_factory=list)
    block: asyncio.Event | None = None
    in_flight: int = 0
    max_in_flight: int = 0
    closed: int = 0
    subscriptions_created: int = 0

    def add(self, *messages: UnifiedMessage) -> None:
        for message in messages:
            self.messages[message.id] = message

    def record_change(self, change: ChangeDescriptor) -> None:
        self.history_id += 1
        self.history.append((self.history_id, change))


class FakeAdapter:
    """IMailboxAdapter over a FakeMailbox with each backend's membership rules."""

    def __init__(self, lease: CredentialLease, mailbox: FakeMailbox) -> None:
        self._lease = lease
        self.mailbox = mailbox
        self.backend_kind = mailbox.kind
        self.max_subscription_lifetime_minutes = (
            7 * 24 * 60 if mailbox.kind == BackendKind.GMAIL else 10070
        )
        self._ids = itertools.count(1)

    @property
    def lease(self) -> CredentialLease:
        return self._lease

    @asynccontextmanager
    async def _call(self, name: str) -> AsyncIterator[None]:
        box = self.mailbox
        box.calls.append(name)
        box.in_flight += 1
        box.max_in_flight = max(box.max_in_flight, box.in_flight)
        try:
            if box.block is not None:
                await box.block.wait()
            yield
        finally:
            box.in_flight -= 1

    def _get(self, message_id: str) -> UnifiedMessage:
        try:
            return self.mailbox.messages[message_id]
        except KeyError:
            raise NotFoundException("message", message_id) from None

    async def list_messages(
        self,
        *,
        unit_id: str | None,
        query: NativeQuery,
        page_token: str | None,
        page_size: int,
    ) -> tuple[list[UnifiedMessage], str | None]:
        async with self._call("list_messages"):
            if self.mailbox.read_failures:
                raise self.mailbox.read_failures.pop(0)
            self.mailbox.list_queries.append(query)
            matching = sorted(
                (m for m in self.mailbox.messages.values() if unit_id is None or unit_id in m.labels),
                key=lambda m: (m.received_at, m.id),
                reverse=True,
            )
            offset = int(page_token or 0)
            page = matching[offset : offset + page_size]
            more = offset + page_size < len(matching)
            return page, str(offset + page_size) if more else None

    async def get_message(self, message_id: str) -> UnifiedMessage:
        async with self._call("get_message"):
            return self._get(message_id)

    async def send_message(self, message: OutgoingMessage) -> str | None:
        async with self._call("send_message"):
            if self.mailbox.read_failures:
                raise self.mailbox.read_failures.pop(0)
            self.mailbox.sent.append(message)
            return f"sent-{len(self.mailbox.sent)}"

    async def delete_message(self, message_id: str) -> None:
        async with self._call("delete_message"):
            self.mailbox.messages.pop(self._get(message_id).id)

    async def set_read_state(self, message_id: str, is_read: bool) -> None:
        async with self._call("set_read_state"):
            self.mailbox.messages[message_id] = replace(self._get(message_id), is_read=is_read)

    async def add_to_unit(self, message_id: str, unit_id: str) -> UnifiedMessage:
        async with self._call("add_to_unit"):
            message = self._get(message_id)
            if self.backend_kind == BackendKind.GMAIL:
                updated = replace(message, labels=[*message.labels, unit_id])
            else:
                # A Graph move returns the message under a new id.
                del self.mailbox.messages[message_id]
                updated = replace(message, id=f"{message_id}-moved", labels=[unit_id])
            self.mailbox.messages[updated.id] = updated
            return updated

    async def remove_from_unit(self, message_id: str, unit_id: str) -> UnifiedMessage:
        async with self._call("remove_from_unit"):
            if self.backend_kind == BackendKind.OUTLOOK:
                raise ValidationException("folders are exclusive", field="unit_id")
            message = self._get(message_id)
            updated = replace(message, labels=[l for l in message.labels if l != unit_id])
            self.mailbox.messages[message_id] = updated
            return updated

    async def list_folders(self) -> list[UnifiedFolder]:
        async with self._call("list_folders"):
            if self.mailbox.read_failures:
                raise self.mailbox.read_failures.pop(0)
            return list(self.mailbox.folders)

    async def create_folder(self, name: str, parent_id: str | None = None) -> UnifiedFolder:
        async with self._call("create_folder"):
            folder = UnifiedFolder(id=f"folder-{name}", name=name, native_id=f"folder-{name}")
            self.mailbox.folders.append(folder)
            return folder

    async def update_folder(self, folder_id: str, name: str) -> UnifiedFolder:
        async with self._call("update_folder"):
            return UnifiedFolder(id=folder_id, name=name, native_id=folder_id)

    async def delete_folder(self, folder_id: str) -> None:
        async with self._call("delete_folder"):
            self.mailbox.folders = [f for f in self.mailbox.folders if f.id != folder_id]

    async def get_thread(self, thread_id: str) -> UnifiedThread:
        async with self._call("get_thread"):
            messages = [m for m in self.mailbox.messages.values() if m.thread_id == thread_id]
            if not messages:
                raise NotFoundException("thread", thread_id)
            return UnifiedThread(id=thread_id, message_ids=[m.id for m in messages], messages=messages)

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        async with self._call("get_attachment"):
            self._get(message_id)
            return f"{message_id}/{attachment_id}".encode()

    def _grant(self, backend_id: str, expires_at: datetime) -> SubscriptionGrant:
        return SubscriptionGrant(
            backend_subscription_id=backend_id,
            expires_at=expires_at - self.mailbox.grant_shortfall,
            history_cursor=str(self.mailbox.history_id)
            if self.backend_kind == BackendKind.GMAIL
            else None,
        )

    async def create_subscription(
        self, *, callback_url: str, expires_at: datetime, client_secret: str
    ) -> SubscriptionGrant:
        async with self._call("create_subscription"):
            if self.mailbox.create_failures:
                raise self.mailbox.create_failures.pop(0)
            self.mailbox.subscriptions_created += 1
            backend_id = f"{self.backend_kind.value}-sub-{self.mailbox.subscriptions_created}"
            return self._grant(backend_id, expires_at)

    async def renew_subscription(
        self,
        backend_subscription_id: str,
        *,
        callback_url: str,
        expires_at: datetime,
        client_secret: str,
    ) -> SubscriptionGrant:
        async with self._call("renew_subscription"):
            if self.mailbox.renew_error is not None:
                raise self.mailbox.renew_error
            return self._grant(backend_subscription_id, expires_at)

    async def cancel_subscription(self, backend_subscription_id: str) -> None:
        async with self._call("cancel_subscription"):
            self.mailbox.cancelled.append(backend_subscription_id)

    async def list_changes(self, cursor: str | None) -> ChangeBatch:
        async with self._call("list_changes"):
            if cursor is None:
                return ChangeBatch(changes=[], next_cursor=str(self.mailbox.history_id))
            if cursor in self.mailbox.expired_cursors:
                raise NotFoundException("history", cursor)
            changes = [c for hid, c in self.mailbox.history if hid > int(cursor)]
            return ChangeBatch(changes=changes, next_cursor=str(self.mailbox.history_id))

    async def close(self) -> None:
        self.mailbox.closed += 1


class FakeAdapterFactory:
    def __init__(self, mailboxes: dict[str, FakeMailbox]) -> None:
        self.mailboxes = mailboxes

    def create_adapter(self, lease: CredentialLease) -> FakeAdapter:
        return FakeAdapter(lease, self.mailboxes[lease.account_id])


@dataclass
class Hub:
    clock: FakeClock
    metrics: MailhubMetrics
    accounts: InMemoryAccountRepository
    credentials: InMemoryCredentialRepository
    subscriptions: InMemorySubscriptionRepository
    sequences: InMemoryChangeSequenceRepository
    driver: FakeDriver
    credential_manager: CredentialLifecycleManager
    resolver: ProviderResolver
    normalizer: CapabilityNormalizer
    subscription_manager: SubscriptionManager
    mailbox_service: MailboxService
    dispatcher: ChangeEventDispatcher
    mailboxes: dict[str, FakeMailbox]
    delivered: list[ChangeEvent]

    def mailbox(self, account_id: str) -> FakeMailbox:
        return self.mailboxes[account_id]


async def build_hub(
    clock: FakeClock | None = None,
    *,
    per_account_concurrency: int = 8,
    default_timeout: float = 5.0,
    credential_lifetime: timedelta = timedelta(hours=1),
) -> Hub:
    clock = clock or FakeClock()
    metrics = MailhubMetrics()
    accounts = InMemoryAccountRepository(
        [
            Account(GMAIL_ACCOUNT, BackendKind.GMAIL, GMAIL_ADDRESS),
            Account(OUTLOOK_ACCOUNT, BackendKind.OUTLOOK, OUTLOOK_ADDRESS),
        ]
    )
    credentials = InMemoryCredentialRepository()
    for account_id, kind in ((GMAIL_ACCOUNT, BackendKind.GMAIL), (OUTLOOK_ACCOUNT, BackendKind.OUTLOOK)):
        await credentials.replace(
            Credential(
                account_id=account_id,
                backend_kind=kind,
                access_token=f"access-{account_id}-0",
                refresh_token=f"refresh-{account_id}",
                expires_at=clock.now() + credential_lifetime,
            )
        )
    subscriptions = InMemorySubscriptionRepository()
    sequences = InMemoryChangeSequenceRepository()
    driver = FakeDriver(clock)
    drivers = {BackendKind.GMAIL: driver, BackendKind.OUTLOOK: driver}
    credential_manager = CredentialLifecycleManager(
        credentials,
        drivers,  # type: ignore[arg-type]
        clock=clock,
        retry_policy=RetryPolicy(max_attempts=3),
        metrics=metrics,
        sleep=no_sleep,
    )
    mailboxes = {
        GMAIL_ACCOUNT: FakeMailbox(BackendKind.GMAIL),
        OUTLOOK_ACCOUNT: FakeMailbox(BackendKind.OUTLOOK),
    }
    resolver = ProviderResolver(accounts, credential_manager, FakeAdapterFactory(mailboxes))  # type: ignore[arg-type]
    normalizer = CapabilityNormalizer()
    subscription_manager = SubscriptionManager(
        subscriptions,
        resolver,
        callback_urls={BackendKind.OUTLOOK: OUTLOOK_CALLBACK},
        shared_secrets={BackendKind.GMAIL: GMAIL_PUSH_TOKEN},
        retry_policy=RetryPolicy(max_attempts=2),
        clock=clock,
        metrics=metrics,
        sleep=no_sleep,
    )
    mailbox_service = MailboxService(
        resolver,
        normalizer,
        subscription_manager=subscription_manager,
        per_account_concurrency=per_account_concurrency,
        default_timeout=default_timeout,
        retry_policy=RetryPolicy(max_attempts=3),
        sleep=no_sleep,
    )
    delivered: list[ChangeEvent] = []

    async def collect(event: ChangeEvent) -> None:
        delivered.append(event)

    dispatcher = ChangeEventDispatcher(
        subscription_manager,
        accounts,
        sequences,
        resolver,
        consumers=[collect],
        clock=clock,
        metrics=metrics,
    )
    return Hub(
        clock=clock,
        metrics=metrics,
        accounts=accounts,
        credentials=credentials,
        subscriptions=subscriptions,
        sequences=sequences,
        driver=driver,
        credential_manager=credential_manager,
        resolver=resolver,
        normalizer=normalizer,
        subscription_manager=subscription_manager,
        mailbox_service=mailbox_service,
        dispatcher=dispatcher,
        mailboxes=mailboxes,
        delivered=delivered,
    )
