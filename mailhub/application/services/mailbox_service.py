"""Unified mailbox operations over any backend.

Every call resolves an adapter for the account, runs under the account's
concurrency cap and the caller's deadline, and returns normalized entities.
Reads are retried on RateLimited/BackendUnavailable. Mutations are retried
only when the caller passes an idempotency key, and a key that already
completed returns the recorded result instead of calling the backend again.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from mailhub.application.services.provider_resolver import ProviderResolver
from mailhub.domain.entities import (
    AssignmentResult,
    MessagePage,
    OutgoingMessage,
    Subscription,
    SyncCursor,
    UnifiedFolder,
    UnifiedMessage,
    UnifiedThread,
)
from mailhub.domain.exceptions import OperationTimeoutException, ValidationException
from mailhub.infrastructure.external.email.normalizer import CapabilityNormalizer
from mailhub.infrastructure.external.email.protocols import IMailboxAdapter
from mailhub.shared.telemetry.logging import get_logger
from mailhub.shared.telemetry.tracing import traced
from mailhub.shared.utils.locks import KeyedLocks
from mailhub.shared.utils.retry import RetryPolicy, retry_async

if TYPE_CHECKING:
    from mailhub.application.services.subscription_manager import SubscriptionManager

logger = get_logger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 50
IDEMPOTENCY_CACHE_SIZE = 10_000


class MailboxService:
    """The unified operation contract consumed by the application layer."""

    def __init__(
        self,
        resolver: ProviderResolver,
        normalizer: CapabilityNormalizer | None = None,
        *,
        subscription_manager: SubscriptionManager | None = None,
        per_account_concurrency: int = 8,
        default_timeout: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.resolver = resolver
        self.normalizer = normalizer or CapabilityNormalizer()
        self.subscription_manager = subscription_manager
        self._default_timeout = default_timeout
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._semaphores: KeyedLocks[asyncio.Semaphore] = KeyedLocks(
            lambda: asyncio.Semaphore(per_account_concurrency)
        )
        self._completed: OrderedDict[tuple[str, str, str], Any] = OrderedDict()
        self._inflight: dict[tuple[str, str, str], asyncio.Task[Any]] = {}

    async def _run(
        self,
        account_id: str,
        operation: str,
        call: Callable[[IMailboxAdapter], Awaitable[T]],
        *,
        retry: bool,
        timeout: float | None = None,
    ) -> T:
        deadline = timeout if timeout is not None else self._default_timeout

        async def attempt() -> T:
            async with self.resolver.adapter_for(account_id) as adapter:
                return await call(adapter)

        try:
            async with asyncio.timeout(deadline):
                async with self._semaphores[account_id]:
                    if not retry:
                        return await attempt()
                    return await retry_async(
                        attempt,
                        self._retry_policy,
                        description=f"{operation} for {account_id}",
                        sleep=self._sleep,
                    )
        except TimeoutError as e:
            logger.warning("%s for account %s timed out after %ss", operation, account_id, deadline)
            raise OperationTimeoutException(operation, deadline) from e

    async def _mutate(
        self,
        account_id: str,
        operation: str,
        call: Callable[[IMailboxAdapter], Awaitable[T]],
        *,
        idempotency_key: str | None,
        timeout: float | None,
    ) -> T:
        if idempotency_key is None:
            return await self._run(account_id, operation, call, retry=False, timeout=timeout)
        key = (account_id, operation, idempotency_key)
        if key in self._completed:
            logger.info("%s for account %s already completed for key %s", operation, account_id, idempotency_key)
            return self._completed[key]
        flight = self._inflight.get(key)
        if flight is None:
            flight = asyncio.create_task(
                self._run(account_id, operation, call, retry=True, timeout=timeout)
            )
            self._inflight[key] = flight
            flight.add_done_callback(lambda t: self._mutation_done(key, t))
        else:
            logger.info("%s for account %s already in flight for key %s", operation, account_id, idempotency_key)
        # Callers sharing a key await one backend call; cancelling one must not cancel it.
        return await asyncio.shield(flight)

    def _mutation_done(self, key: tuple[str, str, str], task: asyncio.Task[Any]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled() or task.exception() is not None:
            return
        self._completed[key] = task.result()
        while len(self._completed) > IDEMPOTENCY_CACHE_SIZE:
            self._completed.popitem(last=False)

    # ---- reads ----

    @traced("mailbox.list_messages")
    async def list_messages(
        self,
        account_id: str,
        *,
        unit_id: str | None = None,
        query: str | None = None,
        cursor: SyncCursor | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float | None = None,
    ) -> MessagePage:
        """One page of messages, optionally filtered by unit and common-grammar query."""
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationException(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}", field="page_size"
            )

        async def call(adapter: IMailboxAdapter) -> MessagePage:
            kind = adapter.backend_kind
            native_query = self.normalizer.translate_query(kind, query)
            native_unit = self.normalizer.resolve_unit_id(kind, unit_id) if unit_id else None
            messages, next_token = await adapter.list_messages(
                unit_id=native_unit,
                query=native_query,
                page_token=self.normalizer.unwrap_cursor(kind, cursor),
                page_size=page_size,
            )
            return self.normalizer.page(kind, messages, next_token)

        return await self._run(account_id, "list_messages", call, retry=True, timeout=timeout)

    @traced("mailbox.search")
    async def search(
        self,
        account_id: str,
        query: str,
        *,
        unit_id: str | None = None,
        cursor: SyncCursor | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float | None = None,
    ) -> MessagePage:
        if not query or not query.strip():
            raise ValidationException("Search query must not be empty", field="query")
        return await self.list_messages(
            account_id,
            unit_id=unit_id,
            query=query,
            cursor=cursor,
            page_size=page_size,
            timeout=timeout,
        )

    @traced("mailbox.get_message")
    async def get_message(
        self, account_id: str, message_id: str, *, timeout: float | None = None
    ) -> UnifiedMessage:
        return await self._run(
            account_id,
            "get_message",
            lambda adapter: adapter.get_message(message_id),
            retry=True,
            timeout=timeout,
        )

    @traced("mailbox.get_thread")
    async def get_thread(
        self, account_id: str, thread_id: str, *, timeout: float | None = None
    ) -> UnifiedThread:
        """Thread with messages ordered by receipt time, then message id."""

        async def call(adapter: IMailboxAdapter) -> UnifiedThread:
            thread = await adapter.get_thread(thread_id)
            return self.normalizer.order_thread(thread.id, thread.messages)

        return await self._run(account_id, "get_thread", call, retry=True, timeout=timeout)

    @traced("mailbox.get_attachment")
    async def get_attachment(
        self,
        account_id: str,
        message_id: str,
        attachment_id: str,
        *,
        timeout: float | None = None,
    ) -> bytes:
        return await self._run(
            account_id,
            "get_attachment",
            lambda adapter: adapter.get_attachment(message_id, attachment_id),
            retry=True,
            timeout=timeout,
        )

    @traced("mailbox.list_folders")
    async def list_folders(
        self, account_id: str, *, timeout: float | None = None
    ) -> list[UnifiedFolder]:
        return await self._run(
            account_id,
            "list_folders",
            lambda adapter: adapter.list_folders(),
            retry=True,
            timeout=timeout,
        )

    # ---- mutations ----

    @traced("mailbox.send_message")
    async def send_message(
        self,
        account_id: str,
        message: OutgoingMessage,
        *,
        timeout: float | None = None,
    ) -> str | None:
        """Send; returns the sent message id where the backend reports one."""
        return await self._mutate(
            account_id,
            "send_message",
            lambda adapter: adapter.send_message(message),
            idempotency_key=message.idempotency_key,
            timeout=timeout,
        )

    @traced("mailbox.delete_message")
    async def delete_message(
        self,
        account_id: str,
        message_id: str,
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        await self._mutate(
            account_id,
            "delete_message",
            lambda adapter: adapter.delete_message(message_id),
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    async def _set_read_state(
        self,
        account_id: str,
        message_id: str,
        is_read: bool,
        idempotency_key: str | None,
        timeout: float | None,
    ) -> None:
        await self._mutate(
            account_id,
            "mark_read" if is_read else "mark_unread",
            lambda adapter: adapter.set_read_state(message_id, is_read),
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    @traced("mailbox.mark_read")
    async def mark_read(
        self,
        account_id: str,
        message_id: str,
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        await self._set_read_state(account_id, message_id, True, idempotency_key, timeout)

    @traced("mailbox.mark_unread")
    async def mark_unread(
        self,
        account_id: str,
        message_id: str,
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        await self._set_read_state(account_id, message_id, False, idempotency_key, timeout)

    @traced("mailbox.assign_organizational_unit")
    async def assign_organizational_unit(
        self,
        account_id: str,
        message_id: str,
        unit_id: str,
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> AssignmentResult:
        """Union on label backends, move on folder backends (see CapabilityNormalizer)."""
        return await self._mutate(
            account_id,
            "assign_organizational_unit",
            lambda adapter: self.normalizer.assign_organizational_unit(
                adapter, message_id, unit_id
            ),
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    @traced("mailbox.remove_organizational_unit")
    async def remove_organizational_unit(
        self,
        account_id: str,
        message_id: str,
        unit_id: str,
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> UnifiedMessage:
        return await self._mutate(
            account_id,
            "remove_organizational_unit",
            lambda adapter: self.normalizer.remove_organizational_unit(
                adapter, message_id, unit_id
            ),
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    @traced("mailbox.create_folder")
    async def create_folder(
        self,
        account_id: str,
        name: str,
        *,
        parent_id: str | None = None,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> UnifiedFolder:
        if not name or not name.strip():
            raise ValidationException("Folder name must not be empty", field="name")
        return await self._mutate(
            account_id,
            "create_folder",
            lambda adapter: adapter.create_folder(name.strip(), parent_id),
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    @traced("mailbox.update_folder")
    async def update_folder(
        self,
        account_id: str,
        folder_id: str,
        name: str,
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> UnifiedFolder:
        if not name or not name.strip():
            raise ValidationException("Folder name must not be empty", field="name")
        return await self._mutate(
            account_id,
            "update_folder",
            lambda adapter: adapter.update_folder(folder_id, name.strip()),
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    @traced("mailbox.delete_folder")
    async def delete_folder(
        self,
        account_id: str,
        folder_id: str,
        *,
        idempotency_key: str | None = None,
        timeout: float | None = None,
    ) -> None:
        await self._mutate(
            account_id,
            "delete_folder",
            lambda adapter: adapter.delete_folder(folder_id),
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    # ---- change notifications ----

    def _subscriptions(self) -> SubscriptionManager:
        if self.subscription_manager is None:
            raise ValidationException("Change notifications are not configured")
        return self.subscription_manager

    @traced("mailbox.subscribe")
    async def subscribe(self, account_id: str) -> Subscription:
        return await self._subscriptions().subscribe(account_id)

    @traced("mailbox.unsubscribe")
    async def unsubscribe(self, account_id: str) -> Subscription:
        return await self._subscriptions().unsubscribe(account_id)
