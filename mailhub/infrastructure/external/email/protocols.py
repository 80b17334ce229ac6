"""Mailbox adapter protocol and exchange types (backend-agnostic).

Adapters are bound to one account through a CredentialLease at construction.
Every method raises only mailhub.domain.exceptions types.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from mailhub.domain.entities import (
    ChangeDescriptor,
    CredentialLease,
    OutgoingMessage,
    UnifiedFolder,
    UnifiedMessage,
    UnifiedThread,
)
from mailhub.domain.enums import BackendKind


@dataclass(frozen=True)
class NativeQuery:
    """Backend-native query produced by the capability normalizer.

    Gmail uses only `text` (the q= search string). Graph uses `text` for
    $search and `filter` for $filter, never both at once.
    """

    text: str | None = None
    filter: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.filter


@dataclass(frozen=True)
class SubscriptionGrant:
    """What the backend actually granted for a registration or renewal."""

    backend_subscription_id: str
    expires_at: datetime
    history_cursor: str | None = None


@dataclass(frozen=True)
class ChangeBatch:
    """Incremental changes since a cursor, plus the cursor to resume from."""

    changes: list[ChangeDescriptor] = field(default_factory=list)
    next_cursor: str | None = None


class IMailboxAdapter(Protocol):
    """Unified operation set implemented once per backend family."""

    backend_kind: BackendKind
    # Hard cap the backend applies to subscription lifetime.
    max_subscription_lifetime_minutes: int

    @property
    def lease(self) -> CredentialLease:
        """The credential lease this adapter is bound to."""
        ...

    async def list_messages(
        self,
        *,
        unit_id: str | None,
        query: NativeQuery,
        page_token: str | None,
        page_size: int,
    ) -> tuple[list[UnifiedMessage], str | None]:
        """Return one page and the raw next-page token (None when exhausted)."""
        ...

    async def get_message(self, message_id: str) -> UnifiedMessage:
        ...

    async def send_message(self, message: OutgoingMessage) -> str | None:
        """Send; returns the sent message id when the backend reports one."""
        ...

    async def delete_message(self, message_id: str) -> None:
        ...

    async def set_read_state(self, message_id: str, is_read: bool) -> None:
        ...

    async def add_to_unit(self, message_id: str, unit_id: str) -> UnifiedMessage:
        """Add membership (union for labels, exclusive move for folders)."""
        ...

    async def remove_from_unit(self, message_id: str, unit_id: str) -> UnifiedMessage:
        ...

    async def list_folders(self) -> list[UnifiedFolder]:
        ...

    async def create_folder(self, name: str, parent_id: str | None = None) -> UnifiedFolder:
        ...

    async def update_folder(self, folder_id: str, name: str) -> UnifiedFolder:
        ...

    async def delete_folder(self, folder_id: str) -> None:
        ...

    async def get_thread(self, thread_id: str) -> UnifiedThread:
        ...

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        ...

    async def create_subscription(
        self,
        *,
        callback_url: str,
        expires_at: datetime,
        client_secret: str,
    ) -> SubscriptionGrant:
        ...

    async def renew_subscription(
        self,
        backend_subscription_id: str,
        *,
        callback_url: str,
        expires_at: datetime,
        client_secret: str,
    ) -> SubscriptionGrant:
        ...

    async def cancel_subscription(self, backend_subscription_id: str) -> None:
        ...

    async def list_changes(self, cursor: str | None) -> ChangeBatch:
        """Changes since cursor (history id / delta token)."""
        ...

    async def close(self) -> None:
        ...

