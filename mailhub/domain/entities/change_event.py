"""Change notification types: inbound (pre-validation) and normalized events."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from mailhub.domain.enums import BackendKind, ChangeKind


@dataclass(frozen=True)
class ChangeDescriptor:
    """A single normalized change (message or thread level)."""

    kind: ChangeKind
    message_id: str | None = None
    thread_id: str | None = None


@dataclass(frozen=True)
class InboundNotification:
    """One webhook-delivered notification after parsing, before validation.

    Routing uses backend_subscription_id (Outlook) or mailbox_address (Gmail).
    Gmail notifications carry only history_id and are expanded into
    descriptors by the dispatcher.
    """

    backend_kind: BackendKind
    notification_id: str
    presented_secret: str | None
    backend_subscription_id: str | None = None
    mailbox_address: str | None = None
    changes: tuple[ChangeDescriptor, ...] = field(default_factory=tuple)
    history_id: str | None = None


@dataclass(frozen=True)
class ChangeEvent:
    """Normalized change event handed to downstream consumers.

    sequence is assigned by the dispatcher, monotonically increasing per
    account. Consumers must be idempotent on (account_id, sequence).
    """

    event_id: str
    account_id: str
    sequence: int
    kind: ChangeKind
    message_id: str | None
    thread_id: str | None
    received_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON publish."""
        data = asdict(self)
        data["kind"] = self.kind.value
        data["received_at"] = self.received_at.isoformat()
        return data
