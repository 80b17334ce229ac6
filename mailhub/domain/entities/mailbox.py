"""Unified mailbox data model (backend-agnostic)."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from datetime import datetime

from mailhub.domain.enums import BackendKind, MembershipSemantics
from mailhub.domain.exceptions import ValidationException


@dataclass(frozen=True)
class AttachmentDescriptor:
    """Attachment metadata; content is fetched lazily by id."""

    id: str
    filename: str
    mime_type: str
    size: int


@dataclass
class UnifiedMessage:
    """Universal message structure.

    labels is semantically a set of organizational unit ids, kept in a stable
    order. For the single-folder backend it has at most one element.
    """

    id: str
    thread_id: str | None
    sender: str
    to: list[str]
    subject: str
    received_at: datetime
    is_read: bool
    labels: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    body_text: str | None = None
    body_html: str | None = None
    snippet: str = ""
    attachments: list[AttachmentDescriptor] = field(default_factory=list)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        ordered: list[str] = []
        for label in self.labels:
            if label not in seen:
                seen.add(label)
                ordered.append(label)
        self.labels = ordered

    def has_unit(self, unit_id: str) -> bool:
        return unit_id in self.labels


@dataclass(frozen=True)
class UnifiedFolder:
    """Folder or label. native_id is round-tripped opaquely to the backend."""

    id: str
    name: str
    native_id: str
    unread_count: int = 0
    total_count: int = 0
    is_system: bool = False


@dataclass(frozen=True)
class UnifiedThread:
    """Conversation/thread grouping; message_ids in delivery-time order."""

    id: str
    message_ids: list[str]
    messages: list[UnifiedMessage] = field(default_factory=list)


@dataclass(frozen=True)
class SyncCursor:
    """Opaque pagination/sync token tagged with the backend that issued it."""

    token: str
    backend_kind: BackendKind

    def encode(self) -> str:
        """Serialize for transport to callers (who must treat it as opaque)."""
        raw = json.dumps({"k": self.backend_kind.value, "t": self.token})
        return base64.urlsafe_b64encode(raw.encode()).decode()

    @classmethod
    def decode(cls, value: str) -> SyncCursor:
        """Inverse of encode. Raises ValidationException on malformed input."""
        try:
            data = json.loads(base64.urlsafe_b64decode(value.encode()).decode())
            return cls(token=str(data["t"]), backend_kind=BackendKind(data["k"]))
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationException("Malformed cursor", field="cursor") from e


@dataclass
class MessagePage:
    """One page of messages plus the cursor for the next page (None at the end)."""

    messages: list[UnifiedMessage]
    next_cursor: SyncCursor | None = None


@dataclass(frozen=True)
class OutgoingMessage:
    """Input for send. thread_id replies within an existing thread where supported."""

    to: list[str]
    subject: str
    body_text: str | None = None
    body_html: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    thread_id: str | None = None
    idempotency_key: str | None = None

    def __post_init__(self) -> None:
        if not self.to and not self.cc and not self.bcc:
            raise ValidationException("At least one recipient is required", field="to")
        if self.body_text is None and self.body_html is None:
            raise ValidationException("A plain or rich body is required", field="body")


@dataclass(frozen=True)
class AssignmentResult:
    """Outcome of assigning an organizational unit to a message.

    On the single-folder backend a move yields a new message identifier,
    so message.id may differ from the id that was passed in.
    """

    message: UnifiedMessage
    semantics: MembershipSemantics
