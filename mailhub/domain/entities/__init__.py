"""Domain entities (business concepts independent of persistence and backends)."""

from mailhub.domain.entities.account import Account
from mailhub.domain.entities.change_event import (
    ChangeDescriptor,
    ChangeEvent,
    InboundNotification,
)
from mailhub.domain.entities.credential import Credential, CredentialLease
from mailhub.domain.entities.mailbox import (
    AssignmentResult,
    AttachmentDescriptor,
    MessagePage,
    OutgoingMessage,
    SyncCursor,
    UnifiedFolder,
    UnifiedMessage,
    UnifiedThread,
)
from mailhub.domain.entities.subscription import Subscription

__all__ = [
    "Account",
    "AssignmentResult",
    "AttachmentDescriptor",
    "ChangeDescriptor",
    "ChangeEvent",
    "Credential",
    "CredentialLease",
    "InboundNotification",
    "MessagePage",
    "OutgoingMessage",
    "Subscription",
    "SyncCursor",
    "UnifiedFolder",
    "UnifiedMessage",
    "UnifiedThread",
]
