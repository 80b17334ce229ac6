"""Domain enumerations for mailhub.

Enums represent fixed sets of domain values (backend kinds, lifecycle states).
"""

from enum import Enum


class BackendKind(str, Enum):
    """Closed set of supported backend families.

    GMAIL is the multi-label backend (a message carries any number of labels).
    OUTLOOK is the single-folder backend (a message lives in exactly one folder).
    """

    GMAIL = "gmail"
    OUTLOOK = "outlook"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid backend kind values as strings."""
        return [kind.value for kind in cls]


class CredentialState(str, Enum):
    """Credential lifecycle. REVOKED is terminal; revoked records are never deleted."""

    ACTIVE = "active"
    REVOKED = "revoked"


class SubscriptionState(str, Enum):
    """Push subscription lifecycle (see Subscription.transition_to for edges)."""

    UNREGISTERED = "unregistered"
    PENDING = "pending"
    ACTIVE = "active"
    RENEWAL_DUE = "renewal_due"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @property
    def accepts_notifications(self) -> bool:
        """Whether inbound notifications for this state become change events."""
        return self in (SubscriptionState.ACTIVE, SubscriptionState.RENEWAL_DUE)


class ChangeKind(str, Enum):
    """Kind of mailbox change carried by a ChangeEvent."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class MembershipSemantics(str, Enum):
    """How assigning an organizational unit affects prior memberships."""

    # Prior memberships retained (set union).
    UNION = "union"
    # Prior membership removed implicitly (exclusive move).
    MOVE = "move"


class WellKnownFolder(str, Enum):
    """Organizational units every backend exposes under a stable name."""

    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
