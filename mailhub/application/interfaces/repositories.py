"""Repository interfaces (ports) for the application layer.

Protocols define contracts that infrastructure implementations must fulfill (DIP).
The surrounding storage collaborator only needs to persist these records; the
engine (process memory, Redis) is chosen at composition time.
"""

from __future__ import annotations

from typing import Protocol

from mailhub.domain.entities import Account, Credential, Subscription


class IAccountRepository(Protocol):
    """Protocol for account records."""

    async def get(self, account_id: str) -> Account | None:
        """Return the account or None."""

    async def get_by_email(self, email_address: str) -> Account | None:
        """Return the account for a mailbox address (case-insensitive) or None."""

    async def save(self, account: Account) -> None:
        """Insert or replace the account."""


class ICredentialRepository(Protocol):
    """Protocol for credential records. Written only by the lifecycle manager."""

    async def get(self, account_id: str) -> Credential | None:
        """Return the stored credential or None."""

    async def replace(self, credential: Credential) -> None:
        """Atomically replace the whole record (never a field-level merge)."""


class ISubscriptionRepository(Protocol):
    """Protocol for subscription records. Written only by the subscription manager."""

    async def get(self, account_id: str) -> Subscription | None:
        """Return the subscription for an account or None."""

    async def get_by_backend_id(self, backend_subscription_id: str) -> Subscription | None:
        """Return the subscription with this backend-native id or None."""

    async def save(self, subscription: Subscription) -> None:
        """Insert or replace the record (and its backend id index)."""

    async def list_all(self) -> list[Subscription]:
        """Return every subscription record (scheduler scan)."""


class IChangeSequenceRepository(Protocol):
    """Per-account monotonic counter for change event sequence numbers."""

    async def next_value(self, account_id: str) -> int:
        """Atomically increment and return the next sequence number (starts at 1)."""

    async def current(self, account_id: str) -> int:
        """Return the last issued sequence number (0 when none)."""
