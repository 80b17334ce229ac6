"""In-process repositories (default storage; also used by tests).

Records are stored as frozen entities, so a replace is a single dict
assignment and readers never observe a partially written record.
"""

from __future__ import annotations

from collections import defaultdict

from mailhub.domain.entities import Account, Credential, Subscription


class InMemoryAccountRepository:
    """Accounts keyed by id, with a lowercase email index."""

    def __init__(self, accounts: list[Account] | None = None) -> None:
        self._by_id: dict[str, Account] = {}
        self._by_email: dict[str, str] = {}
        for account in accounts or []:
            self._store(account)

    def _store(self, account: Account) -> None:
        self._by_id[account.id] = account
        self._by_email[account.email_address.lower()] = account.id

    async def get(self, account_id: str) -> Account | None:
        return self._by_id.get(account_id)

    async def get_by_email(self, email_address: str) -> Account | None:
        account_id = self._by_email.get(email_address.lower())
        return self._by_id.get(account_id) if account_id else None

    async def save(self, account: Account) -> None:
        self._store(account)


class InMemoryCredentialRepository:
    def __init__(self) -> None:
        self._records: dict[str, Credential] = {}

    async def get(self, account_id: str) -> Credential | None:
        return self._records.get(account_id)

    async def replace(self, credential: Credential) -> None:
        self._records[credential.account_id] = credential


class InMemorySubscriptionRepository:
    def __init__(self) -> None:
        self._records: dict[str, Subscription] = {}
        self._by_backend_id: dict[str, str] = {}

    async def get(self, account_id: str) -> Subscription | None:
        return self._records.get(account_id)

    async def get_by_backend_id(self, backend_subscription_id: str) -> Subscription | None:
        account_id = self._by_backend_id.get(backend_subscription_id)
        return self._records.get(account_id) if account_id else None

    async def save(self, subscription: Subscription) -> None:
        previous = self._records.get(subscription.account_id)
        if (
            previous is not None
            and previous.backend_subscription_id
            and previous.backend_subscription_id != subscription.backend_subscription_id
        ):
            self._by_backend_id.pop(previous.backend_subscription_id, None)
        self._records[subscription.account_id] = subscription
        if subscription.backend_subscription_id:
            self._by_backend_id[subscription.backend_subscription_id] = subscription.account_id

    async def list_all(self) -> list[Subscription]:
        return list(self._records.values())


class InMemoryChangeSequenceRepository:
    def __init__(self) -> None:
        self._values: defaultdict[str, int] = defaultdict(int)

    async def next_value(self, account_id: str) -> int:
        self._values[account_id] += 1
        return self._values[account_id]

    async def current(self, account_id: str) -> int:
        return self._values.get(account_id, 0)
