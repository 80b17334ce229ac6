"""Provider resolver: account id -> adapter bound to a live credential lease."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mailhub.application.interfaces.repositories import IAccountRepository
from mailhub.application.services.credential_manager import CredentialLifecycleManager
from mailhub.domain.entities import Account
from mailhub.domain.exceptions import NotFoundException, ValidationException
from mailhub.infrastructure.external.email.factory import AdapterFactory
from mailhub.infrastructure.external.email.protocols import IMailboxAdapter


class ProviderResolver:
    """Selects the adapter for an account's backend kind.

    Adapters are cheap and short-lived: each resolution takes a fresh lease, so
    an adapter never outlives the credential it was bound to by much.
    """

    def __init__(
        self,
        account_repo: IAccountRepository,
        credential_manager: CredentialLifecycleManager,
        adapter_factory: AdapterFactory,
    ) -> None:
        self.account_repo = account_repo
        self.credential_manager = credential_manager
        self.adapter_factory = adapter_factory

    async def get_account(self, account_id: str) -> Account:
        account = await self.account_repo.get(account_id)
        if account is None:
            raise NotFoundException("account", account_id)
        return account

    async def resolve(self, account_id: str) -> IMailboxAdapter:
        """Return an adapter for the account (caller closes it).

        Raises:
            NotFoundException: Unknown account or no stored credential.
            AuthExpiredException: Credential revoked or not refreshable.
            ValidationException: Credential belongs to a different backend.
        """
        account = await self.get_account(account_id)
        lease = await self.credential_manager.lease(account_id)
        if lease.backend_kind != account.backend_kind:
            raise ValidationException(
                f"Credential for account {account_id} is for {lease.backend_kind.value}, "
                f"account is {account.backend_kind.value}",
                field="backend_kind",
            )
        return self.adapter_factory.create_adapter(lease)

    @asynccontextmanager
    async def adapter_for(self, account_id: str) -> AsyncIterator[IMailboxAdapter]:
        adapter = await self.resolve(account_id)
        try:
            yield adapter
        finally:
            await adapter.close()
