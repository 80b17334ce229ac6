"""Redis-backed repositories.

Records are JSON. Credential and subscription records hold tokens and
validation secrets, so they are stored Fernet-encrypted as a whole. Each
record is written with a single SET (or one MULTI/EXEC pipeline when an index
must change with it), so replacements are atomic.
"""

from __future__ import annotations

import json

import redis.asyncio as redis

from mailhub.domain.entities import Account, Credential, Subscription
from mailhub.infrastructure.cache import keys
from mailhub.infrastructure.external.email.encryption import CredentialEncryptor
from mailhub.infrastructure.persistence.records import (
    account_from_record,
    account_to_record,
    credential_from_record,
    credential_to_record,
    subscription_from_record,
    subscription_to_record,
)
from mailhub.shared.telemetry.logging import get_logger

logger = get_logger(__name__)


class RedisAccountRepository:
    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    async def get(self, account_id: str) -> Account | None:
        raw = await self._redis.get(keys.account_key(account_id))
        return account_from_record(json.loads(raw)) if raw else None

    async def get_by_email(self, email_address: str) -> Account | None:
        account_id = await self._redis.get(keys.account_email_key(email_address))
        if not account_id:
            return None
        return await self.get(account_id)

    async def save(self, account: Account) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(keys.account_key(account.id), json.dumps(account_to_record(account)))
            pipe.set(keys.account_email_key(account.email_address), account.id)
            await pipe.execute()


class RedisCredentialRepository:
    def __init__(self, client: redis.Redis, encryptor: CredentialEncryptor) -> None:
        self._redis = client
        self._encryptor = encryptor

    async def get(self, account_id: str) -> Credential | None:
        raw = await self._redis.get(keys.credential_key(account_id))
        if not raw:
            return None
        return credential_from_record(self._encryptor.decrypt(raw))

    async def replace(self, credential: Credential) -> None:
        payload = self._encryptor.encrypt(credential_to_record(credential))
        await self._redis.set(keys.credential_key(credential.account_id), payload)
        logger.debug(
            "Stored credential for %s (version %d)", credential.account_id, credential.version
        )


class RedisSubscriptionRepository:
    def __init__(self, client: redis.Redis, encryptor: CredentialEncryptor) -> None:
        self._redis = client
        self._encryptor = encryptor

    async def get(self, account_id: str) -> Subscription | None:
        raw = await self._redis.get(keys.subscription_key(account_id))
        if not raw:
            return None
        return subscription_from_record(self._encryptor.decrypt(raw))

    async def get_by_backend_id(self, backend_subscription_id: str) -> Subscription | None:
        account_id = await self._redis.get(keys.subscription_backend_key(backend_subscription_id))
        if not account_id:
            return None
        return await self.get(account_id)

    async def save(self, subscription: Subscription) -> None:
        previous = await self.get(subscription.account_id)
        payload = self._encryptor.encrypt(subscription_to_record(subscription))
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(keys.subscription_key(subscription.account_id), payload)
            pipe.sadd(keys.subscription_index_key(), subscription.account_id)
            if (
                previous is not None
                and previous.backend_subscription_id
                and previous.backend_subscription_id != subscription.backend_subscription_id
            ):
                pipe.delete(keys.subscription_backend_key(previous.backend_subscription_id))
            if subscription.backend_subscription_id:
                pipe.set(
                    keys.subscription_backend_key(subscription.backend_subscription_id),
                    subscription.account_id,
                )
            await pipe.execute()

    async def list_all(self) -> list[Subscription]:
        account_ids = await self._redis.smembers(keys.subscription_index_key())
        records: list[Subscription] = []
        for account_id in sorted(account_ids):
            record = await self.get(account_id)
            if record is not None:
                records.append(record)
        return records


class RedisChangeSequenceRepository:
    """Sequence numbers via INCR (atomic across processes)."""

    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    async def next_value(self, account_id: str) -> int:
        return int(await self._redis.incr(keys.sequence_key(account_id)))

    async def current(self, account_id: str) -> int:
        raw = await self._redis.get(keys.sequence_key(account_id))
        return int(raw) if raw else 0
