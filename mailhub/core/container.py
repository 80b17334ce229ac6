"""Composition root: builds repositories, managers and services from settings.

Routes and the lifespan depend on the Container, never on infrastructure
directly. Storage is chosen by settings.storage_backend.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import httpx
import redis.asyncio as redis

from mailhub.application.interfaces.repositories import (
    IAccountRepository,
    IChangeSequenceRepository,
    ICredentialRepository,
    ISubscriptionRepository,
)
from mailhub.application.services.change_dispatcher import ChangeEventDispatcher
from mailhub.application.services.credential_manager import CredentialLifecycleManager
from mailhub.application.services.mailbox_service import MailboxService
from mailhub.application.services.provider_resolver import ProviderResolver
from mailhub.application.services.subscription_manager import (
    RenewalScheduler,
    SubscriptionManager,
)
from mailhub.core.config import Settings
from mailhub.domain.enums import BackendKind
from mailhub.infrastructure.external.email.encryption import CredentialEncryptor
from mailhub.infrastructure.external.email.factory import AdapterFactory
from mailhub.infrastructure.external.email.normalizer import CapabilityNormalizer
from mailhub.infrastructure.external.email.oauth_drivers import GmailDriver, OutlookDriver
from mailhub.infrastructure.persistence.repositories import (
    InMemoryAccountRepository,
    InMemoryChangeSequenceRepository,
    InMemoryCredentialRepository,
    InMemorySubscriptionRepository,
    RedisAccountRepository,
    RedisChangeSequenceRepository,
    RedisCredentialRepository,
    RedisSubscriptionRepository,
)
from mailhub.shared.telemetry.metrics import MailhubMetrics
from mailhub.shared.utils.datetime import Clock, SystemClock
from mailhub.shared.utils.retry import RetryPolicy


@dataclass
class Container:
    settings: Settings
    metrics: MailhubMetrics
    account_repo: IAccountRepository
    credential_repo: ICredentialRepository
    subscription_repo: ISubscriptionRepository
    sequence_repo: IChangeSequenceRepository
    credential_manager: CredentialLifecycleManager
    resolver: ProviderResolver
    normalizer: CapabilityNormalizer
    subscription_manager: SubscriptionManager
    mailbox_service: MailboxService
    dispatcher: ChangeEventDispatcher
    scheduler: RenewalScheduler


def create_redis_client(settings: Settings) -> redis.Redis:
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        password=settings.redis_password.get_secret_value() if settings.redis_password else None,
        decode_responses=True,
        socket_connect_timeout=5,
    )


def build_container(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
    redis_client: redis.Redis | None = None,
    clock: Clock | None = None,
) -> Container:
    """Wire every component. redis_client is required when storage_backend is 'redis'."""
    clock = clock or SystemClock()
    metrics = MailhubMetrics()

    account_repo: IAccountRepository
    credential_repo: ICredentialRepository
    subscription_repo: ISubscriptionRepository
    sequence_repo: IChangeSequenceRepository
    if settings.storage_backend == "redis":
        if redis_client is None:
            raise ValueError("redis_client is required when storage_backend is 'redis'")
        encryptor = CredentialEncryptor(
            settings.secret_key.get_secret_value(),
            settings.encryption_salt.get_secret_value(),
        )
        account_repo = RedisAccountRepository(redis_client)
        credential_repo = RedisCredentialRepository(redis_client, encryptor)
        subscription_repo = RedisSubscriptionRepository(redis_client, encryptor)
        sequence_repo = RedisChangeSequenceRepository(redis_client)
    else:
        account_repo = InMemoryAccountRepository()
        credential_repo = InMemoryCredentialRepository()
        subscription_repo = InMemorySubscriptionRepository()
        sequence_repo = InMemoryChangeSequenceRepository()

    drivers = {
        BackendKind.GMAIL: GmailDriver(
            settings.gmail_client_id,
            settings.gmail_client_secret.get_secret_value(),
            http_client=http_client,
            timeout=settings.oauth_http_timeout_seconds,
        ),
        BackendKind.OUTLOOK: OutlookDriver(
            settings.outlook_client_id,
            settings.outlook_client_secret.get_secret_value(),
            tenant=settings.outlook_tenant,
            http_client=http_client,
            timeout=settings.oauth_http_timeout_seconds,
        ),
    }
    backend_retry = RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
    )
    credential_manager = CredentialLifecycleManager(
        credential_repo,
        drivers,
        clock=clock,
        refresh_margin=timedelta(seconds=settings.credential_refresh_margin_seconds),
        lease_ttl=timedelta(seconds=settings.credential_lease_ttl_seconds),
        retry_policy=RetryPolicy(
            max_attempts=settings.credential_refresh_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        ),
        metrics=metrics,
    )
    resolver = ProviderResolver(
        account_repo, credential_manager, AdapterFactory(settings, http_client=http_client)
    )
    normalizer = CapabilityNormalizer()

    shared_secrets: dict[BackendKind, str] = {}
    if settings.gmail_push_verification_token is not None:
        shared_secrets[BackendKind.GMAIL] = (
            settings.gmail_push_verification_token.get_secret_value()
        )
    subscription_manager = SubscriptionManager(
        subscription_repo,
        resolver,
        callback_urls={BackendKind.OUTLOOK: settings.outlook_notification_url},
        shared_secrets=shared_secrets,
        lifetime=timedelta(minutes=settings.subscription_lifetime_minutes),
        renewal_margin=timedelta(seconds=settings.subscription_renewal_margin_seconds),
        retry_policy=RetryPolicy(
            max_attempts=settings.subscription_renewal_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        ),
        clock=clock,
        metrics=metrics,
    )
    mailbox_service = MailboxService(
        resolver,
        normalizer,
        subscription_manager=subscription_manager,
        per_account_concurrency=settings.per_account_concurrency,
        default_timeout=settings.operation_timeout_seconds,
        retry_policy=backend_retry,
    )
    dispatcher = ChangeEventDispatcher(
        subscription_manager,
        account_repo,
        sequence_repo,
        resolver,
        clock=clock,
        retention=timedelta(seconds=settings.dedup_retention_seconds),
        max_entries=settings.dedup_max_entries,
        metrics=metrics,
    )
    scheduler = RenewalScheduler(
        subscription_manager,
        interval_seconds=settings.subscription_scheduler_interval_seconds,
        redeliver=dispatcher.redeliver_pending,
    )
    return Container(
        settings=settings,
        metrics=metrics,
        account_repo=account_repo,
        credential_repo=credential_repo,
        subscription_repo=subscription_repo,
        sequence_repo=sequence_repo,
        credential_manager=credential_manager,
        resolver=resolver,
        normalizer=normalizer,
        subscription_manager=subscription_manager,
        mailbox_service=mailbox_service,
        dispatcher=dispatcher,
        scheduler=scheduler,
    )
