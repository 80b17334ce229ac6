"""Application services: credentials, resolution, mailbox operations, subscriptions, dispatch."""

from mailhub.application.services.change_dispatcher import (
    ChangeConsumer,
    ChangeEventDispatcher,
    DispatchOutcome,
    DispatchResult,
    NotificationDeduplicator,
)
from mailhub.application.services.credential_manager import CredentialLifecycleManager
from mailhub.application.services.mailbox_service import MailboxService
from mailhub.application.services.provider_resolver import ProviderResolver
from mailhub.application.services.subscription_manager import (
    RenewalScheduler,
    SubscriptionManager,
)

__all__ = [
    "ChangeConsumer",
    "ChangeEventDispatcher",
    "CredentialLifecycleManager",
    "DispatchOutcome",
    "DispatchResult",
    "MailboxService",
    "NotificationDeduplicator",
    "ProviderResolver",
    "RenewalScheduler",
    "SubscriptionManager",
]
