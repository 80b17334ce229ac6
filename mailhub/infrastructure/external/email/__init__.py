"""Email backend integration: adapters, normalizer, OAuth drivers, encryption."""

from mailhub.infrastructure.external.email.encryption import CredentialEncryptor
from mailhub.infrastructure.external.email.factory import AdapterFactory
from mailhub.infrastructure.external.email.normalizer import CapabilityNormalizer
from mailhub.infrastructure.external.email.oauth_drivers import (
    GmailDriver,
    OAuthDriver,
    OAuthDriverRegistry,
    OAuthTokens,
    OutlookDriver,
)
from mailhub.infrastructure.external.email.protocols import (
    ChangeBatch,
    IMailboxAdapter,
    NativeQuery,
    SubscriptionGrant,
)

__all__ = [
    "AdapterFactory",
    "CapabilityNormalizer",
    "ChangeBatch",
    "CredentialEncryptor",
    "GmailDriver",
    "IMailboxAdapter",
    "NativeQuery",
    "OAuthDriver",
    "OAuthDriverRegistry",
    "OAuthTokens",
    "OutlookDriver",
    "SubscriptionGrant",
]
