"""Application ports (repository protocols)."""

from mailhub.application.interfaces.repositories import (
    IAccountRepository,
    IChangeSequenceRepository,
    ICredentialRepository,
    ISubscriptionRepository,
)

__all__ = [
    "IAccountRepository",
    "IChangeSequenceRepository",
    "ICredentialRepository",
    "ISubscriptionRepository",
]
