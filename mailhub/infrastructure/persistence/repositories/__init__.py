"""Repository implementations (in-memory and Redis)."""

from mailhub.infrastructure.persistence.repositories.memory_repo import (
    InMemoryAccountRepository,
    InMemoryChangeSequenceRepository,
    InMemoryCredentialRepository,
    InMemorySubscriptionRepository,
)
from mailhub.infrastructure.persistence.repositories.redis_repo import (
    RedisAccountRepository,
    RedisChangeSequenceRepository,
    RedisCredentialRepository,
    RedisSubscriptionRepository,
)

__all__ = [
    "InMemoryAccountRepository",
    "InMemoryChangeSequenceRepository",
    "InMemoryCredentialRepository",
    "InMemorySubscriptionRepository",
    "RedisAccountRepository",
    "RedisChangeSequenceRepository",
    "RedisCredentialRepository",
    "RedisSubscriptionRepository",
]
