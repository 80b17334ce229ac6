"""Messaging: change event publication to Redis Pub/Sub."""

from mailhub.infrastructure.messaging.redis_pubsub import RedisChangeEventPublisher

__all__ = ["RedisChangeEventPublisher"]
