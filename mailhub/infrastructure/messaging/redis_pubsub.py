"""Redis Pub/Sub publisher for normalized change events.

Publishes each ChangeEvent as JSON to the account's channel
(mailhub:change_events:{account_id}). Used as a dispatcher consumer:
a failed publish raises so the dispatcher keeps the event for redelivery.
"""

from __future__ import annotations

import json

import redis.asyncio as redis

from mailhub.domain.entities import ChangeEvent
from mailhub.domain.exceptions import BackendUnavailableException
from mailhub.infrastructure.cache.keys import change_event_channel
from mailhub.shared.telemetry.logging import get_logger

logger = get_logger(__name__)


class RedisChangeEventPublisher:
    """Publishes change events to per-account Redis channels."""

    def __init__(self, redis_client: redis.Redis | None = None) -> None:
        """Initialize with the shared client created at startup (None disables publishing)."""
        self.redis = redis_client

    def is_available(self) -> bool:
        return self.redis is not None

    async def publish(self, event: ChangeEvent) -> bool:
        """Publish one event. Returns False if Redis is unavailable or the publish failed."""
        if self.redis is None:
            logger.debug("Redis not available, skipping publish")
            return False
        channel = change_event_channel(event.account_id)
        try:
            await self.redis.publish(channel, json.dumps(event.to_dict()))
        except (redis.ConnectionError, redis.TimeoutError):
            logger.exception("Failed to publish change event %d to %s", event.sequence, channel)
            return False
        logger.debug("Published change event %d to %s", event.sequence, channel)
        return True

    async def __call__(self, event: ChangeEvent) -> None:
        if not await self.publish(event):
            raise BackendUnavailableException(
                f"Change event {event.sequence} for account {event.account_id} not published",
                backend="redis",
            )
