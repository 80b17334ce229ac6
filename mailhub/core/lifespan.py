"""Application lifespan: startup and shutdown.

Single place for all startup/shutdown logic. Used by main.py; no business
logic here, only wiring of infrastructure (HTTP client, Redis, container,
renewal scheduler, telemetry).
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from mailhub.core.config import get_settings
from mailhub.core.container import build_container, create_redis_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def create_lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run startup then yield; on exit run shutdown.

    Startup order: shared HTTP client, Redis (if used), container, change
    event publisher (if enabled), renewal scheduler, telemetry. Shutdown runs
    in reverse.
    """
    settings = get_settings()

    # ---- Startup ----
    # Shared HTTP client for OAuth and Graph calls (connection reuse).
    app.state.http_client = httpx.AsyncClient(timeout=settings.oauth_http_timeout_seconds)

    needs_redis = settings.storage_backend == "redis" or settings.publish_change_events
    app.state.redis = create_redis_client(settings) if needs_redis else None

    container = build_container(
        settings, http_client=app.state.http_client, redis_client=app.state.redis
    )
    app.state.container = container

    app.state.publisher = None
    if settings.publish_change_events:
        from mailhub.infrastructure.messaging.redis_pubsub import RedisChangeEventPublisher

        publisher = RedisChangeEventPublisher(app.state.redis)
        container.dispatcher.add_consumer(publisher)
        app.state.publisher = publisher
        logger.info("Change events published to Redis")

    container.scheduler.start()

    if settings.telemetry_enabled:
        from mailhub.shared.telemetry.telemetry import TelemetryConfig, set_telemetry

        telemetry = TelemetryConfig(
            service_name=settings.app_name,
            service_version=settings.app_version,
            enabled=True,
            environment=settings.telemetry_environment,
        )
        telemetry.setup_telemetry(
            exporter_type=settings.telemetry_exporter,
            otlp_endpoint=settings.telemetry_otlp_endpoint,
            sample_rate=settings.telemetry_sample_rate,
        )
        set_telemetry(telemetry)
        telemetry.instrument_fastapi(app)
        if needs_redis:
            telemetry.instrument_redis()
        telemetry.instrument_logging()
        logger.info("Telemetry initialized")

    yield

    # ---- Shutdown ----
    await container.scheduler.stop()

    if getattr(app.state, "http_client", None) is not None:
        await app.state.http_client.aclose()
        app.state.http_client = None
        logger.info("HTTP client closed")

    if getattr(app.state, "redis", None) is not None:
        await app.state.redis.aclose()
        app.state.redis = None
        logger.info("Redis disconnected")

    from mailhub.shared.telemetry.telemetry import get_telemetry

    telemetry_instance = get_telemetry()
    if telemetry_instance is not None:
        telemetry_instance.shutdown()
        logger.info("Telemetry shutdown complete")
