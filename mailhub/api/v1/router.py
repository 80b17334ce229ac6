"""API v1 router aggregation.

Includes all endpoint modules with consistent prefix and tags. Routes reach
services through mailhub.api.v1.dependencies only.
"""

from fastapi import APIRouter

from mailhub.api.v1.endpoints import health, webhooks

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
