"""API v1: aggregated router."""

from mailhub.api.v1.router import api_router

__all__ = ["api_router"]
