"""Health check endpoints; used for liveness and readiness checks."""

from fastapi import APIRouter

from mailhub.api.v1.dependencies import ContainerDep
from mailhub.infrastructure.external.email.factory import AdapterFactory
from mailhub.schemas.health import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Return simple ok status for liveness."""
    return HealthResponse()


@router.get("/ready", response_model=ReadinessResponse)
def readiness_check(container: ContainerDep) -> ReadinessResponse:
    """200 once the container is built (503 from get_container before that)."""
    return ReadinessResponse(
        storage=container.settings.storage_backend,
        supported_backends=AdapterFactory.list_supported_backends(),
    )
