"""Pytest configuration and fixtures for mailhub.

Service-level tests use build_hub() (real services over in-memory stores and
fake adapters). HTTP tests use mailhub.main:create_app with a container built
in memory and set on app.state, since the ASGI transport does not run the
lifespan.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from mailhub.core.config import Settings, get_settings
from mailhub.core.container import Container, build_container
from mailhub.main import create_app
from tests.fakes import GMAIL_PUSH_TOKEN, OUTLOOK_CALLBACK, FakeClock, Hub, build_hub


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def hub(clock: FakeClock) -> Hub:
    return await build_hub(clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        storage_backend="memory",
        outlook_notification_url=OUTLOOK_CALLBACK,
        gmail_push_verification_token=GMAIL_PUSH_TOKEN,
    )


@pytest.fixture
def container(settings: Settings) -> Container:
    return build_container(settings)


@pytest.fixture
async def client(container: Container) -> AsyncClient:
    """Async HTTP client against the FastAPI app (ASGI), container pre-built."""
    get_settings.cache_clear()
    app = create_app()
    app.state.container = container
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    get_settings.cache_clear()
