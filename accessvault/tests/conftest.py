from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from accessvault.apps.api.main import create_app
from accessvault.core.config import Settings
from accessvault.persistence.db import create_engine_for, create_schema, create_session_factory
from accessvault.services.container import build_services
from accessvault.tests.utils.email import CapturingEmailTransport
from accessvault.services.telemetry import reset_telemetry
from accessvault.tests.utils.providers import FakeProviderApi, static_gcp_token


@pytest.fixture
def settings() -> Settings:
    # Ignore any local .env so tests see the same configuration everywhere.
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        auth_enabled=True,
        auth_dev_bypass=False,
        zitadel_domain="zitadel.test",
        zitadel_api_token="zitadel-management-token",
        session_signing_secret="test-session-signing-secret",
        email_transport="log",
        app_url="https://portal.acme.test",
    )


@pytest.fixture
async def engine(settings: Settings):
    # Fresh in-memory database per test keeps rows isolated without cleanup.
    engine = create_engine_for(settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture(autouse=True)
def reset_telemetry_buffers():
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def fake_api() -> FakeProviderApi:
    return FakeProviderApi()


@pytest.fixture
def email_transport() -> CapturingEmailTransport:
    return CapturingEmailTransport()


@pytest.fixture
async def services(settings, session_factory, fake_api, email_transport):
    container = build_services(
        settings,
        session_factory,
        http_client=fake_api.client(),
        lxd_transport=fake_api.transport(),
        gcp_token_provider=static_gcp_token,
        email_transport=email_transport,
    )
    yield container
    await container.aclose()


@pytest.fixture
async def api_client(services):
    # ASGITransport does not run lifespan, so the injected container stays open for the test.
    app = create_app(services.settings, services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
