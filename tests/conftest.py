from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from skillforge.main import create_app
from skillforge.service import PlanService
from tests.fakes import make_settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(**settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        service = PlanService(settings)
        app = create_app(settings, service=service)
        return app, service

    return _factory


@pytest.fixture
async def service(tmp_path: Path):
    svc = PlanService(make_settings(tmp_path))
    await svc.init()
    return svc


@pytest.fixture
async def client(app_factory):
    app, service = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.service = service  # type: ignore[attr-defined]
            yield http_client
