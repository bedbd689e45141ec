from datetime import datetime, timedelta, timezone

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from ai_admin.config import AppSettings
from ai_admin.main import create_app
from ai_admin.run_store import RunStore
from tests.fakes import FakeCensusClient, FakeDataStore, FakeLLMClient

API_KEY = "test-admin-key"


def make_settings(**overrides) -> AppSettings:
    settings = AppSettings(
        app_env="test",
        ai_admin_api_key=API_KEY,
        admin_emails=["admin@example.org"],
        admin_domains=["staff.example.org"],
        instant_app_id="app-test",
        instant_admin_token="token-test",
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


class ManualClock:
    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def run_store(clock):
    store = RunStore(clock=clock, step_lease_seconds=60)
    yield store
    store.close()


@pytest.fixture
def app_factory():
    def _factory(
        *,
        fake_db: FakeDataStore | None = None,
        fake_census: FakeCensusClient | None = None,
        fake_llm: FakeLLMClient | None = None,
        run_store: RunStore | None = None,
        **settings_overrides,
    ):
        settings = make_settings(**settings_overrides)
        db = fake_db or FakeDataStore()
        census = fake_census or FakeCensusClient()
        llm = fake_llm or FakeLLMClient()
        app = create_app(
            settings,
            run_store=run_store or RunStore(step_lease_seconds=settings.step_lease_seconds),
            db=db,
            census=census,
            llm_client=llm,
        )
        return app, db, census, llm

    return _factory


@pytest.fixture
async def client(app_factory):
    app, db, census, llm = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_db = db  # type: ignore[attr-defined]
            http_client.fake_census = census  # type: ignore[attr-defined]
            http_client.fake_llm = llm  # type: ignore[attr-defined]
            yield http_client
