import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from ai_admin.config import AppSettings, load_settings, split_entries


@pytest.fixture
def clean_env(monkeypatch):
    for key in (
        "APP_ENV",
        "NODE_ENV",
        "AI_ADMIN_API_KEY",
        "VITE_AI_ADMIN_API_KEY",
        "ADMIN_EMAIL",
        "VITE_ADMIN_EMAIL",
        "ADMIN_DOMAIN",
        "VITE_ADMIN_DOMAIN",
        "INSTANT_APP_ID",
        "VITE_INSTANT_APP_ID",
        "INSTANT_APP_ADMIN_TOKEN",
        "CENSUS_API_KEY",
        "ZIP_PREFIXES",
        "PORT",
        "STEP_LEASE_SECONDS",
        "AI_ADMIN_ENV_OVERRIDES_CONFIG",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("ai_admin.config.load_dotenv", lambda *args, **kwargs: False)
    return monkeypatch


def test_defaults_without_env_or_config(tmp_path, clean_env):
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.app_env == "development"
    assert settings.is_production is False
    assert settings.ai_admin_api_key is None
    assert settings.step_lease_seconds == 900
    assert "731" in settings.zip_prefixes


def test_env_aliases_and_allowlists(tmp_path, clean_env):
    clean_env.setenv("NODE_ENV", "production")
    clean_env.setenv("VITE_AI_ADMIN_API_KEY", "k1")
    clean_env.setenv("ADMIN_EMAIL", "A@Example.org, b@example.org")
    clean_env.setenv("VITE_ADMIN_DOMAIN", "@staff.example.org")
    clean_env.setenv("VITE_INSTANT_APP_ID", "app-1")
    clean_env.setenv("ZIP_PREFIXES", "730 731")
    clean_env.setenv("STEP_LEASE_SECONDS", "30")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.is_production is True
    assert settings.ai_admin_api_key == "k1"
    assert settings.admin_emails == ["a@example.org", "b@example.org"]
    assert settings.admin_domains == ["staff.example.org"]
    assert settings.instant_app_id == "app-1"
    assert settings.zip_prefixes == ["730", "731"]
    assert settings.step_lease_seconds == 30


def test_config_json_wins_by_default(tmp_path, clean_env):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"port": 9001}))
    clean_env.setenv("PORT", "9002")
    assert load_settings(config_path=config_path).port == 9001


def test_env_overrides_config_when_enabled(tmp_path, clean_env):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"port": 9001}))
    clean_env.setenv("PORT", "9002")
    clean_env.setenv("AI_ADMIN_ENV_OVERRIDES_CONFIG", "1")
    assert load_settings(config_path=config_path).port == 9002


def test_secrets_fall_back_to_env_when_config_omits_them(tmp_path, clean_env):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"ai_admin_api_key": "", "census_base_url": "http://census.test"}))
    clean_env.setenv("AI_ADMIN_API_KEY", "from-env")
    settings = load_settings(config_path=config_path)
    assert settings.ai_admin_api_key == "from-env"
    assert settings.census_base_url == "http://census.test"


def test_safe_dict_masks_secrets():
    settings = AppSettings(ai_admin_api_key="secret", instant_admin_token="tok", census_api_key=None)
    data = settings.to_safe_dict()
    assert data["ai_admin_api_key"] == "********"
    assert data["instant_admin_token"] == "********"
    assert data["census_api_key"] is None


def test_split_entries():
    assert split_entries(" a@x.org,,b@x.org  c@x.org ") == ["a@x.org", "b@x.org", "c@x.org"]
    assert split_entries(None) == []


@pytest.mark.asyncio
async def test_health_reports_environment(app_factory):
    app, db, census, llm = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/health")
            assert res.status_code == 200
            assert res.json() == {"ok": True, "env": "test", "runs": 0}
    assert db.closed and census.closed and llm.closed
