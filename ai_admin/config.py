import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "AI_ADMIN_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("ai_admin_api_key", "instant_admin_token", "census_api_key", "openrouter_api_key")

DEFAULT_ZIP_PREFIXES = [
    "730", "731", "732", "733", "734", "735", "736", "737", "738", "739",
    "740", "741", "743", "744", "745", "746", "747", "748", "749",
]


def split_entries(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [token.strip().lower() for token in re.split(r"[,\s]+", value) if token.strip()]


class AppSettings(BaseModel):
    app_env: str = "development"

    # Caller authorization
    ai_admin_api_key: Optional[str] = None
    admin_emails: List[str] = Field(default_factory=list)
    admin_domains: List[str] = Field(default_factory=list)

    # Hosted data store (admin API)
    instant_app_id: Optional[str] = None
    instant_admin_token: Optional[str] = None
    instant_base_url: str = "https://api.instantdb.com"

    # Upstream statistical API
    census_api_key: Optional[str] = None
    census_base_url: str = "https://api.census.gov/data"
    census_state_fips: str = "40"
    default_parent_area: str = "Oklahoma"
    zip_prefixes: List[str] = Field(default_factory=lambda: list(DEFAULT_ZIP_PREFIXES))

    # Plan suggestion model
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    planner_model: str = "anthropic/claude-3.5-haiku"

    step_lease_seconds: int = 900
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return (self.app_env or "").strip().lower() == "production"

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _first_env(*keys: str) -> Optional[str]:
    for key in keys:
        value = os.getenv(key)
        if value is not None and value.strip():
            return value.strip()
    return None


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "app_env": _first_env("APP_ENV", "NODE_ENV"),
        "ai_admin_api_key": _first_env("AI_ADMIN_API_KEY", "VITE_AI_ADMIN_API_KEY"),
        "instant_app_id": _first_env("INSTANT_APP_ID", "VITE_INSTANT_APP_ID"),
        "instant_admin_token": _first_env("INSTANT_APP_ADMIN_TOKEN"),
        "instant_base_url": _first_env("INSTANT_BASE_URL"),
        "census_api_key": _first_env("CENSUS_API_KEY"),
        "census_base_url": _first_env("CENSUS_BASE_URL"),
        "census_state_fips": _first_env("CENSUS_STATE_FIPS"),
        "default_parent_area": _first_env("DEFAULT_PARENT_AREA"),
        "zip_prefixes": _first_env("ZIP_PREFIXES"),
        "openrouter_api_key": _first_env("OPENROUTER_API_KEY", "OPENROUTER"),
        "openrouter_base_url": _first_env("OPENROUTER_BASE_URL"),
        "planner_model": _first_env("PLANNER_MODEL"),
        "step_lease_seconds": _first_env("STEP_LEASE_SECONDS"),
        "host": _first_env("HOST"),
        "port": _first_env("PORT"),
    }
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    # Allowlists merge both the plain and the VITE_ prefixed variables.
    admin_emails = split_entries(os.getenv("ADMIN_EMAIL")) + split_entries(os.getenv("VITE_ADMIN_EMAIL"))
    if admin_emails:
        cleaned["admin_emails"] = admin_emails
    admin_domains = split_entries(os.getenv("ADMIN_DOMAIN")) + split_entries(os.getenv("VITE_ADMIN_DOMAIN"))
    if admin_domains:
        cleaned["admin_domains"] = [d[1:] if d.startswith("@") else d for d in admin_domains]
    if "zip_prefixes" in cleaned:
        cleaned["zip_prefixes"] = split_entries(cleaned["zip_prefixes"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "step_lease_seconds" in cleaned:
        cleaned["step_lease_seconds"] = int(cleaned["step_lease_seconds"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets are never expected in config.json; fall back to the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)
