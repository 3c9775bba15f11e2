from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _resolve_data_dir() -> Path:
    override = _env("BLUEPRINT_HOME")
    if override:
        return Path(override).expanduser().resolve() / "data"
    return Path(__file__).parent / "data"


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=_resolve_data_dir)
    database_path: Path = Field(default_factory=lambda: _resolve_data_dir() / "blueprint.db")

    # LLM
    llm_provider: str = Field(default_factory=lambda: _env("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: _env("LLM_MODEL"))
    quality_model: str = Field(default_factory=lambda: _env("TAS_QUALITY_MODEL"))
    llm_timeout_seconds: float = Field(default_factory=lambda: _env_float("LLM_TIMEOUT_SECONDS", 60.0))

    # Encryption at rest
    encryption_key: str = Field(default_factory=lambda: _env("BLUEPRINT_ENCRYPTION_KEY"))

    # Connectors: "user_scoped" reads per-user stored credentials, "legacy_env" the workspace ones below
    connector_auth_mode: str = Field(default_factory=lambda: _env("CONNECTOR_AUTH_MODE", "legacy_env"))
    gmail_access_token: str = Field(default_factory=lambda: _env("GOOGLE_GMAIL_ACCESS_TOKEN"))
    slack_user_token: str = Field(default_factory=lambda: _env("SLACK_USER_TOKEN"))
    slack_bot_token: str = Field(default_factory=lambda: _env("SLACK_BOT_TOKEN"))
    slack_signing_secret: str = Field(default_factory=lambda: _env("SLACK_SIGNING_SECRET"))
    slack_updates_channel_id: str = Field(default_factory=lambda: _env("SLACK_DEAL_UPDATES_CHANNEL_ID"))
    gong_access_key: str = Field(default_factory=lambda: _env("GONG_ACCESS_KEY"))
    gong_access_key_secret: str = Field(default_factory=lambda: _env("GONG_ACCESS_KEY_SECRET"))
    gong_base_url: str = Field(default_factory=lambda: _env("GONG_API_BASE_URL", "https://api.gong.io"))
    gong_signal_endpoint: str = Field(default_factory=lambda: _env("GONG_SIGNAL_ENDPOINT"))
    gtm_agent_base_url: str = Field(default_factory=lambda: _env("GTM_AGENT_BASE_URL"))
    gtm_agent_api_key: str = Field(default_factory=lambda: _env("GTM_AGENT_API_KEY"))

    # Identity used by the MCP server, which has no request headers
    mcp_user_id: str = Field(default_factory=lambda: _env("BLUEPRINT_USER_ID", "local-user"))
    mcp_user_email: str = Field(default_factory=lambda: _env("BLUEPRINT_USER_EMAIL"))
    mcp_user_role: str = Field(default_factory=lambda: _env("BLUEPRINT_USER_ROLE", "AD").upper())

    request_timeout_seconds: float = Field(default_factory=lambda: _env_float("HTTP_TIMEOUT_SECONDS", 12.0))

    # Cache lifetimes
    signal_cache_ttl_seconds: float = 300.0
    quality_cache_ttl_seconds: float = 300.0

    def ensure_directories(self) -> None:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def slack_token(self) -> str:
        return self.slack_user_token or self.slack_bot_token


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
