from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from blueprint.config import get_settings
from blueprint.models import Base, Deal

# base64 of 32 ASCII zeros
TEST_ENCRYPTION_KEY = "MDAw" * 10 + "MDA="

_CONNECTOR_ENV = (
    "GOOGLE_GMAIL_ACCESS_TOKEN", "SLACK_USER_TOKEN", "SLACK_BOT_TOKEN", "SLACK_SIGNING_SECRET",
    "SLACK_DEAL_UPDATES_CHANNEL_ID", "GONG_ACCESS_KEY", "GONG_ACCESS_KEY_SECRET", "GONG_SIGNAL_ENDPOINT",
    "GTM_AGENT_BASE_URL", "GTM_AGENT_API_KEY", "CONNECTOR_AUTH_MODE",
)


@pytest.fixture(autouse=True)
def settings_env(monkeypatch, tmp_path):
    """Isolated settings: temp data dir, a fixed encryption key, no connector credentials."""
    monkeypatch.setenv("BLUEPRINT_HOME", str(tmp_path))
    monkeypatch.setenv("BLUEPRINT_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    for name in _CONNECTOR_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def deal(session) -> Deal:
    d = Deal(
        owner_id="ad-1", owner_email="ad1@example.com",
        account_name="Acme Corp", opportunity_name="Acme Platform Expansion",
        stage="Discovery", amount=120000.0, close_date="2026-12-15",
    )
    session.add(d)
    session.commit()
    return d
