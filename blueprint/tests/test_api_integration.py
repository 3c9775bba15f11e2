"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database; the LLM client and caches
are swapped through ``app.dependency_overrides``.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from blueprint.cache import SignalCache, TTLCache
from blueprint.config import get_settings
from blueprint.errors import LLMCallError
from blueprint.models import Base

AD = {"X-User-Id": "ad-1", "X-User-Email": "ad1@example.com", "X-User-Role": "AD", "X-User-Name": "Alex AD"}
AD2 = {"X-User-Id": "ad-2", "X-User-Role": "AD"}
MANAGER = {"X-User-Id": "mgr-1", "X-User-Role": "manager"}

CONTEXT = "Call notes: CFO Dana Lee signs after legal review; CISO can block on residency."


def _extraction_reply() -> str:
    return json.dumps({
        "q13": {"proposedAnswer": "CFO Dana Lee signs after legal review", "confidence": 0.9,
                "evidenceSnippets": ["CFO Dana Lee signs after legal review"], "reasoning": "Direct."},
        "q14": {"proposedAnswer": "CISO can block on data residency", "confidence": 0.8,
                "evidenceSnippets": ["CISO can block on residency"], "reasoning": "Direct."},
    })


@pytest.fixture()
def test_db():
    """In-memory database shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def llm():
    client = MagicMock()
    client.model = "test-model"
    client.complete = AsyncMock(return_value=_extraction_reply())
    client.call = AsyncMock(side_effect=LLMCallError("no credentials"))
    return client


@pytest.fixture()
def client(test_db, llm):
    _, TestSession = test_db
    from blueprint.app import app, db_session, llm_client, quality_cache, signal_cache

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    signals = SignalCache(TTLCache(300))
    quality = TTLCache(300)
    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[llm_client] = lambda: llm
    app.dependency_overrides[signal_cache] = lambda: signals
    app.dependency_overrides[quality_cache] = lambda: quality
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def deal_id(client) -> int:
    resp = client.post("/api/deals", headers=AD, json={
        "account_name": "Acme Corp", "opportunity_name": "Acme Platform Expansion",
        "stage": "Discovery", "amount": 120000, "close_date": "2026-12-15",
    })
    assert resp.status_code == 201
    return resp.json()["id"]


class TestIdentity:
    def test_missing_user(self, client):
        assert client.get("/api/deals").status_code == 401

    def test_unknown_role(self, client):
        assert client.get("/api/deals", headers={"X-User-Id": "x", "X-User-Role": "CEO"}).status_code == 400


class TestDealEndpoints:
    def test_create_returns_card(self, client, deal_id):
        card = client.get("/api/deals", headers=AD).json()[0]
        assert card["id"] == deal_id
        assert card["owner_email"] == "ad1@example.com"
        assert card["gate"] == "Discovery"
        assert card["tas_progress"] == {"answered": 0, "total": 24}
        assert card["top_gaps"] == [
            "What is the strategic initiative tied to this deal?",
            "What CEO-level priority does this initiative serve?",
        ]
        # five Discovery gaps plus one for having no signals
        assert card["risk"] == {"count": 6, "severity": "critical"}
        assert card["source_signals"] == []

    def test_blank_names_rejected(self, client):
        resp = client.post("/api/deals", headers=AD, json={"account_name": "  ", "opportunity_name": "X"})
        assert resp.status_code == 422

    def test_list_is_scoped(self, client, deal_id):
        assert client.get("/api/deals", headers=AD2).json() == []
        assert [d["id"] for d in client.get("/api/deals", headers=MANAGER).json()] == [deal_id]

    def test_detail_visibility(self, client, deal_id):
        assert client.get(f"/api/deals/{deal_id}", headers=AD2).status_code == 404
        detail = client.get(f"/api/deals/{deal_id}", headers=MANAGER).json()
        assert len(detail["questions"]) == 24
        assert detail["audit"]["completion_overall"] == 0

    def test_update_owner_only(self, client, deal_id):
        resp = client.patch(f"/api/deals/{deal_id}", headers=AD, json={"stage": "Solution Design"})
        assert resp.json()["gate"] == "Solutioning"
        assert client.patch(f"/api/deals/{deal_id}", headers=MANAGER, json={"stage": "Commit"}).status_code == 404


class TestTasEndpoints:
    def test_manual_answer(self, client, deal_id):
        resp = client.put(f"/api/deals/{deal_id}/tas", headers=AD, json={
            "question_id": "q12", "answer": "CFO Dana Lee",
        })
        assert resp.status_code == 200
        assert resp.json()["status"] == "manual"
        assert resp.json()["last_updated_by"] == "Alex AD"

        states = client.get(f"/api/deals/{deal_id}/tas", headers=AD).json()
        assert next(s for s in states if s["question_id"] == "q12")["answer"] == "CFO Dana Lee"

        audit = client.get(f"/api/deals/{deal_id}/audit", headers=AD).json()
        assert "q12" not in [g["question_id"] for g in audit["critical_gaps"]]

    def test_manual_answer_validation(self, client, deal_id):
        assert client.put(f"/api/deals/{deal_id}/tas", headers=AD, json={
            "question_id": "q99", "answer": "whatever",
        }).status_code == 400
        assert client.put(f"/api/deals/{deal_id}/tas", headers=AD, json={
            "question_id": "q1", "answer": "ab",
        }).status_code == 400

    def test_quality_check_falls_back(self, client, deal_id, llm):
        resp = client.post(f"/api/deals/{deal_id}/quality-check", headers=AD)
        assert resp.status_code == 200
        assert resp.json()["scorer"] == "heuristic"
        llm.call.assert_awaited_once()

    def test_signals_empty_without_connectors(self, client, deal_id):
        assert client.get(f"/api/deals/{deal_id}/signals", headers=AD).json() == {"signals": [], "insights": []}


class TestIngestionAndReview:
    def test_full_flow(self, client, deal_id):
        resp = client.post(f"/api/deals/{deal_id}/ingestions", headers=AD, json={
            "source_type": "call_notes", "raw_context": CONTEXT,
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["run"]["status"] == "completed"
        assert [d["question_id"] for d in body["deltas"]] == ["q13", "q14"]

        queue = client.get(f"/api/deals/{deal_id}/review-queue", headers=AD).json()
        q13 = queue[0]
        resp = client.post(f"/api/review/{q13['id']}/decision", headers=AD, json={"action": "accept"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "accepted"

        again = client.post(f"/api/review/{q13['id']}/decision", headers=AD, json={"action": "reject"})
        assert again.status_code == 409

        bulk = client.post(f"/api/deals/{deal_id}/review-queue/bulk-decision", headers=AD, json={"action": "reject"})
        assert bulk.json() == {"updated": 1}

        states = {s["question_id"]: s for s in client.get(f"/api/deals/{deal_id}/tas", headers=AD).json()}
        assert states["q13"]["status"] == "confirmed"
        assert states["q13"]["evidence"][0]["source_type"] == "call_notes"
        assert states["q14"]["status"] == "empty"

        pending = client.get(f"/api/deals/{deal_id}/review-queue?status=pending", headers=AD).json()
        assert pending == []

    def test_context_readback(self, client, deal_id):
        run_id = client.post(f"/api/deals/{deal_id}/ingestions", headers=AD, json={
            "raw_context": CONTEXT,
        }).json()["run"]["id"]
        assert client.get(f"/api/ingestions/{run_id}/context", headers=AD).json()["raw_context"] == CONTEXT
        assert client.get(f"/api/ingestions/{run_id}/context", headers=MANAGER).status_code == 404

    def test_short_context_rejected(self, client, deal_id):
        resp = client.post(f"/api/deals/{deal_id}/ingestions", headers=AD, json={"raw_context": "too short"})
        assert resp.status_code == 422
        assert client.get(f"/api/deals/{deal_id}/ingestions", headers=AD).json() == []

    def test_llm_failure_is_502_and_run_failed(self, client, deal_id, llm):
        llm.complete.side_effect = LLMCallError("LLM API call failed: overloaded", retryable=True)
        resp = client.post(f"/api/deals/{deal_id}/ingestions", headers=AD, json={"raw_context": CONTEXT})
        assert resp.status_code == 502
        runs = client.get(f"/api/deals/{deal_id}/ingestions", headers=AD).json()
        assert runs[0]["status"] == "failed"
        assert "overloaded" in runs[0]["error_message"]

    def test_foreign_deal(self, client, deal_id):
        resp = client.post(f"/api/deals/{deal_id}/ingestions", headers=AD2, json={"raw_context": CONTEXT})
        assert resp.status_code == 404

    def test_edit_without_answer_keeps_proposal(self, client, deal_id):
        delta = client.post(f"/api/deals/{deal_id}/ingestions", headers=AD, json={
            "raw_context": CONTEXT,
        }).json()["deltas"][0]
        resp = client.post(f"/api/review/{delta['id']}/decision", headers=AD, json={"action": "edit_then_accept"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "edited_accepted"
        assert resp.json()["proposed_value"] == delta["proposed_value"]


class TestConnectors:
    def test_store_list_delete(self, client):
        assert client.put("/api/connectors/gong", headers=AD, json={
            "secret": {"access_key": "k", "access_key_secret": "s"},
        }).json() == {"ok": True}
        listing = client.get("/api/connectors", headers=AD).json()
        configured = {p["provider"]: p["configured"] for p in listing["providers"]}
        assert configured == {"gmail": False, "slack": False, "gong": True, "gtm_agent": False}
        assert client.get("/api/connectors", headers=AD2).json()["providers"][2]["configured"] is False

        assert client.delete("/api/connectors/gong", headers=AD).status_code == 200
        assert client.delete("/api/connectors/gong", headers=AD).status_code == 404

    def test_unknown_provider(self, client):
        resp = client.put("/api/connectors/salesforce", headers=AD, json={"secret": {"token": "x"}})
        assert resp.status_code == 400

    def test_health_without_config(self, client):
        rows = client.get("/api/connector-health", headers=AD).json()
        assert {r["status"] for r in rows} == {"missing_config"}


class TestSlackEvents:
    def test_not_configured(self, client):
        assert client.post("/api/slack/events", content=b"{}").status_code == 503

    def test_signature_checked(self, client, deal_id, monkeypatch):
        monkeypatch.setenv("SLACK_SIGNING_SECRET", "shh")
        get_settings.cache_clear()
        body = json.dumps({
            "type": "event_callback",
            "event": {"type": "message", "channel": "C1", "ts": "1790000000.000100", "text": "Acme Corp: CFO approved"},
        })
        ts = str(int(time.time()))
        sig = "v0=" + hmac.new(b"shh", f"v0:{ts}:{body}".encode(), hashlib.sha256).hexdigest()

        bad = client.post("/api/slack/events", content=body, headers={
            "X-Slack-Request-Timestamp": ts, "X-Slack-Signature": "v0=deadbeef",
        })
        assert bad.status_code == 401

        ok = client.post("/api/slack/events", content=body, headers={
            "X-Slack-Request-Timestamp": ts, "X-Slack-Signature": sig,
        })
        assert ok.json() == {"ok": True, "deal_id": deal_id}

        signals = client.get(f"/api/deals/{deal_id}/signals", headers=AD).json()["signals"]
        assert signals[0]["source"] == "slack"
        assert signals[0]["highlights"] == ["Acme Corp: CFO approved"]
