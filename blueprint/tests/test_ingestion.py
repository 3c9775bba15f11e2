"""Tests for ingestion runs: persistence, delta selection, failure handling and access."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from blueprint.answers import upsert_answer
from blueprint.errors import LLMCallError, NotFoundError, ValidationError
from blueprint.ingestion import (
    CONFIDENCE_THRESHOLD,
    MAX_DELTAS_PER_RUN,
    create_ingestion_run,
    get_decrypted_context,
    list_ingestion_runs,
    list_review_queue,
)
from blueprint.models import IngestionDelta, IngestionRun, IngestionSnapshot
from blueprint.review import decide_bulk
from blueprint.tas_template import QUESTION_IDS

CONTEXT = "Call notes: CFO Dana Lee owns budget; security review due May 1."


def _field(answer: str, confidence: float) -> dict:
    return {
        "proposedAnswer": answer,
        "confidence": confidence,
        "evidenceSnippets": [f"quote for {answer}"],
        "reasoning": "Stated in the notes.",
    }


def _client(reply) -> MagicMock:
    client = MagicMock()
    client.model = "test-model"
    if isinstance(reply, Exception):
        client.complete = AsyncMock(side_effect=reply)
    else:
        client.complete = AsyncMock(return_value=reply if isinstance(reply, str) else json.dumps(reply))
    return client


class TestCreateIngestionRun:
    @pytest.mark.asyncio
    async def test_short_unhelpful_context_completes_without_deltas(self, session, deal):
        result = await create_ingestion_run(
            session, deal.id, "ad-1", "pasted_context", "nothing useful in here ok", _client("no json"),
        )
        assert result["run"]["status"] == "completed"
        assert result["run"]["model"] == "test-model"
        assert result["snapshot_version"] == 1
        assert result["deltas"] == []

        snapshot = session.execute(select(IngestionSnapshot)).scalars().one()
        payload = json.loads(snapshot.payload_json)
        assert list(payload) == list(QUESTION_IDS)
        assert all(v["confidence"] == 0.4 for v in payload.values())

    @pytest.mark.asyncio
    async def test_deltas_capped_and_best_first(self, session, deal):
        reply = {qid: _field(f"Answer for {qid}", 0.70 + i * 0.01) for i, qid in enumerate(QUESTION_IDS)}
        result = await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client(reply))

        deltas = result["deltas"]
        assert len(deltas) == MAX_DELTAS_PER_RUN
        confidences = [d["confidence"] for d in deltas]
        assert confidences == sorted(confidences, reverse=True)
        assert deltas[0]["question_id"] == "q24"
        assert {d["question_id"] for d in deltas} == set(QUESTION_IDS[12:])

    @pytest.mark.asyncio
    async def test_confidence_floor_is_inclusive(self, session, deal):
        reply = {
            "q1": _field("Platform consolidation initiative", CONFIDENCE_THRESHOLD - 0.01),
            "q2": _field("Cut infrastructure spend", CONFIDENCE_THRESHOLD),
        }
        result = await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client(reply))
        assert [d["question_id"] for d in result["deltas"]] == ["q2"]

    @pytest.mark.asyncio
    async def test_unchanged_answers_are_not_proposed(self, session, deal):
        upsert_answer(session, deal.id, "q12", "CFO Dana Lee", "confirmed", "ad-1")
        session.commit()
        reply = {
            "q12": _field("cfo  dana-lee!", 0.95),
            "q13": _field("CFO signs after legal", 0.9),
        }
        result = await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client(reply))
        assert [d["question_id"] for d in result["deltas"]] == ["q13"]

    @pytest.mark.asyncio
    async def test_rerun_bumps_snapshot_version(self, session, deal):
        reply = {"q13": _field("CFO signs after legal", 0.9)}
        first = await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client(reply))
        second = await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client(reply))
        assert (first["snapshot_version"], second["snapshot_version"]) == (1, 2)
        assert len(session.execute(select(IngestionDelta)).scalars().all()) == 2

    @pytest.mark.asyncio
    async def test_rerun_after_accept_proposes_nothing(self, session, deal):
        reply = {
            "q12": _field("CFO Dana Lee", 0.9),
            "q13": _field("CFO signs after legal", 0.85),
        }
        first = await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client(reply))
        assert len(first["deltas"]) == 2
        assert decide_bulk(session, deal.id, "ad-1", "accept") == 2

        second = await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client(reply))
        assert second["run"]["status"] == "completed"
        assert second["deltas"] == []
        assert list_review_queue(session, deal.id, "ad-1", status="pending") == []

    @pytest.mark.asyncio
    async def test_old_value_recorded(self, session, deal):
        upsert_answer(session, deal.id, "q13", "Unknown signer", "manual", "ad-1")
        session.commit()
        reply = {"q13": _field("CFO signs after legal", 0.9)}
        result = await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client(reply))
        assert result["deltas"][0]["old_value"] == "Unknown signer"
        assert result["deltas"][0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_provider_failure_marks_run_failed(self, session, deal):
        with pytest.raises(LLMCallError):
            await create_ingestion_run(
                session, deal.id, "ad-1", "call_notes", CONTEXT,
                _client(LLMCallError("LLM API call failed: timeout", retryable=True)),
            )
        run = session.execute(select(IngestionRun)).scalars().one()
        assert run.status == "failed"
        assert "timeout" in run.error_message
        assert run.completed_at is not None
        assert session.execute(select(IngestionDelta)).scalars().all() == []
        assert session.execute(select(IngestionSnapshot)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_validation_happens_before_persisting(self, session, deal):
        client = _client("{}")
        with pytest.raises(ValidationError):
            await create_ingestion_run(session, deal.id, "ad-1", "call_notes", "   too short    ", client)
        with pytest.raises(ValidationError):
            await create_ingestion_run(session, deal.id, "ad-1", "fax", CONTEXT, client)
        with pytest.raises(NotFoundError):
            await create_ingestion_run(session, deal.id, "someone-else", "call_notes", CONTEXT, client)
        client.complete.assert_not_called()
        assert session.execute(select(IngestionRun)).scalars().all() == []

    @pytest.mark.asyncio
    async def test_context_is_encrypted_at_rest(self, session, deal):
        result = await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client("{}"))
        run = session.get(IngestionRun, result["run"]["id"])
        assert CONTEXT not in run.raw_context_encrypted
        assert run.raw_context_encrypted.startswith("v1.")
        assert get_decrypted_context(session, run.id, "ad-1") == CONTEXT
        with pytest.raises(NotFoundError):
            get_decrypted_context(session, run.id, "manager-1")


class TestQueries:
    @pytest.mark.asyncio
    async def test_runs_listed_for_owner_only(self, session, deal):
        await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client("{}"))
        assert len(list_ingestion_runs(session, deal.id, "ad-1")) == 1
        with pytest.raises(NotFoundError):
            list_ingestion_runs(session, deal.id, "ad-2")

    @pytest.mark.asyncio
    async def test_review_queue_order_and_filter(self, session, deal):
        reply = {
            "q12": _field("CFO Dana Lee", 0.7),
            "q13": _field("CFO signs after legal", 0.9),
            "q14": _field("CISO can block", 0.8),
        }
        await create_ingestion_run(session, deal.id, "ad-1", "call_notes", CONTEXT, _client(reply))
        top = session.execute(select(IngestionDelta).where(IngestionDelta.question_id == "q13")).scalars().one()
        top.status = "rejected"
        session.commit()

        queue = list_review_queue(session, deal.id, "ad-1")
        assert [d["question_id"] for d in queue] == ["q14", "q12", "q13"]
        pending = list_review_queue(session, deal.id, "ad-1", status="pending")
        assert [d["question_id"] for d in pending] == ["q14", "q12"]
        assert queue[0]["question_prompt"] == "Who can block this deal internally?"
