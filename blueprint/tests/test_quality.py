"""Tests for the TAS quality engine: heuristics, LLM blending caps, fallback and caching."""
from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from blueprint.answers import QuestionState, evidence_ref
from blueprint.cache import TTLCache
from blueprint.errors import LLMCallError
from blueprint.quality import (
    CONFIRMED_THRESHOLD,
    blend_report,
    heuristic_question_quality,
    heuristic_report,
    is_hedged,
    is_low_value,
    quality_fingerprint,
    run_quality_check,
)
from blueprint.tas_template import QUESTION_IDS

DEAL = {"id": 7, "account_name": "Acme Corp", "opportunity_name": "Acme Platform Expansion", "stage": "Solutioning"}

STRONG = (
    "CFO Dana Lee is the economic buyer and approved a 1.2M budget for FY27 "
    "in the March steering committee."
)


def _states(**answers: QuestionState) -> list[QuestionState]:
    return [answers.get(qid) or QuestionState(question_id=qid) for qid in QUESTION_IDS]


def _evidence(n: int = 2) -> list[dict]:
    return [evidence_ref(f"snippet {i}") for i in range(n)]


def _client(parsed=None, error: Exception | None = None) -> MagicMock:
    client = MagicMock()
    client.model = "validator"
    client.call = AsyncMock(side_effect=error) if error else AsyncMock(return_value=parsed)
    return client


class TestAnswerChecks:
    def test_low_value(self):
        assert is_low_value(None)
        assert is_low_value("short answer")
        assert is_low_value("Economic buyer is unknown at this point in time")
        assert not is_low_value(STRONG)

    def test_hedged(self):
        assert is_hedged("The CFO probably signs this quarter")
        assert not is_hedged(STRONG)
        assert not is_hedged("")


class TestHeuristic:
    def test_empty_answer(self):
        q = heuristic_question_quality(QuestionState(question_id="q1"))
        assert q.confidence == 0.0
        assert q.verdict == "not_confirmed"

    def test_strong_confirmed_answer(self):
        q = heuristic_question_quality(QuestionState("q12", "confirmed", STRONG, _evidence(2)))
        # 0.62 + 0.12 + 0.16 + 0.08
        assert q.confidence == pytest.approx(0.98)
        assert q.verdict == "confirmed"

    def test_placeholder_capped(self):
        q = heuristic_question_quality(
            QuestionState("q12", "confirmed", "Unknown, not yet identified by the customer team", _evidence(3))
        )
        assert q.confidence <= 0.64
        assert q.verdict == "not_confirmed"

    def test_short_unsupported_capped(self):
        q = heuristic_question_quality(QuestionState("q12", "manual", "CFO Dana Lee signs the deal"))
        assert q.confidence <= 0.58

    def test_report_shape(self):
        report = heuristic_report(_states(q12=QuestionState("q12", "confirmed", STRONG, _evidence())))
        assert report.scorer == "heuristic"
        assert len(report.section_quality) == 6
        assert len(report.question_quality) == 24
        assert all(s.confidence <= 0.69 for s in report.section_quality)
        assert all(len(s.outstanding_items) <= 3 for s in report.section_quality)
        assert len(report.critical_flags) <= 4
        assert 0.0 <= report.overall_confidence <= 1.0


class TestBlend:
    def test_placeholder_never_confirmed_by_model(self):
        states = _states(q12=QuestionState("q12", "confirmed", "unknown, not yet identified", _evidence(3)))
        parsed = {
            "overallConfidence": 0.95,
            "criticalFlags": [],
            "sectionQuality": [],
            "questionQuality": [
                {"questionId": "q12", "confidence": 0.95, "verdict": "confirmed", "rationale": "Looks good."},
            ],
        }
        report = blend_report(parsed, states)
        q12 = next(q for q in report.question_quality if q.question_id == "q12")
        assert q12.verdict == "not_confirmed"
        assert q12.confidence <= 0.64
        assert report.scorer == "llm"

    def test_model_verdict_can_demote(self):
        states = _states(q12=QuestionState("q12", "confirmed", STRONG, _evidence()))
        parsed = {"questionQuality": [
            {"questionId": "q12", "confidence": 0.9, "verdict": "not_confirmed", "rationale": "Contradicts call 2."},
        ]}
        q12 = next(q for q in blend_report(parsed, states).question_quality if q.question_id == "q12")
        assert q12.confidence == pytest.approx(0.9)
        assert q12.verdict == "not_confirmed"
        assert q12.rationale == "Contradicts call 2."

    def test_confirmed_when_model_agrees(self):
        states = _states(q12=QuestionState("q12", "confirmed", STRONG, _evidence()))
        parsed = {"questionQuality": [
            {"questionId": "q12", "confidence": CONFIRMED_THRESHOLD, "verdict": "confirmed", "rationale": "ok"},
        ]}
        q12 = next(q for q in blend_report(parsed, states).question_quality if q.question_id == "q12")
        assert q12.verdict == "confirmed"

    def test_garbage_numbers_treated_as_zero(self):
        parsed = {"overallConfidence": "very high", "criticalFlags": ["a", 3, "b"]}
        report = blend_report(parsed, _states())
        assert report.overall_confidence == 0.0
        assert report.critical_flags == ["a", "b"]


class TestRunQualityCheck:
    @pytest.mark.asyncio
    async def test_falls_back_to_heuristic_on_error(self):
        cache = TTLCache(300)
        report = await run_quality_check(DEAL, _states(), "ad-1", client=_client(error=LLMCallError("down")), cache=cache)
        assert report.scorer == "heuristic"

    @pytest.mark.asyncio
    async def test_result_is_cached_per_fingerprint(self):
        cache = TTLCache(300)
        client = _client({"overallConfidence": 0.5})
        states = _states()
        first = await run_quality_check(DEAL, states, "ad-1", client=client, cache=cache)
        second = await run_quality_check(DEAL, states, "ad-1", client=client, cache=cache)
        assert first is second
        assert client.call.await_count == 1

        changed = _states(q1=QuestionState("q1", "manual", STRONG, [], datetime(2026, 1, 1, tzinfo=UTC)))
        await run_quality_check(DEAL, changed, "ad-1", client=client, cache=cache)
        assert client.call.await_count == 2

    @pytest.mark.asyncio
    async def test_heuristic_only(self):
        client = _client({})
        report = await run_quality_check(DEAL, _states(), "ad-1", client=client, cache=TTLCache(300), use_llm=False)
        assert report.scorer == "heuristic"
        client.call.assert_not_called()

    def test_fingerprint_is_viewer_scoped(self):
        states = _states()
        assert quality_fingerprint("a", 1, "Discovery", states) != quality_fingerprint("b", 1, "Discovery", states)
        assert quality_fingerprint("a", 1, "Discovery", states) == quality_fingerprint("a", 1, "Discovery", states)

    def test_report_serializes(self):
        data = heuristic_report(_states()).to_dict()
        assert data["scorer"] == "heuristic"
        assert isinstance(data["generated_at"], str)
        assert data["section_quality"][0]["section_id"] == "strategic-initiative"
