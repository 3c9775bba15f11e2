"""Deterministic TAS audit: completion, evidence coverage, gaps, staleness, contradictions."""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from blueprint.answers import QuestionState
from blueprint.tas_template import TAS_TEMPLATE, TAS_TOTAL_QUESTIONS, stage_index
from blueprint.utils import as_utc, utcnow

STALE_AFTER_DAYS = 30
COMMITMENT_DUE_DAYS = 3
MAX_RECOMMENDATIONS = 3


def _percent(part: int, whole: int) -> int:
    """Percentage rounded half up."""
    return int(part / whole * 100 + 0.5) if whole else 0


def _finding(kind: str, question_id: str, severity: str, message: str, prefix: str) -> dict[str, Any]:
    return {
        "id": f"{prefix}-{question_id}",
        "type": kind,
        "severity": severity,
        "message": message,
        "question_id": question_id,
    }


def detect_contradictions(states: list[QuestionState]) -> list[dict[str, Any]]:
    """Questions flagged ``contradiction`` or carrying more than one distinct answer variant."""
    variants: dict[str, set[str]] = defaultdict(set)
    flagged: list[str] = []
    for state in states:
        if state.status == "contradiction" and state.question_id not in flagged:
            flagged.append(state.question_id)
        answer = (state.answer or "").strip()
        if answer:
            variants[state.question_id].add(answer)

    ordered = flagged + [qid for qid, seen in variants.items() if len(seen) > 1 and qid not in flagged]
    return [
        _finding("contradiction", qid, "medium", f"Conflicting answer variants detected for {qid}", "con")
        for qid in ordered
    ]


def calculate_audit(
    deal_id: int, stage: str, states: list[QuestionState], now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    gate = stage_index(stage)
    by_id: dict[str, QuestionState] = {}
    for state in states:
        by_id.setdefault(state.question_id, state)

    completion: dict[str, int] = {}
    coverage: dict[str, int] = {}
    gaps: list[dict[str, Any]] = []
    stale: list[dict[str, Any]] = []
    total_answered = 0
    total_evidence = 0

    for section in TAS_TEMPLATE:
        section_states = [by_id.get(q.id) for q in section.questions]
        answered = sum(1 for s in section_states if s and s.status != "empty")
        evidence = sum(1 for s in section_states if s and s.evidence)
        total_answered += answered
        total_evidence += evidence
        completion[section.title] = _percent(answered, len(section.questions))
        coverage[section.title] = _percent(evidence, len(section.questions))

        for question in section.questions:
            state = by_id.get(question.id)
            if (state is None or state.status == "empty") and gate >= stage_index(question.stage_critical_at):
                gaps.append(_finding(
                    "critical_gap", question.id,
                    "critical" if stage == "Commit" else "high",
                    f"Missing required TAS answer: {question.prompt}", "gap",
                ))
            updated = as_utc(state.last_updated_at) if state else None
            if updated is not None and gate > 0:
                age_days = (now - updated).days
                if age_days > STALE_AFTER_DAYS:
                    stale.append(_finding(
                        "stale", question.id, "medium",
                        f"Answer for {question.id} is stale ({age_days} days old).", "stale",
                    ))

    due = (now + timedelta(days=COMMITMENT_DUE_DAYS)).isoformat()
    recommendations = [
        {
            "id": f"rec-{gap['id']}",
            "type": "recommendation",
            "severity": gap["severity"],
            "message": f"Create commitment to resolve: {gap['message']}",
            "recommended_commitment": {
                "title": f"Resolve TAS gap {gap['question_id']}",
                "owner": "Deal Owner",
                "due_date": due,
            },
        }
        for gap in gaps[:MAX_RECOMMENDATIONS]
    ]

    return {
        "deal_id": deal_id,
        "stage": stage,
        "completion_by_section": completion,
        "evidence_coverage_by_section": coverage,
        "completion_overall": _percent(total_answered, TAS_TOTAL_QUESTIONS),
        "evidence_coverage_overall": _percent(total_evidence, TAS_TOTAL_QUESTIONS),
        "critical_gaps": gaps,
        "contradictions": detect_contradictions(states),
        "stale_flags": stale,
        "recommendations": recommendations,
    }
