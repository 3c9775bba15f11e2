"""TAS quality engine: confidence per question, per section and overall.

Two paths produce the same report shape:

- **Heuristic** -- deterministic rules over answer text, status and
  evidence count. Always available.
- **LLM-assisted** -- a strict validator model scores the blueprint, then
  the same deterministic caps are re-applied on top of its numbers so a
  confident model can never promote a placeholder answer.

Any failure on the LLM path (no credentials, provider error, bad JSON)
silently falls back to the heuristic report. Reports are cached for a few
minutes per content fingerprint.
"""
from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from blueprint.answers import QuestionState
from blueprint.cache import TTLCache, default_quality_cache
from blueprint.config import get_settings
from blueprint.llm import LLMClient
from blueprint.tas_template import QUESTIONS_BY_ID, TAS_TEMPLATE, TasSection
from blueprint.utils import clamp, isoformat, utcnow

log = logging.getLogger(__name__)

CONFIRMED_THRESHOLD = 0.72
WEAK_ANSWER_CAP = 0.64
UNSUPPORTED_SHORT_CAP = 0.58
OUTSTANDING_SECTION_CAP = 0.69
LOW_SECTION_FLAG = 0.55

_LOW_VALUE_RE = re.compile(
    r"unknown|not identified|not defined|tbd|unclear|no named|no explicit|not yet defined|not yet identified"
)
_HEDGE_RE = re.compile(r"maybe|likely|probably|possibly|seems|appears|uncertain|assume|guess", re.IGNORECASE)

QUALITY_SYSTEM_PROMPT = (
    "You are a TAS quality validator. Be strict. Mark answers not_confirmed when they are "
    "generic, speculative, contradictory, unresolved, or unsupported. Never assign high "
    "confidence to unknown placeholders."
)


@dataclass
class QuestionQuality:
    question_id: str
    confidence: float
    verdict: str  # confirmed | not_confirmed
    rationale: str


@dataclass
class SectionQuality:
    section_id: str
    title: str
    confidence: float
    rationale: str
    outstanding_items: list[str] = field(default_factory=list)


@dataclass
class QualityReport:
    overall_confidence: float
    critical_flags: list[str]
    section_quality: list[SectionQuality]
    question_quality: list[QuestionQuality]
    generated_at: datetime
    scorer: str = "heuristic"  # heuristic | llm

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["generated_at"] = isoformat(self.generated_at)
        return data


# ---------------------------------------------------------------------------
# Answer text checks
# ---------------------------------------------------------------------------


def is_low_value(answer: str | None) -> bool:
    if not answer:
        return True
    normalized = answer.lower()
    return bool(_LOW_VALUE_RE.search(normalized)) or len(normalized.strip()) < 24


def is_hedged(answer: str | None) -> bool:
    return bool(answer) and bool(_HEDGE_RE.search(answer))


def _score(value: Any) -> float:
    """Clamp a model-supplied number to [0, 1]; anything non-numeric is 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0.0
    return clamp(float(value))


def _section_states(section: TasSection, states: list[QuestionState]) -> list[QuestionState]:
    ids = {q.id for q in section.questions}
    return [s for s in states if s.question_id in ids]


def _clarify(question_id: str) -> str:
    question = QUESTIONS_BY_ID.get(question_id)
    return f"Clarify: {question.prompt if question else question_id}"


# ---------------------------------------------------------------------------
# Heuristic path
# ---------------------------------------------------------------------------


def heuristic_question_quality(state: QuestionState) -> QuestionQuality:
    answer = (state.answer or "").strip()
    if not answer:
        return QuestionQuality(state.question_id, 0.0, "not_confirmed", "No answer is currently captured.")

    low_value = is_low_value(answer)
    hedged = is_hedged(answer)
    evidence_count = len(state.evidence)
    has_evidence = evidence_count > 0

    confidence = 0.62
    if state.status == "confirmed":
        confidence += 0.12
    if state.status == "manual":
        confidence += 0.06
    if has_evidence:
        confidence += min(0.22, evidence_count * 0.08)
    if len(answer) >= 80:
        confidence += 0.08
    if low_value:
        confidence -= 0.45
    if hedged:
        confidence -= 0.18
    if not has_evidence:
        confidence -= 0.1

    confidence = clamp(confidence)
    if low_value or hedged:
        confidence = min(confidence, WEAK_ANSWER_CAP)
    if not has_evidence and len(answer) < 40:
        confidence = min(confidence, UNSUPPORTED_SHORT_CAP)

    confirmed = confidence >= CONFIRMED_THRESHOLD and not low_value
    return QuestionQuality(
        question_id=state.question_id,
        confidence=confidence,
        verdict="confirmed" if confirmed else "not_confirmed",
        rationale=(
            "Answer appears specific and sufficiently grounded." if confirmed
            else "Answer is weak, unresolved, or lacks enough support."
        ),
    )


def heuristic_report(states: list[QuestionState]) -> QualityReport:
    question_quality = [heuristic_question_quality(s) for s in states]
    by_id = {q.question_id: q for q in question_quality}

    sections: list[SectionQuality] = []
    for section in TAS_TEMPLATE:
        rows = _section_states(section, states)
        n = len(rows)
        answered = sum(1 for r in rows if r.status != "empty" and (r.answer or "").strip())
        evidence = sum(1 for r in rows if r.evidence)
        not_confirmed = sum(1 for r in rows if by_id[r.question_id].verdict == "not_confirmed")
        if n:
            confidence = clamp(answered / n + (evidence / n) * 0.2 - (not_confirmed / n) * 0.35)
        else:
            confidence = 0.0

        outstanding = [
            _clarify(r.question_id) for r in rows
            if r.status == "empty" or by_id[r.question_id].verdict == "not_confirmed"
        ][:3]
        if outstanding:
            confidence = min(confidence, OUTSTANDING_SECTION_CAP)

        sections.append(SectionQuality(
            section_id=section.id,
            title=section.title,
            confidence=confidence,
            rationale=(
                "Section has unresolved or weakly supported answers." if outstanding
                else "Section appears complete with no obvious unresolved placeholders."
            ),
            outstanding_items=outstanding,
        ))

    overall = sum(s.confidence for s in sections) / max(1, len(sections))
    flags = [f"{s.title} has low confidence and needs validation." for s in sections if s.confidence < LOW_SECTION_FLAG][:4]
    return QualityReport(overall, flags, sections, question_quality, utcnow(), scorer="heuristic")


# ---------------------------------------------------------------------------
# LLM-assisted path
# ---------------------------------------------------------------------------


def quality_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "overallConfidence": {"type": "number"},
            "criticalFlags": {"type": "array", "items": {"type": "string"}},
            "sectionQuality": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "sectionId": {"type": "string"},
                        "confidence": {"type": "number"},
                        "rationale": {"type": "string"},
                        "outstandingItems": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["sectionId", "confidence", "rationale", "outstandingItems"],
                },
            },
            "questionQuality": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "questionId": {"type": "string"},
                        "confidence": {"type": "number"},
                        "verdict": {"type": "string", "enum": ["confirmed", "not_confirmed"]},
                        "rationale": {"type": "string"},
                    },
                    "required": ["questionId", "confidence", "verdict", "rationale"],
                },
            },
        },
        "required": ["overallConfidence", "criticalFlags", "sectionQuality", "questionQuality"],
    }


def build_quality_prompt(deal: dict[str, Any], states: list[QuestionState]) -> str:
    by_id = {s.question_id: s for s in states}
    sections_payload = [
        {
            "sectionId": section.id,
            "title": section.title,
            "questions": [
                {
                    "questionId": q.id,
                    "prompt": q.prompt,
                    "answer": by_id[q.id].answer if q.id in by_id else "",
                    "status": by_id[q.id].status if q.id in by_id else "empty",
                    "evidenceCount": len(by_id[q.id].evidence) if q.id in by_id else 0,
                }
                for q in section.questions
            ],
        }
        for section in TAS_TEMPLATE
    ]
    deal_payload = {
        "account": deal.get("account_name", ""),
        "opportunity": deal.get("opportunity_name", ""),
        "stage": deal.get("stage", ""),
    }
    return (
        f"Evaluate this TAS blueprint.\nDeal:\n{json.dumps(deal_payload, indent=2)}"
        f"\n\nSections:\n{json.dumps(sections_payload, indent=2)}"
    )


def _rows_by_key(rows: Any, key: str) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for row in rows if isinstance(rows, list) else []:
        if isinstance(row, dict) and isinstance(row.get(key), str):
            out.setdefault(row[key], row)
    return out


def _strings(value: Any, limit: int) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)][:limit]


def blend_report(parsed: dict[str, Any], states: list[QuestionState]) -> QualityReport:
    """Layer the deterministic caps on top of a validator model's scores."""
    llm_questions = _rows_by_key(parsed.get("questionQuality"), "questionId")
    llm_sections = _rows_by_key(parsed.get("sectionQuality"), "sectionId")

    question_quality: list[QuestionQuality] = []
    for state in states:
        row = llm_questions.get(state.question_id)
        fallback = heuristic_question_quality(state)
        answer = (state.answer or "").strip()
        low_value = is_low_value(answer)
        hedged = is_hedged(answer)

        confidence = _score(row.get("confidence")) if row else fallback.confidence
        if low_value or hedged:
            confidence = min(confidence, WEAK_ANSWER_CAP)
        if not answer:
            confidence = 0.0
        if not state.evidence and len(answer) < 40:
            confidence = min(confidence, UNSUPPORTED_SHORT_CAP)

        not_confirmed = (
            not answer or low_value or confidence < CONFIRMED_THRESHOLD
            or (row is not None and row.get("verdict") == "not_confirmed")
        )
        rationale = row.get("rationale") if row else None
        question_quality.append(QuestionQuality(
            question_id=state.question_id,
            confidence=confidence,
            verdict="not_confirmed" if not_confirmed else "confirmed",
            rationale=rationale.strip() if isinstance(rationale, str) and rationale.strip() else fallback.rationale,
        ))
    by_id = {q.question_id: q for q in question_quality}

    sections: list[SectionQuality] = []
    for section in TAS_TEMPLATE:
        row = llm_sections.get(section.id, {})
        rows = _section_states(section, states)
        n = len(rows)
        low_value_count = sum(1 for r in rows if is_low_value(r.answer))
        evidence_count = sum(1 for r in rows if r.evidence)
        not_confirmed_rows = [r for r in rows if by_id[r.question_id].verdict == "not_confirmed"]
        unanswered = sum(1 for r in rows if r.status == "empty" or not (r.answer or "").strip())
        unresolved_ratio = (low_value_count + unanswered + len(not_confirmed_rows)) / n if n else 1.0
        evidence_ratio = evidence_count / n if n else 0.0

        confidence = clamp(_score(row.get("confidence")) - unresolved_ratio * 0.55 + evidence_ratio * 0.15)
        derived = [_clarify(r.question_id) for r in not_confirmed_rows[:2]]
        outstanding = (_strings(row.get("outstandingItems"), 4) + derived)[:4]
        if outstanding:
            confidence = min(confidence, OUTSTANDING_SECTION_CAP)

        rationale = row.get("rationale")
        sections.append(SectionQuality(
            section_id=section.id,
            title=section.title,
            confidence=confidence,
            rationale=rationale if isinstance(rationale, str) else "No rationale provided.",
            outstanding_items=outstanding,
        ))

    avg_section = sum(s.confidence for s in sections) / max(1, len(sections))
    not_confirmed_ratio = sum(1 for q in question_quality if q.verdict == "not_confirmed") / max(1, len(question_quality))
    overall = _score(parsed.get("overallConfidence")) * 0.45 + avg_section * 0.55
    overall = clamp(overall - not_confirmed_ratio * 0.25)

    return QualityReport(
        overall_confidence=overall,
        critical_flags=_strings(parsed.get("criticalFlags"), 6),
        section_quality=sections,
        question_quality=question_quality,
        generated_at=utcnow(),
        scorer="llm",
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def quality_fingerprint(viewer_id: str, deal_id: int, stage: str, states: list[QuestionState]) -> str:
    content = "||".join(
        f"{s.question_id}|{s.status}|{s.answer or ''}|{len(s.evidence)}|{isoformat(s.last_updated_at) or ''}"
        for s in states
    )
    digest = hashlib.sha1(content.encode("utf-8")).hexdigest()
    return f"{viewer_id}:{deal_id}:{stage}:{digest}"


async def run_quality_check(
    deal: dict[str, Any],
    states: list[QuestionState],
    viewer_id: str,
    client: LLMClient | None = None,
    cache: TTLCache[QualityReport] | None = None,
    use_llm: bool = True,
) -> QualityReport:
    """Score a deal's blueprint. *deal* needs ``id``, ``stage`` and the account/opportunity names."""
    cache = cache if cache is not None else default_quality_cache()
    key = quality_fingerprint(viewer_id, deal["id"], deal.get("stage", ""), states)
    cached = cache.get(key)
    if cached is not None:
        return cached

    report: QualityReport
    if not use_llm:
        report = heuristic_report(states)
    else:
        try:
            client = client or LLMClient(model=get_settings().quality_model or None)
            parsed = await client.call(
                QUALITY_SYSTEM_PROMPT,
                build_quality_prompt(deal, states),
                schema=quality_schema(),
                schema_name="tas_quality_report",
            )
            report = blend_report(parsed, states)
        except Exception as exc:
            log.warning("Quality check fell back to heuristics for deal %s: %s", deal["id"], exc)
            report = heuristic_report(states)

    cache.put(key, report)
    return report
