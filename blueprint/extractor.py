"""TAS extraction: one structured LLM call proposing an answer for all 24 questions.

The model is asked for every question id at once. Whatever comes back is
sanitized field by field; a missing or malformed field is replaced by a
low-confidence placeholder so callers always receive a complete set.
Only a failing provider call raises.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from blueprint.llm import LLMClient, parse_json_object
from blueprint.tas_template import ALL_QUESTIONS, TasQuestion
from blueprint.utils import clamp

log = logging.getLogger(__name__)

FALLBACK_ANSWER = "Insufficient explicit evidence in provided context."
FALLBACK_CONFIDENCE = 0.4
MAX_EVIDENCE_SNIPPETS = 3
FALLBACK_EXCERPT_CHARS = 220

EXTRACTION_SYSTEM_PROMPT = (
    "You extract TAS answers from raw deal context. "
    "Return concise factual outputs. Do not invent facts."
)


@dataclass
class ExtractedField:
    question_id: str
    proposed_answer: str
    confidence: float
    evidence_snippets: list[str] = field(default_factory=list)
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "questionId": self.question_id,
            "proposedAnswer": self.proposed_answer,
            "confidence": self.confidence,
            "evidenceSnippets": list(self.evidence_snippets),
            "reasoning": self.reasoning,
        }


@dataclass
class ExtractionResult:
    model: str
    fields: list[ExtractedField]
    parsed_payload: dict[str, Any] | None


def extraction_schema() -> dict[str, Any]:
    """Strict JSON schema with one required object property per question id."""
    field_schema = {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "proposedAnswer": {"type": "string"},
            "confidence": {"type": "number"},
            "evidenceSnippets": {"type": "array", "items": {"type": "string"}},
            "reasoning": {"type": "string"},
        },
        "required": ["proposedAnswer", "confidence", "evidenceSnippets", "reasoning"],
    }
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": {q.id: field_schema for q in ALL_QUESTIONS},
        "required": [q.id for q in ALL_QUESTIONS],
    }


def build_user_prompt(raw_context: str) -> str:
    questions = "\n".join(f"{q.id}: {q.prompt}" for q in ALL_QUESTIONS)
    return f"Return ALL TAS question fields as JSON.\nQuestions:\n{questions}\n\nContext:\n{raw_context}"


def _clamp_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return FALLBACK_CONFIDENCE
    return clamp(float(value))


def fallback_field(question: TasQuestion, raw_context: str) -> ExtractedField:
    excerpt = raw_context.strip()[:FALLBACK_EXCERPT_CHARS]
    return ExtractedField(
        question_id=question.id,
        proposed_answer=FALLBACK_ANSWER,
        confidence=FALLBACK_CONFIDENCE,
        evidence_snippets=[excerpt] if excerpt else [],
        reasoning=f"No reliable statement found for: {question.prompt}",
    )


def sanitize_field(question: TasQuestion, payload: Any, raw_context: str) -> ExtractedField:
    """Turn one raw model field into an :class:`ExtractedField`."""
    if not isinstance(payload, dict):
        return fallback_field(question, raw_context)
    answer = payload.get("proposedAnswer")
    if not isinstance(answer, str) or not answer.strip():
        return fallback_field(question, raw_context)

    snippets = payload.get("evidenceSnippets")
    if isinstance(snippets, list):
        evidence = [s.strip() for s in snippets if isinstance(s, str) and s.strip()][:MAX_EVIDENCE_SNIPPETS]
    else:
        evidence = fallback_field(question, raw_context).evidence_snippets

    reasoning = payload.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        reasoning = f"No reliable statement found for: {question.prompt}"

    return ExtractedField(
        question_id=question.id,
        proposed_answer=answer.strip(),
        confidence=_clamp_confidence(payload.get("confidence")),
        evidence_snippets=evidence,
        reasoning=reasoning.strip(),
    )


def fields_from_payload(parsed: dict[str, Any] | None, raw_context: str) -> list[ExtractedField]:
    parsed = parsed or {}
    return [sanitize_field(q, parsed.get(q.id), raw_context) for q in ALL_QUESTIONS]


async def extract_tas_fields(raw_context: str, client: LLMClient | None = None) -> ExtractionResult:
    """Run the extraction call. Raises ``LLMCallError`` if the provider fails."""
    client = client or LLMClient()
    text = await client.complete(
        EXTRACTION_SYSTEM_PROMPT,
        build_user_prompt(raw_context),
        schema=extraction_schema(),
        schema_name="tas_extraction",
    )
    parsed = parse_json_object(text)
    if parsed is None:
        log.warning("TAS extraction output was not a JSON object; using fallbacks for all fields")
    return ExtractionResult(
        model=client.model,
        fields=fields_from_payload(parsed, raw_context),
        parsed_payload=parsed,
    )
