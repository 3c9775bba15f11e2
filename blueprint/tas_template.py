"""Static TAS questionnaire: 24 questions across 6 sections."""
from __future__ import annotations

from dataclasses import dataclass

STAGES = ("Discovery", "Solutioning", "Commit")


@dataclass(frozen=True)
class TasQuestion:
    id: str
    section_id: str
    prompt: str
    stage_critical_at: str  # Discovery | Solutioning | Commit
    priority: str  # high | medium | low


@dataclass(frozen=True)
class TasSection:
    id: str
    title: str
    questions: tuple[TasQuestion, ...]


def _section(section_id: str, title: str, rows: list[tuple[str, str, str, str]]) -> TasSection:
    return TasSection(
        id=section_id,
        title=title,
        questions=tuple(TasQuestion(qid, section_id, prompt, stage, prio) for qid, prompt, stage, prio in rows),
    )


TAS_TEMPLATE: tuple[TasSection, ...] = (
    _section("strategic-initiative", "Strategic Initiative & CEO Priority", [
        ("q1", "What is the strategic initiative tied to this deal?", "Discovery", "medium"),
        ("q2", "What CEO-level priority does this initiative serve?", "Discovery", "medium"),
        ("q3", "What board-level pressure is influencing urgency?", "Solutioning", "low"),
        ("q4", "What outcome must happen this quarter?", "Solutioning", "medium"),
        ("q5", "What happens if this initiative slips?", "Commit", "medium"),
    ]),
    _section("economic-value", "Economic Value & Consequences", [
        ("q6", "What is the primary metric this deal moves?", "Discovery", "high"),
        ("q7", "What is the baseline value today?", "Solutioning", "high"),
        ("q8", "What is the projected value at success?", "Solutioning", "high"),
        ("q9", "What is the quantified cost of inaction?", "Commit", "high"),
        ("q10", "Who validates the value model?", "Commit", "medium"),
        ("q11", "What financial risk remains unresolved?", "Commit", "medium"),
    ]),
    _section("power-politics", "Power, Politics, Signature & Partners", [
        ("q12", "Who is the economic buyer?", "Discovery", "high"),
        ("q13", "Who signs and what is the signature path?", "Commit", "high"),
        ("q14", "Who can block this deal internally?", "Solutioning", "high"),
        ("q15", "Who champions this deal and why?", "Discovery", "medium"),
        ("q16", "Who influences technical selection?", "Solutioning", "medium"),
        ("q17", "Which procurement constraints matter?", "Solutioning", "medium"),
        ("q18", "Which legal/security approvers are required?", "Commit", "high"),
        ("q19", "What partner dependencies affect close?", "Commit", "medium"),
    ]),
    _section("vision-alignment", "Vision Alignment", [
        ("q20", "What future-state vision did customer confirm?", "Solutioning", "medium"),
        ("q21", "What proof points made the vision credible?", "Commit", "medium"),
    ]),
    _section("openai-differentiation", "OpenAI Differentiation", [
        ("q22", "Which OpenAI differentiator matters most for this deal?", "Solutioning", "medium"),
        ("q23", "How is differentiation proven in customer context?", "Commit", "medium"),
    ]),
    _section("competitive-reality", "Competitive Reality", [
        ("q24", "Who are active competitors and why could they win?", "Commit", "high"),
    ]),
)

ALL_QUESTIONS: tuple[TasQuestion, ...] = tuple(q for s in TAS_TEMPLATE for q in s.questions)
QUESTIONS_BY_ID: dict[str, TasQuestion] = {q.id: q for q in ALL_QUESTIONS}
QUESTION_IDS: tuple[str, ...] = tuple(QUESTIONS_BY_ID)
TAS_TOTAL_QUESTIONS = len(ALL_QUESTIONS)


def stage_index(stage: str) -> int:
    """Position of *stage* in Discovery < Solutioning < Commit; unknown stages count as Discovery."""
    lowered = (stage or "").lower()
    for idx, name in enumerate(STAGES):
        if name.lower() == lowered:
            return idx
    return 0


def current_gate(stage: str) -> str:
    """Map a free-form CRM stage label onto a TAS gate."""
    lowered = (stage or "").lower()
    if "commit" in lowered or "closed" in lowered:
        return "Commit"
    if "solution" in lowered:
        return "Solutioning"
    return "Discovery"
