"""Canonical TAS answer store: one live row per (deal, question)."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from blueprint.errors import ValidationError
from blueprint.models import TasAnswer
from blueprint.tas_template import ALL_QUESTIONS, QUESTIONS_BY_ID
from blueprint.utils import as_utc, isoformat, json_parse, utcnow

ANSWER_STATUSES = ("empty", "manual", "suggested", "confirmed", "stale", "contradiction")
MIN_MANUAL_ANSWER_CHARS = 3


@dataclass
class QuestionState:
    question_id: str
    status: str = "empty"
    answer: str = ""
    evidence: list[dict[str, Any]] = field(default_factory=list)
    last_updated_at: datetime | None = None
    last_updated_by: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "question_id": self.question_id,
            "status": self.status,
            "answer": self.answer or None,
            "evidence": list(self.evidence),
            "last_updated_at": isoformat(self.last_updated_at),
            "last_updated_by": self.last_updated_by or None,
        }


def evidence_ref(label: str, deep_link: str = "", source_type: str = "pasted_context") -> dict[str, str]:
    return {"label": label, "deep_link": deep_link, "source_type": source_type}


def state_from_row(row: TasAnswer) -> QuestionState:
    return QuestionState(
        question_id=row.question_id,
        status=row.status,
        answer=row.answer or "",
        evidence=json_parse(row.evidence_json, []),
        last_updated_at=as_utc(row.last_updated_at),
        last_updated_by=row.last_updated_by or "",
    )


def list_answers(session: Session, deal_id: int) -> dict[str, TasAnswer]:
    rows = session.execute(select(TasAnswer).where(TasAnswer.deal_id == deal_id)).scalars().all()
    return {row.question_id: row for row in rows}


def question_states(session: Session, deal_id: int) -> list[QuestionState]:
    """One state per template question, in template order; unanswered ones are ``empty``."""
    stored = list_answers(session, deal_id)
    return [
        state_from_row(stored[q.id]) if q.id in stored else QuestionState(question_id=q.id)
        for q in ALL_QUESTIONS
    ]


def upsert_answer(
    session: Session,
    deal_id: int,
    question_id: str,
    answer: str,
    status: str,
    actor: str,
    evidence: list[dict[str, Any]] | None = None,
) -> TasAnswer:
    """Create or overwrite the answer row. Existing evidence is kept when *evidence* is None.

    Caller must commit.
    """
    if status not in ANSWER_STATUSES:
        raise ValidationError(f"Unknown answer status: {status}")
    row = session.execute(
        select(TasAnswer).where(TasAnswer.deal_id == deal_id, TasAnswer.question_id == question_id)
    ).scalars().first()
    if row is None:
        row = TasAnswer(deal_id=deal_id, question_id=question_id, evidence_json="[]")
        session.add(row)
    row.answer = answer
    row.status = status
    row.last_updated_by = actor
    row.last_updated_at = utcnow()
    if evidence is not None:
        row.evidence_json = json.dumps(evidence)
    session.flush()
    return row


def update_answer(session: Session, deal_id: int, question_id: str, answer: str, actor: str) -> TasAnswer:
    """Manual edit from the deal workspace. Caller must commit."""
    if question_id not in QUESTIONS_BY_ID:
        raise ValidationError(f"Unknown question id: {question_id}")
    answer = (answer or "").strip()
    if len(answer) < MIN_MANUAL_ANSWER_CHARS:
        raise ValidationError(f"Answer must be at least {MIN_MANUAL_ANSWER_CHARS} characters")
    return upsert_answer(session, deal_id, question_id, answer, "manual", actor)
