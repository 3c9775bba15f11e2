"""Ingestion runs: pasted deal context -> extracted TAS fields -> review queue.

A run is committed in the ``processing`` state before the model is called,
so a crash or provider failure always leaves a visible ``failed`` run
behind instead of nothing at all.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from blueprint.answers import list_answers
from blueprint.deals import get_owned_deal
from blueprint.errors import NotFoundError, ValidationError
from blueprint.extractor import ExtractedField, extract_tas_fields
from blueprint.llm import LLMClient
from blueprint.models import IngestionDelta, IngestionRun, IngestionSnapshot
from blueprint.security import decrypt_secret, encrypt_secret
from blueprint.tas_template import QUESTIONS_BY_ID
from blueprint.utils import isoformat, json_parse, semantically_equal, utcnow

log = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.65
MAX_DELTAS_PER_RUN = 12
MIN_CONTEXT_CHARS = 20
SOURCE_TYPES = ("call_notes", "slack", "email", "doc", "other", "pasted_context")

_STATUS_ORDER = {"pending": 0, "accepted": 1, "edited_accepted": 2, "rejected": 3}


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def run_summary(run: IngestionRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "deal_id": run.deal_id,
        "user_id": run.user_id,
        "source_type": run.source_type,
        "status": run.status,
        "model": run.model or None,
        "error_message": run.error_message or None,
        "created_at": isoformat(run.created_at),
        "completed_at": isoformat(run.completed_at),
    }


def delta_detail(delta: IngestionDelta) -> dict[str, Any]:
    question = QUESTIONS_BY_ID.get(delta.question_id)
    return {
        "id": delta.id,
        "run_id": delta.run_id,
        "deal_id": delta.deal_id,
        "question_id": delta.question_id,
        "question_prompt": question.prompt if question else "",
        "old_value": delta.old_value or None,
        "proposed_value": delta.proposed_value,
        "confidence": delta.confidence,
        "evidence_snippets": json_parse(delta.evidence_json, []),
        "reasoning": delta.reasoning,
        "status": delta.status,
        "decided_by": delta.decided_by or None,
        "decided_at": isoformat(delta.decided_at),
        "created_at": isoformat(delta.created_at),
    }


# ---------------------------------------------------------------------------
# Delta selection
# ---------------------------------------------------------------------------


def select_deltas(fields: list[ExtractedField], current: dict[str, str]) -> list[ExtractedField]:
    """Fields worth reviewing: confident enough and actually different, best first, capped."""
    candidates = [
        f for f in fields
        if f.confidence >= CONFIDENCE_THRESHOLD
        and not semantically_equal(f.proposed_answer, current.get(f.question_id, ""))
    ]
    candidates.sort(key=lambda f: f.confidence, reverse=True)
    return candidates[:MAX_DELTAS_PER_RUN]


def _next_snapshot_version(session: Session, deal_id: int) -> int:
    latest = session.execute(
        select(func.max(IngestionSnapshot.version)).where(IngestionSnapshot.deal_id == deal_id)
    ).scalar()
    return (latest or 0) + 1


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def create_ingestion_run(
    session: Session,
    deal_id: int,
    user_id: str,
    source_type: str,
    raw_context: str,
    client: LLMClient | None = None,
) -> dict[str, Any]:
    """Extract TAS proposals from *raw_context* and queue them for review.

    Returns ``{"run": ..., "snapshot_version": ..., "deltas": [...]}``.
    Extraction or persistence failures mark the run ``failed`` and re-raise.
    """
    get_owned_deal(session, deal_id, user_id)
    if source_type not in SOURCE_TYPES:
        raise ValidationError(f"Unknown source type: {source_type!r}")
    raw_context = raw_context or ""
    if len(raw_context.strip()) < MIN_CONTEXT_CHARS:
        raise ValidationError(f"Context must be at least {MIN_CONTEXT_CHARS} characters")

    run = IngestionRun(
        deal_id=deal_id,
        user_id=user_id,
        source_type=source_type,
        raw_context_encrypted=encrypt_secret(raw_context),
        status="processing",
        model=client.model if client else "",
    )
    session.add(run)
    session.commit()
    run_id = run.id
    log.info("Ingestion run %d started for deal %d (%s)", run_id, deal_id, source_type)

    try:
        extraction = await extract_tas_fields(raw_context, client)
        current = {qid: row.answer or "" for qid, row in list_answers(session, deal_id).items()}

        version = _next_snapshot_version(session, deal_id)
        session.add(IngestionSnapshot(
            deal_id=deal_id,
            run_id=run_id,
            version=version,
            payload_json=json.dumps({f.question_id: f.to_dict() for f in extraction.fields}),
        ))

        deltas = [
            IngestionDelta(
                run_id=run_id,
                deal_id=deal_id,
                question_id=f.question_id,
                old_value=current.get(f.question_id, ""),
                proposed_value=f.proposed_answer,
                confidence=f.confidence,
                evidence_json=json.dumps(f.evidence_snippets),
                reasoning=f.reasoning,
                status="pending",
            )
            for f in select_deltas(extraction.fields, current)
        ]
        session.add_all(deltas)

        run.status = "completed"
        run.model = extraction.model
        run.completed_at = utcnow()
        session.commit()
    except Exception as exc:
        session.rollback()
        failed = session.get(IngestionRun, run_id)
        if failed is not None:
            failed.status = "failed"
            failed.error_message = str(exc)[:1000]
            failed.completed_at = utcnow()
            session.commit()
        log.warning("Ingestion run %d failed for deal %d: %s", run_id, deal_id, exc)
        raise

    log.info("Ingestion run %d completed: snapshot v%d, %d deltas", run_id, version, len(deltas))
    return {
        "run": run_summary(run),
        "snapshot_version": version,
        "deltas": [delta_detail(d) for d in deltas],
    }


def list_ingestion_runs(session: Session, deal_id: int, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
    get_owned_deal(session, deal_id, user_id)
    runs = session.execute(
        select(IngestionRun)
        .where(IngestionRun.deal_id == deal_id)
        .order_by(IngestionRun.created_at.desc(), IngestionRun.id.desc())
        .limit(limit)
    ).scalars().all()
    return [run_summary(r) for r in runs]


def list_review_queue(
    session: Session, deal_id: int, user_id: str, status: str | None = None,
) -> list[dict[str, Any]]:
    """Deltas for a deal, pending first, then by confidence."""
    get_owned_deal(session, deal_id, user_id)
    query = select(IngestionDelta).where(IngestionDelta.deal_id == deal_id)
    if status:
        query = query.where(IngestionDelta.status == status)
    deltas = session.execute(
        query.order_by(IngestionDelta.created_at.desc(), IngestionDelta.id.desc())
    ).scalars().all()
    ordered = sorted(deltas, key=lambda d: (_STATUS_ORDER.get(d.status, 10), -d.confidence))
    return [delta_detail(d) for d in ordered]


def get_decrypted_context(session: Session, run_id: int, user_id: str) -> str:
    """Raw pasted text of a run; only its submitter may read it back."""
    run = session.execute(
        select(IngestionRun).where(IngestionRun.id == run_id, IngestionRun.user_id == user_id)
    ).scalars().first()
    if run is None:
        raise NotFoundError(f"Ingestion run {run_id} not found")
    return decrypt_secret(run.raw_context_encrypted)
