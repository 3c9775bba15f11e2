"""Apply human decisions on review-queue deltas.

Every status change is a compare-and-set on ``status = 'pending'`` executed
in the same transaction as the answer write. A delta can therefore be
decided exactly once; a second decision raises :class:`AlreadyDecidedError`
and leaves the answer store untouched.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from blueprint.answers import evidence_ref, upsert_answer
from blueprint.deals import get_owned_deal
from blueprint.errors import AlreadyDecidedError, NotFoundError, ValidationError
from blueprint.ingestion import delta_detail
from blueprint.models import Deal, IngestionDelta, IngestionRun
from blueprint.utils import json_parse, utcnow

log = logging.getLogger(__name__)

ACTIONS = ("accept", "edit_then_accept", "reject")
BULK_ACTIONS = ("accept", "reject")


def _evidence_for(session: Session, delta: IngestionDelta) -> list[dict[str, str]]:
    run = session.get(IngestionRun, delta.run_id)
    source_type = run.source_type if run else "pasted_context"
    return [evidence_ref(s, "", source_type) for s in json_parse(delta.evidence_json, []) if isinstance(s, str)]


def _claim(session: Session, delta_id: int, status: str, actor: str, applied: str | None) -> bool:
    values: dict[str, Any] = {"status": status, "decided_by": actor, "decided_at": utcnow()}
    if applied is not None:
        values["proposed_value"] = applied
    result = session.execute(
        update(IngestionDelta)
        .where(IngestionDelta.id == delta_id, IngestionDelta.status == "pending")
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def decide(
    session: Session,
    delta_id: int,
    user_id: str,
    action: str,
    edited_answer: str | None = None,
    actor_name: str | None = None,
) -> dict[str, Any]:
    """Accept, edit-then-accept, or reject a single delta. Commits."""
    if action not in ACTIONS:
        raise ValidationError(f"Unknown action: {action!r}")

    delta = session.execute(
        select(IngestionDelta)
        .join(Deal, Deal.id == IngestionDelta.deal_id)
        .where(IngestionDelta.id == delta_id, Deal.owner_id == user_id)
    ).scalars().first()
    if delta is None:
        raise NotFoundError(f"Delta {delta_id} not found")
    if delta.status != "pending":
        raise AlreadyDecidedError(delta_id, delta.status)

    applied: str | None = None
    if action == "edit_then_accept":
        applied = (edited_answer or "").strip() or delta.proposed_value
    elif action == "accept":
        applied = delta.proposed_value

    new_status = {"accept": "accepted", "edit_then_accept": "edited_accepted", "reject": "rejected"}[action]
    actor = actor_name or user_id

    try:
        if not _claim(session, delta.id, new_status, actor, applied):
            session.rollback()
            current = session.get(IngestionDelta, delta_id)
            raise AlreadyDecidedError(delta_id, current.status if current else "unknown")
        if applied is not None:
            upsert_answer(
                session, delta.deal_id, delta.question_id, applied, "confirmed", actor,
                evidence=_evidence_for(session, delta),
            )
        session.commit()
    except AlreadyDecidedError:
        raise
    except Exception:
        session.rollback()
        raise

    session.refresh(delta)
    log.info("Delta %d %s by %s", delta_id, new_status, actor)
    return delta_detail(delta)


def decide_bulk(
    session: Session,
    deal_id: int,
    user_id: str,
    action: str,
    min_confidence: float | None = None,
    actor_name: str | None = None,
) -> int:
    """Accept or reject every pending delta of a deal in one transaction.

    Returns the number of deltas decided. If any delta is decided
    concurrently the whole batch is rolled back.
    """
    if action not in BULK_ACTIONS:
        raise ValidationError(f"Unknown bulk action: {action!r}")
    get_owned_deal(session, deal_id, user_id)

    query = select(IngestionDelta).where(
        IngestionDelta.deal_id == deal_id, IngestionDelta.status == "pending",
    )
    if min_confidence is not None:
        query = query.where(IngestionDelta.confidence >= min_confidence)
    pending = session.execute(query.order_by(IngestionDelta.id)).scalars().all()
    if not pending:
        return 0

    actor = actor_name or user_id
    new_status = "accepted" if action == "accept" else "rejected"
    try:
        for delta in pending:
            applied = delta.proposed_value if action == "accept" else None
            if not _claim(session, delta.id, new_status, actor, applied):
                raise AlreadyDecidedError(delta.id, "decided concurrently")
            if applied is not None:
                upsert_answer(
                    session, delta.deal_id, delta.question_id, applied, "confirmed", actor,
                    evidence=_evidence_for(session, delta),
                )
        session.commit()
    except Exception:
        session.rollback()
        raise

    log.info("Bulk %s of %d deltas on deal %d by %s", new_status, len(pending), deal_id, actor)
    return len(pending)
