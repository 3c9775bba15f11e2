"""Shared business logic for the Blueprint API and MCP server."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from blueprint.answers import QuestionState, question_states
from blueprint.audit import calculate_audit
from blueprint.cache import SignalCache, TTLCache, default_signal_cache, signal_cache_key
from blueprint.config import Settings, get_settings
from blueprint.errors import ValidationError
from blueprint.fetchers import PROVIDERS, ConnectorContext, collect_signals
from blueprint.llm import LLMClient
from blueprint.models import ConnectorCredential, Deal, IngestionDelta
from blueprint.quality import QualityReport, run_quality_check
from blueprint.security import decrypt_secret, encrypt_secret
from blueprint.signals import ConsolidatedInsight, DealSignal, SignalQuery
from blueprint.slack_events import slack_context_signal
from blueprint.tas_template import ALL_QUESTIONS, TAS_TOTAL_QUESTIONS, current_gate, stage_index
from blueprint.utils import isoformat, json_parse, utcnow
from blueprint.visibility import Viewer, consolidate_for_viewer, redact_signals

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def deal_summary(deal: Deal) -> dict[str, Any]:
    return {
        "id": deal.id,
        "owner_id": deal.owner_id,
        "owner_email": deal.owner_email or None,
        "account_name": deal.account_name,
        "opportunity_name": deal.opportunity_name,
        "stage": deal.stage,
        "gate": current_gate(deal.stage),
        "amount": deal.amount,
        "close_date": deal.close_date or None,
        "source_opportunity_id": deal.source_opportunity_id or None,
        "created_at": isoformat(deal.created_at),
    }


# ---------------------------------------------------------------------------
# Connector credentials
# ---------------------------------------------------------------------------


def save_connector_credential(session: Session, user_id: str, provider: str, secret: dict[str, str]) -> None:
    """Encrypt and store a user's credentials for one provider. Commits."""
    if provider not in PROVIDERS:
        raise ValidationError(f"Unknown provider: {provider!r}")
    cleaned = {k: v.strip() for k, v in secret.items() if isinstance(v, str) and v.strip()}
    if not cleaned:
        raise ValidationError("Credential payload is empty")
    row = session.execute(
        select(ConnectorCredential).where(
            ConnectorCredential.user_id == user_id, ConnectorCredential.provider == provider,
        )
    ).scalars().first()
    if row is None:
        row = ConnectorCredential(user_id=user_id, provider=provider)
        session.add(row)
    row.secret_encrypted = encrypt_secret(json.dumps(cleaned))
    row.updated_at = utcnow()
    session.commit()
    log.info("Stored %s credentials for %s", provider, user_id)


def delete_connector_credential(session: Session, user_id: str, provider: str) -> bool:
    row = session.execute(
        select(ConnectorCredential).where(
            ConnectorCredential.user_id == user_id, ConnectorCredential.provider == provider,
        )
    ).scalars().first()
    if row is None:
        return False
    session.delete(row)
    session.commit()
    return True


def list_connector_credentials(session: Session, user_id: str) -> list[dict[str, Any]]:
    rows = session.execute(
        select(ConnectorCredential).where(ConnectorCredential.user_id == user_id)
    ).scalars().all()
    stored = {r.provider: r for r in rows}
    return [
        {
            "provider": p,
            "configured": p in stored,
            "updated_at": isoformat(stored[p].updated_at) if p in stored else None,
        }
        for p in PROVIDERS
    ]


def resolve_connector_context(session: Session, user_id: str, settings: Settings | None = None) -> ConnectorContext:
    """Pick the credential source once per request, per the configured auth mode."""
    settings = settings or get_settings()
    if settings.connector_auth_mode != "user_scoped":
        return ConnectorContext.from_settings(settings)

    credentials: dict[str, dict[str, str]] = {}
    rows = session.execute(
        select(ConnectorCredential).where(ConnectorCredential.user_id == user_id)
    ).scalars().all()
    for row in rows:
        try:
            credentials[row.provider] = json_parse(decrypt_secret(row.secret_encrypted), {})
        except ValueError as exc:
            log.warning("Could not decrypt %s credentials for %s: %s", row.provider, user_id, exc)
    return ConnectorContext.from_credentials(credentials, settings)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def _signal_query(deal: Deal, viewer: Viewer) -> SignalQuery:
    return SignalQuery(
        account_name=deal.account_name,
        opportunity_name=deal.opportunity_name,
        opportunity_id=deal.source_opportunity_id or str(deal.id),
        owner_email=deal.owner_email or "",
        viewer_id=viewer.user_id,
        viewer_role=viewer.role,
    )


async def deal_signals(
    session: Session,
    deal: Deal,
    viewer: Viewer,
    ctx: ConnectorContext,
    cache: SignalCache | None = None,
) -> tuple[list[DealSignal], list[ConsolidatedInsight]]:
    """Cached, redacted signals and insights for *deal* as *viewer* may see them."""
    cache = cache or default_signal_cache()
    query = _signal_query(deal, viewer)
    key = signal_cache_key(ctx.mode, viewer.user_id, deal.account_name, deal.opportunity_name, deal.owner_email or "")

    async def _produce() -> list[DealSignal]:
        slack_context = slack_context_signal(session, query, deal.id)
        return await collect_signals(query, ctx, slack_context)

    signals = await cache.get_or_fetch(key, _produce)
    is_owner = deal.owner_id == viewer.user_id
    return redact_signals(signals, viewer.role, is_owner), consolidate_for_viewer(signals, viewer.role, is_owner)


# ---------------------------------------------------------------------------
# Deal cards
# ---------------------------------------------------------------------------


def summarize_tas(stage: str, states: list[QuestionState]) -> dict[str, Any]:
    gate = stage_index(current_gate(stage))
    by_id = {s.question_id: s for s in states}
    missing = [
        q for q in ALL_QUESTIONS
        if stage_index(q.stage_critical_at) <= gate
        and (q.id not in by_id or by_id[q.id].status == "empty")
    ]
    return {
        "answered": sum(1 for s in states if s.status != "empty"),
        "evidence_backed": sum(1 for s in states if s.evidence),
        "top_gaps": [q.prompt for q in missing[:2]],
        "critical_gap_count": len(missing),
    }


def infer_risk(critical_gaps: int, signals: list[DealSignal]) -> dict[str, Any]:
    score = critical_gaps + (1 if not signals else 0)
    if score >= 6:
        severity = "critical"
    elif score >= 4:
        severity = "high"
    elif score >= 2:
        severity = "medium"
    else:
        severity = "low"
    return {"count": score, "severity": severity}


def pending_review_count(session: Session, deal_id: int) -> int:
    return session.execute(
        select(func.count(IngestionDelta.id)).where(
            IngestionDelta.deal_id == deal_id, IngestionDelta.status == "pending",
        )
    ).scalar() or 0


async def deal_card(
    session: Session,
    deal: Deal,
    viewer: Viewer,
    ctx: ConnectorContext,
    cache: SignalCache | None = None,
    with_signals: bool = True,
) -> dict[str, Any]:
    states = question_states(session, deal.id)
    tas = summarize_tas(deal.stage, states)
    signals: list[DealSignal] = []
    insights: list[ConsolidatedInsight] = []
    if with_signals:
        signals, insights = await deal_signals(session, deal, viewer, ctx, cache)
    return {
        **deal_summary(deal),
        "tas_progress": {"answered": tas["answered"], "total": TAS_TOTAL_QUESTIONS},
        "evidence_coverage": {"backed": tas["evidence_backed"], "total": TAS_TOTAL_QUESTIONS},
        "top_gaps": tas["top_gaps"] or ["No critical TAS gaps detected"],
        "risk": infer_risk(tas["critical_gap_count"], signals),
        "needs_review_count": pending_review_count(session, deal.id),
        "source_signals": [s.to_dict() for s in signals],
        "consolidated_insights": [i.to_dict() for i in insights],
    }


async def list_deal_cards(
    session: Session,
    deals: list[Deal],
    viewer: Viewer,
    ctx: ConnectorContext,
    cache: SignalCache | None = None,
    with_signals: bool = True,
) -> list[dict[str, Any]]:
    return list(await asyncio.gather(*(
        deal_card(session, d, viewer, ctx, cache, with_signals) for d in deals
    )))


async def deal_detail(
    session: Session,
    deal: Deal,
    viewer: Viewer,
    ctx: ConnectorContext,
    cache: SignalCache | None = None,
    with_signals: bool = True,
) -> dict[str, Any]:
    states = question_states(session, deal.id)
    return {
        "deal": await deal_card(session, deal, viewer, ctx, cache, with_signals),
        "questions": [s.to_dict() for s in states],
        "audit": calculate_audit(deal.id, current_gate(deal.stage), states),
    }


def deal_audit(session: Session, deal: Deal) -> dict[str, Any]:
    return calculate_audit(deal.id, current_gate(deal.stage), question_states(session, deal.id))


async def deal_quality(
    session: Session,
    deal: Deal,
    viewer: Viewer,
    client: LLMClient | None = None,
    cache: TTLCache[QualityReport] | None = None,
    use_llm: bool = True,
) -> QualityReport:
    return await run_quality_check(
        deal_summary(deal), question_states(session, deal.id), viewer.user_id,
        client=client, cache=cache, use_llm=use_llm,
    )
