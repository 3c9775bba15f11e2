"""Slack channel updates: signature check, deal matching, storage and stored-update signals."""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from blueprint.cache import SignalCache
from blueprint.models import Deal, SlackDealUpdate
from blueprint.signals import DealSignal, SignalQuery
from blueprint.utils import as_utc

log = logging.getLogger(__name__)

MAX_SIGNATURE_AGE_SECONDS = 60 * 5
MAX_CONTEXT_ROWS = 40
MAX_CONTEXT_HIGHLIGHTS = 4
MAX_CONTEXT_LINKS = 6

_DEAL_REF_RE = re.compile(r"\b(?:deal|opp|opportunity)\s*[:#-]\s*([a-z0-9-]+)", re.IGNORECASE)
_NON_ALNUM_SPACE_RE = re.compile(r"[^a-z0-9\s]")


def _normalize(value: str | None) -> str:
    return " ".join(_NON_ALNUM_SPACE_RE.sub(" ", (value or "").lower()).split())


def verify_signature(
    signing_secret: str, raw_body: bytes | str, timestamp: str | None, signature: str | None,
    now: float | None = None,
) -> bool:
    """Validate a Slack ``v0`` request signature within a five-minute window."""
    if not signing_secret or not timestamp or not signature:
        return False
    try:
        epoch = int(timestamp)
    except ValueError:
        return False
    if abs(int(now if now is not None else time.time()) - epoch) > MAX_SIGNATURE_AGE_SECONDS:
        return False
    body = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
    digest = hmac.new(signing_secret.encode("utf-8"), f"v0:{timestamp}:{body}".encode("utf-8"), hashlib.sha256)
    return hmac.compare_digest(f"v0={digest.hexdigest()}", signature)


def extract_deal_reference(text: str) -> str | None:
    m = _DEAL_REF_RE.search(text or "")
    return m.group(1) if m else None


def extract_named_field(text: str, name: str) -> str | None:
    m = re.search(rf"\b{name}\s*:\s*([^\n|]+)", text or "", re.IGNORECASE)
    return m.group(1).strip() if m else None


def permalink(channel_id: str, message_ts: str) -> str:
    return f"https://slack.com/archives/{channel_id}/p{message_ts.replace('.', '')}"


def match_deal(text: str, deals: list[Deal]) -> tuple[Deal | None, str, str]:
    """Best deal for a message: explicit ``deal:<id>`` reference, else name scoring.

    Returns ``(deal, account_hint, opportunity_hint)``; the deal is None when
    nothing scores at least 2.
    """
    ref = (extract_deal_reference(text) or "").lower()
    if ref:
        for deal in deals:
            if ref in (str(deal.id), (deal.source_opportunity_id or "").lower()):
                return deal, deal.account_name, deal.opportunity_name

    account_hint = extract_named_field(text, "account") or ""
    opportunity_hint = extract_named_field(text, "opportunity") or ""
    text_n, account_n, opportunity_n = _normalize(text), _normalize(account_hint), _normalize(opportunity_hint)

    best: Deal | None = None
    best_score = 0
    for deal in deals:
        deal_account, deal_opportunity = _normalize(deal.account_name), _normalize(deal.opportunity_name)
        score = 0
        if account_n and account_n in deal_account:
            score += 3
        if opportunity_n and opportunity_n in deal_opportunity:
            score += 3
        if deal_account and deal_account in text_n:
            score += 2
        if deal_opportunity and deal_opportunity in text_n:
            score += 2
        if score > best_score:
            best, best_score = deal, score

    if best is None or best_score < 2:
        return None, account_hint, opportunity_hint
    return best, best.account_name, best.opportunity_name


def handle_event(
    session: Session, payload: dict[str, Any], signal_cache: SignalCache, channel_filter: str = "",
) -> dict[str, Any]:
    """Process a verified Slack Events API payload. Commits when an update is stored."""
    if payload.get("type") == "url_verification" and payload.get("challenge"):
        return {"challenge": payload["challenge"]}
    event = payload.get("event")
    if payload.get("type") != "event_callback" or not isinstance(event, dict):
        return {"ok": True}
    if event.get("type") != "message" or event.get("subtype"):
        return {"ok": True}
    channel, ts, text = event.get("channel"), event.get("ts"), event.get("text")
    if not channel or not ts or not text:
        return {"ok": True}
    if channel_filter and channel != channel_filter:
        return {"ok": True}

    deals = list(session.execute(select(Deal)).scalars().all())
    deal, account_name, opportunity_name = match_deal(text, deals)

    row = session.execute(
        select(SlackDealUpdate).where(SlackDealUpdate.channel_id == channel, SlackDealUpdate.message_ts == ts)
    ).scalars().first()
    if row is None:
        row = SlackDealUpdate(channel_id=channel, message_ts=ts)
        session.add(row)
    row.event_id = payload.get("event_id") or f"{channel}:{ts}"
    row.user_id = deal.owner_id if deal else ""
    row.slack_user_id = event.get("user") or ""
    row.text = text
    row.permalink = permalink(channel, ts)
    row.deal_id = deal.id if deal else None
    row.account_name = account_name or ""
    row.opportunity_name = opportunity_name or ""
    row.created_at = datetime.fromtimestamp(int(str(ts).split(".")[0]), UTC)
    session.commit()

    signal_cache.invalidate(account_name=account_name or None, opportunity_name=opportunity_name or None)
    log.info("Stored Slack update %s:%s (deal=%s)", channel, ts, deal.id if deal else None)
    return {"ok": True, "deal_id": deal.id if deal else None}


def slack_context_signal(
    session: Session, query: SignalQuery, deal_id: int | None = None,
) -> DealSignal | None:
    """Signal built from stored channel updates that mention the deal.

    Non-managers only see updates attributed to themselves. Managers see
    everyone's, with other people's text reduced to a dated placeholder.
    """
    account_n = _normalize(query.account_name)
    opportunity_n = _normalize(query.opportunity_name)
    conditions = [
        func.lower(SlackDealUpdate.text).contains(query.account_name.lower()),
        func.lower(SlackDealUpdate.text).contains(query.opportunity_name.lower()),
    ]
    if deal_id is not None:
        conditions.append(SlackDealUpdate.deal_id == deal_id)
    if account_n:
        conditions.append(func.lower(SlackDealUpdate.account_name).contains(account_n))
    if opportunity_n:
        conditions.append(func.lower(SlackDealUpdate.opportunity_name).contains(opportunity_n))

    stmt = select(SlackDealUpdate).where(or_(*conditions))
    if query.viewer_id and query.viewer_role != "MANAGER":
        stmt = stmt.where(SlackDealUpdate.user_id == query.viewer_id)
    rows = session.execute(
        stmt.order_by(SlackDealUpdate.created_at.desc(), SlackDealUpdate.id.desc()).limit(MAX_CONTEXT_ROWS)
    ).scalars().all()
    if not rows:
        return None

    highlights = []
    for row in rows[:MAX_CONTEXT_HIGHLIGHTS]:
        from_self = row.user_id == query.viewer_id if query.viewer_id else True
        if query.viewer_role == "MANAGER" and not from_self:
            created = as_utc(row.created_at)
            highlights.append(f"Slack update captured ({created.date().isoformat() if created else 'unknown date'}).")
        else:
            highlights.append(row.text)

    has_other = bool(query.viewer_id) and any(r.user_id != query.viewer_id for r in rows)
    return DealSignal(
        source="slack",
        total_matches=len(rows),
        highlights=highlights,
        deep_links=list(dict.fromkeys(r.permalink for r in rows if r.permalink))[:MAX_CONTEXT_LINKS],
        last_activity_at=as_utc(rows[0].created_at),
        source_owner="other" if has_other else "self",
        visibility="manager_summary" if has_other else "owner_only",
    )
