"""Deal records and per-viewer access checks."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from blueprint.errors import NotFoundError, ValidationError
from blueprint.models import Deal
from blueprint.visibility import Viewer

log = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("account_name", "opportunity_name", "stage", "amount", "close_date", "source_opportunity_id")


def get_owned_deal(session: Session, deal_id: int, user_id: str) -> Deal:
    """Deal owned by *user_id*. Missing and foreign deals look the same to the caller."""
    deal = session.execute(
        select(Deal).where(Deal.id == deal_id, Deal.owner_id == user_id)
    ).scalars().first()
    if deal is None:
        raise NotFoundError(f"Deal {deal_id} not found")
    return deal


def get_visible_deal(session: Session, deal_id: int, viewer: Viewer) -> Deal:
    """Owners see their deals; managers may see any deal."""
    if viewer.role != "MANAGER":
        return get_owned_deal(session, deal_id, viewer.user_id)
    deal = session.get(Deal, deal_id)
    if deal is None:
        raise NotFoundError(f"Deal {deal_id} not found")
    return deal


def list_visible_deals(session: Session, viewer: Viewer) -> list[Deal]:
    query = select(Deal)
    if viewer.role != "MANAGER":
        query = query.where(Deal.owner_id == viewer.user_id)
    deals = session.execute(query.order_by(Deal.id)).scalars().all()
    # Earliest close date first; undated deals last.
    return sorted(deals, key=lambda d: (not d.close_date, d.close_date or "", d.id))


def create_deal(session: Session, viewer: Viewer, data: dict) -> Deal:
    """Create a manual deal owned by the viewer. Commits."""
    account = (data.get("account_name") or "").strip()
    opportunity = (data.get("opportunity_name") or "").strip()
    if not account or not opportunity:
        raise ValidationError("account_name and opportunity_name are required")
    deal = Deal(
        owner_id=viewer.user_id,
        owner_email=viewer.email,
        account_name=account,
        opportunity_name=opportunity,
        stage=(data.get("stage") or "Discovery").strip(),
        amount=float(data.get("amount") or 0.0),
        close_date=(data.get("close_date") or "").strip(),
        source_opportunity_id=(data.get("source_opportunity_id") or "").strip(),
    )
    session.add(deal)
    session.commit()
    session.refresh(deal)
    log.info("Created deal %d (%s / %s) for %s", deal.id, account, opportunity, viewer.user_id)
    return deal


def apply_updates(deal: Deal, updates: dict) -> None:
    for key in UPDATABLE_FIELDS:
        if key in updates and updates[key] is not None:
            setattr(deal, key, updates[key])
