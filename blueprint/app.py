from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from blueprint import answers, deals, ingestion, review, services
from blueprint.cache import SignalCache, TTLCache, default_quality_cache, default_signal_cache
from blueprint.config import get_settings
from blueprint.db import get_session, init_db
from blueprint.errors import (
    AlreadyDecidedError,
    BlueprintError,
    EncryptionKeyMissingError,
    LLMCallError,
    NotFoundError,
    ValidationError,
)
from blueprint.fetchers import ConnectorContext, connector_health
from blueprint.llm import LLMClient
from blueprint.schemas import (
    AnswerUpdate,
    BulkDecision,
    BulkDecisionResult,
    ConnectorCredentialIn,
    DealCardOut,
    DealCreate,
    DealDetailOut,
    DealOut,
    DealUpdate,
    DeltaOut,
    IngestionResult,
    IngestionRunOut,
    IngestionSubmit,
    QuestionStateOut,
    ReviewDecision,
)
from blueprint.slack_events import handle_event, verify_signature
from blueprint.visibility import ROLES, Viewer

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Blueprint",
    version="0.1.0",
    description=(
        "Deal command center API. Track the 24-question TAS blueprint per deal, "
        "aggregate Gmail/Slack/Gong/GTM-agent signals, and turn pasted context into "
        "reviewable answer proposals. The caller is identified by X-User-* headers."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Deals", "description": "Create, list and inspect deals."},
        {"name": "TAS", "description": "Read and edit TAS answers; audit and quality checks."},
        {"name": "Signals", "description": "Consolidated communication signals per deal."},
        {"name": "Ingestion", "description": "Submit pasted context for LLM extraction."},
        {"name": "Review", "description": "Accept, edit or reject proposed answers."},
        {"name": "Connectors", "description": "Connector credentials and health."},
        {"name": "Slack", "description": "Slack Events API receiver."},
    ],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: list[tuple[type[BlueprintError], int]] = [
    (NotFoundError, 404),
    (ValidationError, 400),
    (AlreadyDecidedError, 409),
    (LLMCallError, 502),
    (EncryptionKeyMissingError, 500),
]


@app.exception_handler(BlueprintError)
async def blueprint_error_handler(request: Request, exc: BlueprintError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    if status >= 500:
        log.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": str(exc)}, status_code=status)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_viewer(
    x_user_id: str | None = Header(None),
    x_user_email: str | None = Header(None),
    x_user_role: str | None = Header(None),
    x_user_name: str | None = Header(None),
) -> Viewer:
    if not x_user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    role = (x_user_role or "AD").upper()
    if role not in ROLES:
        raise HTTPException(400, f"Unknown role: {role}")
    return Viewer(user_id=x_user_id, email=x_user_email or "", role=role, name=x_user_name or "")


def signal_cache() -> SignalCache:
    return default_signal_cache()


def quality_cache() -> TTLCache:
    return default_quality_cache()


def llm_client() -> LLMClient | None:
    """Overridable in tests; None lets the engines build a client lazily."""
    return None


def connector_context(
    session: Session = Depends(db_session), viewer: Viewer = Depends(current_viewer),
) -> ConnectorContext:
    return services.resolve_connector_context(session, viewer.user_id)


# ---------------------------------------------------------------------------
# Routes: Deals
# ---------------------------------------------------------------------------


@app.get("/api/deals", response_model=list[DealCardOut],
         tags=["Deals"], summary="List deals visible to the caller")
async def list_deals(
    with_signals: bool = Query(True),
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
    ctx: ConnectorContext = Depends(connector_context),
    cache: SignalCache = Depends(signal_cache),
):
    visible = deals.list_visible_deals(session, viewer)
    return await services.list_deal_cards(session, visible, viewer, ctx, cache, with_signals)


@app.post("/api/deals", response_model=DealCardOut, status_code=201,
          tags=["Deals"], summary="Create a manual deal owned by the caller")
async def create_deal(
    body: DealCreate,
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
    ctx: ConnectorContext = Depends(connector_context),
    cache: SignalCache = Depends(signal_cache),
):
    deal = deals.create_deal(session, viewer, body.model_dump())
    return await services.deal_card(session, deal, viewer, ctx, cache)


@app.get("/api/deals/{deal_id}", response_model=DealDetailOut,
         tags=["Deals"], summary="Deal card, TAS answers and audit")
async def get_deal(
    deal_id: int,
    with_signals: bool = Query(True),
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
    ctx: ConnectorContext = Depends(connector_context),
    cache: SignalCache = Depends(signal_cache),
):
    deal = deals.get_visible_deal(session, deal_id, viewer)
    return await services.deal_detail(session, deal, viewer, ctx, cache, with_signals)


@app.patch("/api/deals/{deal_id}", response_model=DealOut,
           tags=["Deals"], summary="Update deal fields")
async def update_deal(
    deal_id: int,
    body: DealUpdate,
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
    cache: SignalCache = Depends(signal_cache),
):
    deal = deals.get_owned_deal(session, deal_id, viewer.user_id)
    cache.invalidate(account_name=deal.account_name, opportunity_name=deal.opportunity_name)
    deals.apply_updates(deal, body.model_dump(exclude_unset=True))
    session.commit()
    return services.deal_summary(deal)


# ---------------------------------------------------------------------------
# Routes: TAS
# ---------------------------------------------------------------------------


@app.get("/api/deals/{deal_id}/tas", response_model=list[QuestionStateOut],
         tags=["TAS"], summary="All 24 TAS question states")
async def get_tas(
    deal_id: int, session: Session = Depends(db_session), viewer: Viewer = Depends(current_viewer),
):
    deal = deals.get_visible_deal(session, deal_id, viewer)
    return [s.to_dict() for s in answers.question_states(session, deal.id)]


@app.put("/api/deals/{deal_id}/tas", response_model=QuestionStateOut,
         tags=["TAS"], summary="Manually set one TAS answer")
async def put_tas(
    deal_id: int,
    body: AnswerUpdate,
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
):
    deal = deals.get_owned_deal(session, deal_id, viewer.user_id)
    row = answers.update_answer(session, deal.id, body.question_id, body.answer, viewer.display_name)
    session.commit()
    return answers.state_from_row(row).to_dict()


@app.get("/api/deals/{deal_id}/audit", tags=["TAS"], summary="Completion, gaps, staleness and contradictions")
async def get_audit(
    deal_id: int, session: Session = Depends(db_session), viewer: Viewer = Depends(current_viewer),
):
    deal = deals.get_visible_deal(session, deal_id, viewer)
    return services.deal_audit(session, deal)


@app.post("/api/deals/{deal_id}/quality-check", tags=["TAS"],
          summary="Score TAS answer quality (LLM-assisted, heuristic fallback)")
async def quality_check(
    deal_id: int,
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
    client: LLMClient | None = Depends(llm_client),
    cache: TTLCache = Depends(quality_cache),
):
    deal = deals.get_visible_deal(session, deal_id, viewer)
    report = await services.deal_quality(session, deal, viewer, client=client, cache=cache)
    return report.to_dict()


# ---------------------------------------------------------------------------
# Routes: Signals
# ---------------------------------------------------------------------------


@app.get("/api/deals/{deal_id}/signals", tags=["Signals"],
         summary="Source signals and consolidated insights, redacted for the caller")
async def get_signals(
    deal_id: int,
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
    ctx: ConnectorContext = Depends(connector_context),
    cache: SignalCache = Depends(signal_cache),
):
    deal = deals.get_visible_deal(session, deal_id, viewer)
    signals, insights = await services.deal_signals(session, deal, viewer, ctx, cache)
    return {"signals": [s.to_dict() for s in signals], "insights": [i.to_dict() for i in insights]}


# ---------------------------------------------------------------------------
# Routes: Ingestion
# ---------------------------------------------------------------------------


@app.get("/api/deals/{deal_id}/ingestions", response_model=list[IngestionRunOut],
         tags=["Ingestion"], summary="Recent ingestion runs for a deal")
async def list_ingestions(
    deal_id: int, session: Session = Depends(db_session), viewer: Viewer = Depends(current_viewer),
):
    return ingestion.list_ingestion_runs(session, deal_id, viewer.user_id)


@app.post("/api/deals/{deal_id}/ingestions", response_model=IngestionResult, status_code=201,
          tags=["Ingestion"], summary="Extract TAS proposals from pasted context")
async def create_ingestion(
    deal_id: int,
    body: IngestionSubmit,
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
    client: LLMClient | None = Depends(llm_client),
):
    return await ingestion.create_ingestion_run(
        session, deal_id, viewer.user_id, body.source_type, body.raw_context, client=client,
    )


@app.get("/api/ingestions/{run_id}/context", tags=["Ingestion"],
         summary="Decrypted pasted context (submitter only)")
async def get_ingestion_context(
    run_id: int, session: Session = Depends(db_session), viewer: Viewer = Depends(current_viewer),
):
    return {"run_id": run_id, "raw_context": ingestion.get_decrypted_context(session, run_id, viewer.user_id)}


# ---------------------------------------------------------------------------
# Routes: Review
# ---------------------------------------------------------------------------


@app.get("/api/deals/{deal_id}/review-queue", response_model=list[DeltaOut],
         tags=["Review"], summary="Proposed answer changes, pending first")
async def get_review_queue(
    deal_id: int,
    status: str | None = Query(None),
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
):
    return ingestion.list_review_queue(session, deal_id, viewer.user_id, status)


@app.post("/api/deals/{deal_id}/review-queue/bulk-decision", response_model=BulkDecisionResult,
          tags=["Review"], summary="Accept or reject all pending proposals")
async def bulk_decision(
    deal_id: int,
    body: BulkDecision,
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
):
    updated = review.decide_bulk(
        session, deal_id, viewer.user_id, body.action,
        min_confidence=body.min_confidence, actor_name=viewer.display_name,
    )
    return {"updated": updated}


@app.post("/api/review/{delta_id}/decision", response_model=DeltaOut,
          tags=["Review"], summary="Decide a single proposal")
async def decide_delta(
    delta_id: int,
    body: ReviewDecision,
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
):
    return review.decide(
        session, delta_id, viewer.user_id, body.action,
        edited_answer=body.edited_answer, actor_name=viewer.display_name,
    )


# ---------------------------------------------------------------------------
# Routes: Connectors
# ---------------------------------------------------------------------------


@app.get("/api/connector-health", tags=["Connectors"], summary="Probe every signal provider")
async def get_connector_health(ctx: ConnectorContext = Depends(connector_context)):
    return await connector_health(ctx)


@app.get("/api/connectors", tags=["Connectors"], summary="Which providers have stored credentials")
async def list_connectors(session: Session = Depends(db_session), viewer: Viewer = Depends(current_viewer)):
    return {
        "auth_mode": get_settings().connector_auth_mode,
        "providers": services.list_connector_credentials(session, viewer.user_id),
    }


@app.put("/api/connectors/{provider}", tags=["Connectors"], summary="Store encrypted credentials")
async def put_connector(
    provider: str,
    body: ConnectorCredentialIn,
    session: Session = Depends(db_session),
    viewer: Viewer = Depends(current_viewer),
):
    services.save_connector_credential(session, viewer.user_id, provider, body.secret)
    return {"ok": True}


@app.delete("/api/connectors/{provider}", tags=["Connectors"], summary="Remove stored credentials")
async def delete_connector(
    provider: str, session: Session = Depends(db_session), viewer: Viewer = Depends(current_viewer),
):
    if not services.delete_connector_credential(session, viewer.user_id, provider):
        raise HTTPException(404, f"No {provider} credentials stored")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Slack events
# ---------------------------------------------------------------------------


@app.post("/api/slack/events", tags=["Slack"], summary="Slack Events API receiver")
async def slack_events(
    request: Request,
    session: Session = Depends(db_session),
    cache: SignalCache = Depends(signal_cache),
) -> Any:
    settings = get_settings()
    if not settings.slack_signing_secret:
        raise HTTPException(503, "Slack events are not configured. Set SLACK_SIGNING_SECRET.")
    raw_body = await request.body()
    if not verify_signature(
        settings.slack_signing_secret, raw_body,
        request.headers.get("x-slack-request-timestamp"), request.headers.get("x-slack-signature"),
    ):
        raise HTTPException(401, "Invalid Slack signature")
    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError:
        raise HTTPException(400, "Body is not valid JSON")
    return handle_event(session, payload, cache, channel_filter=settings.slack_updates_channel_id)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("blueprint.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
