from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from blueprint import answers, deals, ingestion, review, services
from blueprint.config import get_settings
from blueprint.db import init_db, session_scope
from blueprint.errors import BlueprintError
from blueprint.tas_template import TAS_TEMPLATE
from blueprint.visibility import Viewer


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def blueprint_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Blueprint",
    instructions=(
        "Blueprint is a deal command center for technical account teams. Each deal carries "
        "a 24-question TAS blueprint. Start with list_deals(), inspect one with get_deal(id), "
        "paste call notes or emails into submit_context(id, text), then work the proposals "
        "with review_queue(id) and decide_delta()."
    ),
    lifespan=blueprint_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _viewer() -> Viewer:
    s = get_settings()
    return Viewer(user_id=s.mcp_user_id, email=s.mcp_user_email, role=s.mcp_user_role)


def _error(exc: BlueprintError) -> dict:
    return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("blueprint://tas-template")
def tas_template() -> str:
    """The TAS blueprint: sections, questions and the gate each becomes critical at."""
    return json.dumps({
        "gates": ["Discovery", "Solutioning", "Commit"],
        "review_actions": {
            "accept": "Apply the proposed answer as confirmed.",
            "edit_then_accept": "Apply your edited answer as confirmed.",
            "reject": "Leave the current answer untouched.",
        },
        "sections": [
            {
                "id": section.id,
                "title": section.title,
                "questions": [
                    {"id": q.id, "prompt": q.prompt, "critical_at": q.stage_critical_at, "priority": q.priority}
                    for q in section.questions
                ],
            }
            for section in TAS_TEMPLATE
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Deals
# ---------------------------------------------------------------------------


@mcp.tool()
async def list_deals(with_signals: bool = False) -> list[dict]:
    """List deals visible to the configured user, soonest close date first.

    Args:
        with_signals: Also fetch Gmail/Slack/Gong/GTM-agent signals (slower).
    """
    viewer = _viewer()
    with session_scope() as session:
        ctx = services.resolve_connector_context(session, viewer.user_id)
        visible = deals.list_visible_deals(session, viewer)
        return await services.list_deal_cards(session, visible, viewer, ctx, with_signals=with_signals)


@mcp.tool()
async def get_deal(deal_id: int, with_signals: bool = True) -> dict:
    """Deal card, all 24 TAS answers and the audit for one deal."""
    viewer = _viewer()
    with session_scope() as session:
        try:
            deal = deals.get_visible_deal(session, deal_id, viewer)
        except BlueprintError as exc:
            return _error(exc)
        ctx = services.resolve_connector_context(session, viewer.user_id)
        return await services.deal_detail(session, deal, viewer, ctx, with_signals=with_signals)


@mcp.tool()
def update_answer(deal_id: int, question_id: str, answer: str) -> dict:
    """Manually set a TAS answer (q1-q24). Marks it as manual."""
    viewer = _viewer()
    with session_scope() as session:
        try:
            deal = deals.get_owned_deal(session, deal_id, viewer.user_id)
            row = answers.update_answer(session, deal.id, question_id, answer, viewer.display_name)
        except BlueprintError as exc:
            return _error(exc)
        session.commit()
        return answers.state_from_row(row).to_dict()


@mcp.tool()
def audit(deal_id: int) -> dict:
    """Completion, evidence coverage, critical gaps, stale answers and contradictions."""
    viewer = _viewer()
    with session_scope() as session:
        try:
            deal = deals.get_visible_deal(session, deal_id, viewer)
        except BlueprintError as exc:
            return _error(exc)
        return services.deal_audit(session, deal)


@mcp.tool()
async def quality_check(deal_id: int) -> dict:
    """Score how decision-ready each TAS answer is. Falls back to heuristics without an LLM."""
    viewer = _viewer()
    with session_scope() as session:
        try:
            deal = deals.get_visible_deal(session, deal_id, viewer)
        except BlueprintError as exc:
            return _error(exc)
        report = await services.deal_quality(session, deal, viewer)
        return report.to_dict()


# ---------------------------------------------------------------------------
# Tools: Ingestion & Review
# ---------------------------------------------------------------------------


@mcp.tool()
async def submit_context(deal_id: int, raw_context: str, source_type: str = "pasted_context") -> dict:
    """Extract TAS answer proposals from pasted notes, emails or transcripts.

    Args:
        deal_id: A deal you own.
        raw_context: At least 20 characters of text.
        source_type: pasted_context, call_notes, slack, email, doc or other.
    """
    viewer = _viewer()
    with session_scope() as session:
        try:
            return await ingestion.create_ingestion_run(session, deal_id, viewer.user_id, source_type, raw_context)
        except BlueprintError as exc:
            return _error(exc)


@mcp.tool()
def review_queue(deal_id: int, status: str | None = None) -> list[dict] | dict:
    """Proposed answer changes for a deal, pending first then by confidence."""
    viewer = _viewer()
    with session_scope() as session:
        try:
            return ingestion.list_review_queue(session, deal_id, viewer.user_id, status)
        except BlueprintError as exc:
            return _error(exc)


@mcp.tool()
def decide_delta(delta_id: int, action: str, edited_answer: str | None = None) -> dict:
    """Decide one proposal: accept, edit_then_accept (edited_answer, or the proposal when omitted) or reject."""
    viewer = _viewer()
    with session_scope() as session:
        try:
            return review.decide(
                session, delta_id, viewer.user_id, action,
                edited_answer=edited_answer, actor_name=viewer.display_name,
            )
        except BlueprintError as exc:
            return _error(exc)


@mcp.tool()
def bulk_decide(deal_id: int, action: str, min_confidence: float | None = None) -> dict:
    """Accept or reject every pending proposal for a deal, optionally above a confidence floor."""
    viewer = _viewer()
    with session_scope() as session:
        try:
            updated = review.decide_bulk(
                session, deal_id, viewer.user_id, action,
                min_confidence=min_confidence, actor_name=viewer.display_name,
            )
        except BlueprintError as exc:
            return _error(exc)
        return {"updated": updated}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Blueprint MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
