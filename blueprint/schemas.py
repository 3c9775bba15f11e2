"""Pydantic request/response schemas for the Blueprint API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from blueprint.ingestion import MIN_CONTEXT_CHARS, SOURCE_TYPES


class DealCreate(BaseModel):
    account_name: str = Field(min_length=1, max_length=300)
    opportunity_name: str = Field(min_length=1, max_length=300)
    stage: str = "Discovery"
    amount: float = 0.0
    close_date: str = ""
    source_opportunity_id: str = ""

    @field_validator("account_name", "opportunity_name")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class DealUpdate(BaseModel):
    account_name: str | None = None
    opportunity_name: str | None = None
    stage: str | None = None
    amount: float | None = None
    close_date: str | None = None
    source_opportunity_id: str | None = None


class DealOut(BaseModel):
    id: int
    owner_id: str
    owner_email: str | None = None
    account_name: str
    opportunity_name: str
    stage: str
    gate: str
    amount: float
    close_date: str | None = None
    source_opportunity_id: str | None = None
    created_at: str | None = None


class DealCardOut(DealOut):
    tas_progress: dict[str, int]
    evidence_coverage: dict[str, int]
    top_gaps: list[str]
    risk: dict[str, Any]
    needs_review_count: int
    source_signals: list[dict[str, Any]] = []
    consolidated_insights: list[dict[str, Any]] = []


class QuestionStateOut(BaseModel):
    question_id: str
    status: str
    answer: str | None = None
    evidence: list[dict[str, Any]] = []
    last_updated_at: str | None = None
    last_updated_by: str | None = None


class DealDetailOut(BaseModel):
    deal: DealCardOut
    questions: list[QuestionStateOut]
    audit: dict[str, Any]


class AnswerUpdate(BaseModel):
    question_id: str
    answer: str


class IngestionSubmit(BaseModel):
    source_type: str = "pasted_context"
    raw_context: str = Field(min_length=MIN_CONTEXT_CHARS, max_length=100_000)

    @field_validator("source_type")
    @classmethod
    def _known_source(cls, v: str) -> str:
        if v not in SOURCE_TYPES:
            raise ValueError(f"source_type must be one of {', '.join(SOURCE_TYPES)}")
        return v


class IngestionRunOut(BaseModel):
    id: int
    deal_id: int
    user_id: str
    source_type: str
    status: str
    model: str | None = None
    error_message: str | None = None
    created_at: str | None = None
    completed_at: str | None = None


class DeltaOut(BaseModel):
    id: int
    run_id: int
    deal_id: int
    question_id: str
    question_prompt: str
    old_value: str | None = None
    proposed_value: str
    confidence: float
    evidence_snippets: list[str] = []
    reasoning: str
    status: str
    decided_by: str | None = None
    decided_at: str | None = None
    created_at: str | None = None


class IngestionResult(BaseModel):
    run: IngestionRunOut
    snapshot_version: int
    deltas: list[DeltaOut]


class ReviewDecision(BaseModel):
    action: Literal["accept", "edit_then_accept", "reject"]
    edited_answer: str | None = None


class BulkDecision(BaseModel):
    action: Literal["accept", "reject"]
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class BulkDecisionResult(BaseModel):
    updated: int


class ConnectorCredentialIn(BaseModel):
    secret: dict[str, str]
