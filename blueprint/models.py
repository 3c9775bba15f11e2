from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Deal(Base):
    __tablename__ = "deals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    owner_email: Mapped[str] = mapped_column(String(300), default="")
    account_name: Mapped[str] = mapped_column(String(300), nullable=False)
    opportunity_name: Mapped[str] = mapped_column(String(300), nullable=False)
    stage: Mapped[str] = mapped_column(String(100), default="Discovery")
    amount: Mapped[float] = mapped_column(Float, default=0.0)
    close_date: Mapped[str] = mapped_column(String(30), default="")
    source_opportunity_id: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    answers: Mapped[list[TasAnswer]] = relationship("TasAnswer", back_populates="deal", cascade="all, delete-orphan")
    runs: Mapped[list[IngestionRun]] = relationship("IngestionRun", back_populates="deal", cascade="all, delete-orphan")


class TasAnswer(Base):
    __tablename__ = "tas_answers"
    __table_args__ = (UniqueConstraint("deal_id", "question_id", name="uq_tas_answer_deal_question"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(Integer, ForeignKey("deals.id"), nullable=False)
    question_id: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="empty")  # empty | manual | suggested | confirmed | stale | contradiction
    answer: Mapped[str] = mapped_column(Text, default="")
    evidence_json: Mapped[str] = mapped_column(Text, default="[]")
    last_updated_by: Mapped[str] = mapped_column(String(200), default="")
    last_updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    deal: Mapped[Deal] = relationship("Deal", back_populates="answers")


class IngestionRun(Base):
    __tablename__ = "ingestion_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(Integer, ForeignKey("deals.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(200), nullable=False)
    source_type: Mapped[str] = mapped_column(String(30), default="pasted_context")
    raw_context_encrypted: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="processing")  # processing | completed | failed
    model: Mapped[str] = mapped_column(String(100), default="")
    error_message: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    deal: Mapped[Deal] = relationship("Deal", back_populates="runs")
    deltas: Mapped[list[IngestionDelta]] = relationship("IngestionDelta", back_populates="run", cascade="all, delete-orphan")


class IngestionSnapshot(Base):
    __tablename__ = "ingestion_snapshots"
    __table_args__ = (UniqueConstraint("deal_id", "version", name="uq_snapshot_deal_version"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(Integer, ForeignKey("deals.id"), nullable=False)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("ingestion_runs.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class IngestionDelta(Base):
    __tablename__ = "ingestion_deltas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("ingestion_runs.id"), nullable=False)
    deal_id: Mapped[int] = mapped_column(Integer, ForeignKey("deals.id"), nullable=False)
    question_id: Mapped[str] = mapped_column(String(10), nullable=False)
    old_value: Mapped[str] = mapped_column(Text, default="")
    proposed_value: Mapped[str] = mapped_column(Text, default="")
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    evidence_json: Mapped[str] = mapped_column(Text, default="[]")
    reasoning: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | accepted | edited_accepted | rejected
    decided_by: Mapped[str] = mapped_column(String(200), default="")
    decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    run: Mapped[IngestionRun] = relationship("IngestionRun", back_populates="deltas")


class SlackDealUpdate(Base):
    __tablename__ = "slack_deal_updates"
    __table_args__ = (UniqueConstraint("channel_id", "message_ts", name="uq_slack_update_channel_ts"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(200), default="")
    user_id: Mapped[str] = mapped_column(String(200), default="")
    channel_id: Mapped[str] = mapped_column(String(50), nullable=False)
    message_ts: Mapped[str] = mapped_column(String(50), nullable=False)
    slack_user_id: Mapped[str] = mapped_column(String(50), default="")
    text: Mapped[str] = mapped_column(Text, default="")
    permalink: Mapped[str] = mapped_column(String(500), default="")
    deal_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("deals.id"), nullable=True)
    account_name: Mapped[str] = mapped_column(String(300), default="")
    opportunity_name: Mapped[str] = mapped_column(String(300), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ConnectorCredential(Base):
    __tablename__ = "connector_credentials"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_connector_user_provider"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(200), nullable=False)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)  # gmail | slack | gong | gtm_agent
    secret_encrypted: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
