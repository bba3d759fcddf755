"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys (uuid), no database-specific sequences.
  - Status columns are plain strings; every ownership change is a
    conditional UPDATE on the status column (see database/store.py).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, Boolean, DateTime, Text,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Durable log — events and dead letters
# ──────────────────────────────────────────────────────────────

class EventRow(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(64), default="")
    aggregate_type: Mapped[str] = mapped_column(String(64), default="")
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    claimed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_by: Mapped[str] = mapped_column(String(128), default="system")

    __table_args__ = (
        Index("ix_events_unprocessed", "processed", "created_at"),
        Index("ix_events_aggregate", "aggregate_type", "aggregate_id"),
    )


class DeadLetterRow(Base):
    __tablename__ = "event_dead_letters"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    error_message: Mapped[str] = mapped_column(Text, default="")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    original_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Scheduled tasks & audit log
# ──────────────────────────────────────────────────────────────

class TaskRow(Base):
    __tablename__ = "agent_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    task_type: Mapped[str] = mapped_column(String(128), nullable=False)
    agent_type: Mapped[str] = mapped_column(String(64), default="system")
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    context_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    context_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    priority: Mapped[str] = mapped_column(String(16), default="medium")
    status: Mapped[str] = mapped_column(String(16), default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    context_json: Mapped[Any] = mapped_column(JSON, default=dict)
    result_json: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error_log: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    last_attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), default="system")

    __table_args__ = (
        Index("ix_agent_tasks_due", "status", "scheduled_for"),
        Index("ix_agent_tasks_user_type", "user_id", "task_type", "status"),
    )


class ActionLogRow(Base):
    __tablename__ = "agent_actions_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    agent_type: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    context_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    context_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    latency_ms: Mapped[int] = mapped_column(Integer, default=0)
    input_data: Mapped[Any] = mapped_column(JSON, default=dict)
    output_data: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Workflow entities
# ──────────────────────────────────────────────────────────────

class _WorkflowColumns:
    """Columns shared by the three introduction tables."""
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    bounty_credits: Mapped[int] = mapped_column(Integer, default=0)
    context: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class IntroOpportunityRow(_WorkflowColumns, Base):
    __tablename__ = "intro_opportunities"

    connector_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)


class ConnectionRequestRow(_WorkflowColumns, Base):
    __tablename__ = "connection_requests"

    requestor_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    introducee_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)


class IntroOfferRow(_WorkflowColumns, Base):
    __tablename__ = "intro_offers"

    offering_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    introducee_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)


class SubjectHoldRow(Base):
    """One row per subject while a sibling holds it. The primary key is the lock."""
    __tablename__ = "subject_holds"

    subject_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Priority projection & credits
# ──────────────────────────────────────────────────────────────

class PriorityRow(Base):
    __tablename__ = "user_priorities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_type: Mapped[str] = mapped_column(String(64), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    value_score: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(16), default="active")
    priority_rank: Mapped[int] = mapped_column(Integer, default=999)
    content: Mapped[Any] = mapped_column(JSON, default=dict)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "item_type", "item_id", name="uq_user_priorities_item"),
        Index("ix_user_priorities_user_status", "user_id", "status"),
    )


class CreditEventRow(Base):
    __tablename__ = "credit_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_type: Mapped[str] = mapped_column(String(64), default="")
    reference_id: Mapped[str] = mapped_column(String(64), default="")
    idempotency_key: Mapped[str] = mapped_column(String(191), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
