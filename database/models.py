"""
SQLAlchemy ORM models: Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type for the message descriptor and rule sets; on PG it maps to
    jsonb, on MySQL to native JSON, on SQLite to TEXT.
  - String primary keys (uuid hex): no database-specific sequences.
  - Timestamps are stored timezone-aware; SQLite hands them back naive,
    the store normalizes on read.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import String, DateTime, Text, Index, JSON
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import new_id, utcnow


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


# ──────────────────────────────────────────────────────────────
#  Follow-ups
# ──────────────────────────────────────────────────────────────

class FollowUpRow(Base):
    __tablename__ = "followups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    priority: Mapped[str] = mapped_column(String(16), default="normal")

    rule_name: Mapped[str] = mapped_column(String(128), default="")
    message: Mapped[Any] = mapped_column(JSON, default=dict)
    delivery_id: Mapped[str] = mapped_column(String(256), default="")
    error: Mapped[str] = mapped_column(Text, default="")

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_followups_due", "status", "scheduled_at"),
        Index("ix_followups_invoice", "company_id", "invoice_ref", "status"),
    )


# ──────────────────────────────────────────────────────────────
#  Per-company rule sets
# ──────────────────────────────────────────────────────────────

class CompanyRulesRow(Base):
    __tablename__ = "company_followup_rules"

    company_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    rules: Mapped[Any] = mapped_column(JSON, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
