"""
Core data models for the FollowUp engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    CALL = "call"


class FollowUpStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    ARCHIVED = "archived"


class FollowUpPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# ──────────────────────────────────────────────────────────────
#  Rules: when a communication fires relative to the due date
# ──────────────────────────────────────────────────────────────

class FollowUpRule(BaseModel):
    """One step of a company's follow-up schedule."""
    name: str = Field(max_length=128)
    offset_days: int                          # negative = before due date
    channel: ChannelType = ChannelType.EMAIL
    template_id: str = ""
    active: bool = True

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("rule name must not be empty")
        return v.strip()


# ──────────────────────────────────────────────────────────────
#  Invoice data: as seen by the rule engine and by dispatch
# ──────────────────────────────────────────────────────────────

class InvoiceSnapshot(BaseModel):
    """The slice of a synced invoice the rule engine needs."""
    external_id: str
    due_date: Optional[date] = None
    balance: float = 0.0
    customer_id: str = ""

    @field_validator("due_date", mode="before")
    @classmethod
    def _parse_due_date(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str):
            if not v.strip():
                return None
            return date.fromisoformat(v.strip()[:10])
        return v


class InvoiceContext(BaseModel):
    """Everything a channel needs to address and render one follow-up."""
    id: str
    doc_number: str = ""
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    total_amount: float = 0.0
    balance: float = 0.0
    due_date: Optional[date] = None
    days_overdue: int = 0
    payment_link: str = ""
    currency: str = "USD"

    def template_vars(self) -> dict[str, str]:
        return {
            "invoiceNumber": self.doc_number or self.id,
            "customerName": self.customer_name,
            "amount": f"{self.balance:,.2f}",
            "totalAmount": f"{self.total_amount:,.2f}",
            "currency": self.currency,
            "dueDate": self.due_date.isoformat() if self.due_date else "",
            "daysOverdue": str(self.days_overdue),
            "paymentLink": self.payment_link,
        }


# ──────────────────────────────────────────────────────────────
#  FollowUp: one scheduled communication about one invoice
# ──────────────────────────────────────────────────────────────

class MessageDescriptor(BaseModel):
    rule_name: str
    template_id: str = ""
    text: str = ""


class FollowUpDraft(BaseModel):
    """Rule engine output, not yet persisted."""
    rule_name: str
    channel: ChannelType
    template_id: str = ""
    scheduled_at: datetime
    priority: FollowUpPriority = FollowUpPriority.NORMAL
    text: str = ""

    @property
    def message(self) -> MessageDescriptor:
        return MessageDescriptor(rule_name=self.rule_name, template_id=self.template_id, text=self.text)


class FollowUp(BaseModel):
    id: str = Field(default_factory=new_id)
    company_id: str
    invoice_ref: str                          # opaque id in the billing system
    channel: ChannelType
    status: FollowUpStatus = FollowUpStatus.PENDING
    priority: FollowUpPriority = FollowUpPriority.NORMAL
    scheduled_at: datetime
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: str = ""
    message: MessageDescriptor
    delivery_id: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_draft(cls, company_id: str, invoice_ref: str, draft: FollowUpDraft) -> "FollowUp":
        return cls(
            company_id=company_id,
            invoice_ref=invoice_ref,
            channel=draft.channel,
            priority=draft.priority,
            scheduled_at=draft.scheduled_at,
            message=draft.message,
        )


# ──────────────────────────────────────────────────────────────
#  Dispatch
# ──────────────────────────────────────────────────────────────

class DeliveryContext(BaseModel):
    """What a channel adapter receives for a single send."""
    followup: FollowUp
    invoice: InvoiceContext
    template_id: str
    subject: str = ""
    body: str = ""


class DeliveryReceipt(BaseModel):
    """Normalized result every adapter returns."""
    status: str                               # sent | scheduled
    channel: ChannelType
    recipient: str = ""
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    detail: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Aggregates: the user-visible unit of work
# ──────────────────────────────────────────────────────────────

class ProcessResult(BaseModel):
    followup_id: str
    success: bool
    skipped: bool = False
    detail: dict[str, Any] = {}
    error: str = ""


class BatchResult(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = []         # [{"followup_id", "error"}]
    duration: float = 0.0                     # seconds
    results: list[ProcessResult] = []


class RecomputeResult(BaseModel):
    company_id: str
    invoice_ref: str
    deleted: int = 0
    created: int = 0
    failed: int = 0                           # drafts whose insert failed


class SyncSummary(BaseModel):
    company_id: str
    invoices: int = 0
    recomputed: int = 0
    created: int = 0
    deleted: int = 0
    errors: list[dict[str, str]] = []         # [{"invoice_ref", "error"}]
