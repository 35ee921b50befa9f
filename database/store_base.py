"""
Abstract Follow-up Store: Interface for all storage backends.

Implementations:
  - SqlFollowUpStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFollowUpStore (dict-based, single-process, no persistence)

The store holds FollowUp records and per-company rule sets. The only
multi-row mutation is ``replace_pending``; it is atomic per invoice and is
owned by the rule engine.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from models.schemas import FollowUp, FollowUpPriority, FollowUpStatus


class BaseFollowUpStore(ABC):
    """Interface that all follow-up store backends must implement."""

    # ── Recompute ─────────────────────────────────────────────

    @abstractmethod
    async def replace_pending(
        self, company_id: str, invoice_ref: str, followups: list[FollowUp],
    ) -> tuple[int, list[FollowUp]]:
        """
        Delete every *pending* follow-up of the invoice and insert
        ``followups`` in one transaction. Sent/failed/archived rows are
        untouched. A follow-up that cannot be inserted is logged and
        skipped. Returns (deleted_count, inserted).
        """
        ...

    # ── Reads ─────────────────────────────────────────────────

    @abstractmethod
    async def get_followup(self, followup_id: str) -> Optional[FollowUp]:
        ...

    @abstractmethod
    async def list_due(
        self, now: datetime, company_id: str = None, limit: int = 50,
        priority: FollowUpPriority = None,
    ) -> list[FollowUp]:
        """Pending follow-ups with scheduled_at <= now, oldest first."""
        ...

    @abstractmethod
    async def list_for_invoice(
        self, company_id: str, invoice_ref: str, status: FollowUpStatus = None,
    ) -> list[FollowUp]:
        ...

    # ── Transitions ───────────────────────────────────────────

    @abstractmethod
    async def mark_sent(self, followup_id: str, sent_at: datetime, delivery_id: str = "") -> bool:
        """pending → sent. Returns False if the row is gone or no longer pending."""
        ...

    @abstractmethod
    async def mark_failed(self, followup_id: str, failed_at: datetime, error: str) -> bool:
        """pending → failed. Returns False if the row is gone or no longer pending."""
        ...

    # ── Maintenance ───────────────────────────────────────────

    @abstractmethod
    async def archive_failed(self, before: datetime) -> int:
        """failed → archived for rows whose failed_at < before."""
        ...

    @abstractmethod
    async def purge(self, statuses: Iterable[FollowUpStatus], before: datetime) -> int:
        """Delete rows in ``statuses`` last updated before ``before``."""
        ...

    @abstractmethod
    async def count_by_status(
        self, since: datetime = None, company_id: str = None,
    ) -> dict[str, dict[str, int]]:
        """{status: {channel: count}} for rows created since ``since``."""
        ...

    # ── Rule sets ─────────────────────────────────────────────

    @abstractmethod
    async def get_rules(self, company_id: str) -> Optional[list[dict[str, Any]]]:
        ...

    @abstractmethod
    async def save_rules(self, company_id: str, rules: list[dict[str, Any]]) -> None:
        ...

    @abstractmethod
    async def list_company_ids(self) -> list[str]:
        ...

    # ── Health ────────────────────────────────────────────────

    @abstractmethod
    async def ping(self) -> bool:
        ...
