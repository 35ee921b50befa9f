"""
InMemoryFollowUpStore: Dict-backed store for development and testing.

Features:
  - Zero infrastructure (no database)
  - Full interface compatibility with SqlFollowUpStore
  - Safe under a single event loop: no method awaits mid-mutation
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import copy
import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from core.errors import StoreError
from database.store_base import BaseFollowUpStore
from models.schemas import FollowUp, FollowUpPriority, FollowUpStatus, utcnow

logger = structlog.get_logger()


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class InMemoryFollowUpStore(BaseFollowUpStore):
    """
    Full-featured in-memory store with the same interface as SqlFollowUpStore.
    Hands out copies so callers never mutate stored records in place.
    """

    def __init__(self):
        self._followups: dict[str, FollowUp] = {}              # id → followup
        self._rules: dict[str, list[dict[str, Any]]] = {}      # company_id → raw rules
        self._invoice_index: dict[tuple[str, str], set[str]] = defaultdict(set)
        logger.info("inmemory_store_initialized")

    # ── Recompute ─────────────────────────────────────────

    async def replace_pending(
        self, company_id: str, invoice_ref: str, followups: list[FollowUp],
    ) -> tuple[int, list[FollowUp]]:
        key = (company_id, invoice_ref)
        pending_ids = [
            fid for fid in self._invoice_index.get(key, ())
            if self._followups[fid].status == FollowUpStatus.PENDING
        ]
        for fid in pending_ids:
            del self._followups[fid]
            self._invoice_index[key].discard(fid)

        inserted: list[FollowUp] = []
        seen_rules: set[str] = set()
        for fu in followups:
            try:
                self._check_insertable(fu, company_id, invoice_ref, seen_rules)
            except StoreError as e:
                logger.error("followup_insert_failed",
                             invoice_ref=invoice_ref,
                             rule=fu.message.rule_name,
                             error=str(e))
                continue
            stored = fu.model_copy(deep=True)
            self._followups[stored.id] = stored
            self._invoice_index[key].add(stored.id)
            seen_rules.add(stored.message.rule_name)
            inserted.append(stored.model_copy(deep=True))

        return len(pending_ids), inserted

    def _check_insertable(self, fu: FollowUp, company_id: str, invoice_ref: str,
                          seen_rules: set[str]) -> None:
        if fu.company_id != company_id or fu.invoice_ref != invoice_ref:
            raise StoreError("follow-up belongs to a different invoice")
        if fu.id in self._followups:
            raise StoreError(f"duplicate follow-up id {fu.id}")
        if fu.message.rule_name in seen_rules:
            raise StoreError(f"duplicate pending follow-up for rule {fu.message.rule_name}")

    # ── Reads ─────────────────────────────────────────────

    async def get_followup(self, followup_id: str) -> Optional[FollowUp]:
        fu = self._followups.get(followup_id)
        return fu.model_copy(deep=True) if fu else None

    async def list_due(
        self, now: datetime, company_id: str = None, limit: int = 50,
        priority: FollowUpPriority = None,
    ) -> list[FollowUp]:
        now = _utc(now)
        due = [
            fu for fu in self._followups.values()
            if fu.status == FollowUpStatus.PENDING
            and _utc(fu.scheduled_at) <= now
            and (company_id is None or fu.company_id == company_id)
            and (priority is None or fu.priority == priority)
        ]
        due.sort(key=lambda f: (_utc(f.scheduled_at), f.created_at))
        return [fu.model_copy(deep=True) for fu in due[:limit]]

    async def list_for_invoice(
        self, company_id: str, invoice_ref: str, status: FollowUpStatus = None,
    ) -> list[FollowUp]:
        rows = [
            self._followups[fid] for fid in self._invoice_index.get((company_id, invoice_ref), ())
            if status is None or self._followups[fid].status == status
        ]
        rows.sort(key=lambda f: _utc(f.scheduled_at))
        return [fu.model_copy(deep=True) for fu in rows]

    # ── Transitions ───────────────────────────────────────

    async def mark_sent(self, followup_id: str, sent_at: datetime, delivery_id: str = "") -> bool:
        fu = self._followups.get(followup_id)
        if fu is None or fu.status != FollowUpStatus.PENDING:
            return False
        fu.status = FollowUpStatus.SENT
        fu.sent_at = _utc(sent_at)
        fu.delivery_id = delivery_id
        fu.updated_at = fu.sent_at
        return True

    async def mark_failed(self, followup_id: str, failed_at: datetime, error: str) -> bool:
        fu = self._followups.get(followup_id)
        if fu is None or fu.status != FollowUpStatus.PENDING:
            return False
        fu.status = FollowUpStatus.FAILED
        fu.failed_at = _utc(failed_at)
        fu.error = error
        fu.updated_at = fu.failed_at
        return True

    # ── Maintenance ───────────────────────────────────────

    async def archive_failed(self, before: datetime) -> int:
        before = _utc(before)
        count = 0
        for fu in self._followups.values():
            if (fu.status == FollowUpStatus.FAILED
                    and fu.failed_at is not None
                    and _utc(fu.failed_at) < before):
                fu.status = FollowUpStatus.ARCHIVED
                fu.updated_at = utcnow()
                count += 1
        return count

    async def purge(self, statuses: Iterable[FollowUpStatus], before: datetime) -> int:
        before = _utc(before)
        wanted = {FollowUpStatus(s) for s in statuses}
        doomed = [
            fu for fu in self._followups.values()
            if fu.status in wanted and _utc(fu.updated_at) < before
        ]
        for fu in doomed:
            del self._followups[fu.id]
            self._invoice_index[(fu.company_id, fu.invoice_ref)].discard(fu.id)
        return len(doomed)

    async def count_by_status(
        self, since: datetime = None, company_id: str = None,
    ) -> dict[str, dict[str, int]]:
        since = _utc(since) if since else None
        counts: dict[str, dict[str, int]] = {}
        for fu in self._followups.values():
            if since and _utc(fu.created_at) < since:
                continue
            if company_id and fu.company_id != company_id:
                continue
            by_channel = counts.setdefault(fu.status.value, {})
            by_channel[fu.channel.value] = by_channel.get(fu.channel.value, 0) + 1
        return counts

    # ── Rule sets ─────────────────────────────────────────

    async def get_rules(self, company_id: str) -> Optional[list[dict[str, Any]]]:
        rules = self._rules.get(company_id)
        return copy.deepcopy(rules) if rules is not None else None

    async def save_rules(self, company_id: str, rules: list[dict[str, Any]]) -> None:
        self._rules[company_id] = copy.deepcopy(rules)

    async def list_company_ids(self) -> list[str]:
        ids = set(self._rules) | {fu.company_id for fu in self._followups.values()}
        return sorted(ids)

    # ── Health ────────────────────────────────────────────

    async def ping(self) -> bool:
        return True

    def stats(self) -> dict[str, int]:
        """Return counts for debugging."""
        by_status: dict[str, int] = defaultdict(int)
        for fu in self._followups.values():
            by_status[fu.status.value] += 1
        return {"followups": len(self._followups), "companies": len(self._rules), **by_status}
