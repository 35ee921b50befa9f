"""
SqlFollowUpStore: Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every public method runs in one session scope (one transaction). SQLAlchemy
errors are wrapped in StoreError so callers only ever see the engine's
error taxonomy. SQLite returns naive datetimes; rows are normalized to UTC
on the way out, and every bound datetime is converted to UTC on the way in.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select, update, delete, and_, func, text
from sqlalchemy.exc import SQLAlchemyError

from core.errors import StoreError
from database.models import CompanyRulesRow, FollowUpRow
from database.session import SessionScope, get_session
from database.store_base import BaseFollowUpStore
from models.schemas import (
    ChannelType, FollowUp, FollowUpPriority, FollowUpStatus,
    MessageDescriptor, utcnow,
)

logger = structlog.get_logger()


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SqlFollowUpStore(BaseFollowUpStore):
    """
    Persistent follow-up store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_scope: SessionScope = None):
        self._scope = session_scope or get_session

    # ── Recompute ──────────────────────────────────────────

    async def replace_pending(
        self, company_id: str, invoice_ref: str, followups: list[FollowUp],
    ) -> tuple[int, list[FollowUp]]:
        try:
            async with self._scope() as db:
                result = await db.execute(
                    delete(FollowUpRow).where(and_(
                        FollowUpRow.company_id == company_id,
                        FollowUpRow.invoice_ref == invoice_ref,
                        FollowUpRow.status == FollowUpStatus.PENDING.value,
                    ))
                )
                deleted = result.rowcount or 0

                inserted: list[FollowUp] = []
                seen_rules: set[str] = set()
                for fu in followups:
                    try:
                        if fu.company_id != company_id or fu.invoice_ref != invoice_ref:
                            raise StoreError("follow-up belongs to a different invoice")
                        if fu.message.rule_name in seen_rules:
                            raise StoreError(
                                f"duplicate pending follow-up for rule {fu.message.rule_name}")
                        row = self._followup_to_row(fu)
                        # a rejected insert rolls back only its own savepoint
                        async with db.begin_nested():
                            db.add(row)
                            await db.flush()
                    except (StoreError, ValueError, TypeError, SQLAlchemyError) as e:
                        logger.error("followup_insert_failed",
                                     invoice_ref=invoice_ref,
                                     rule=fu.message.rule_name,
                                     error=str(e))
                        continue
                    seen_rules.add(fu.message.rule_name)
                    inserted.append(fu)
                return deleted, inserted
        except SQLAlchemyError as e:
            raise StoreError(f"replace_pending failed for {invoice_ref}: {e}") from e

    # ── Reads ──────────────────────────────────────────────

    async def get_followup(self, followup_id: str) -> Optional[FollowUp]:
        try:
            async with self._scope() as db:
                row = await db.get(FollowUpRow, followup_id)
                return self._row_to_followup(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"get_followup failed: {e}") from e

    async def list_due(
        self, now: datetime, company_id: str = None, limit: int = 50,
        priority: FollowUpPriority = None,
    ) -> list[FollowUp]:
        conditions = [
            FollowUpRow.status == FollowUpStatus.PENDING.value,
            FollowUpRow.scheduled_at <= _utc(now),
        ]
        if company_id is not None:
            conditions.append(FollowUpRow.company_id == company_id)
        if priority is not None:
            conditions.append(FollowUpRow.priority == FollowUpPriority(priority).value)
        stmt = (
            select(FollowUpRow)
            .where(and_(*conditions))
            .order_by(FollowUpRow.scheduled_at.asc(), FollowUpRow.created_at.asc())
            .limit(limit)
        )
        try:
            async with self._scope() as db:
                result = await db.execute(stmt)
                return [self._row_to_followup(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError(f"list_due failed: {e}") from e

    async def list_for_invoice(
        self, company_id: str, invoice_ref: str, status: FollowUpStatus = None,
    ) -> list[FollowUp]:
        conditions = [
            FollowUpRow.company_id == company_id,
            FollowUpRow.invoice_ref == invoice_ref,
        ]
        if status is not None:
            conditions.append(FollowUpRow.status == FollowUpStatus(status).value)
        stmt = select(FollowUpRow).where(and_(*conditions)).order_by(FollowUpRow.scheduled_at)
        try:
            async with self._scope() as db:
                result = await db.execute(stmt)
                return [self._row_to_followup(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError(f"list_for_invoice failed: {e}") from e

    # ── Transitions ────────────────────────────────────────

    async def _transition(self, followup_id: str, **values) -> bool:
        stmt = (
            update(FollowUpRow)
            .where(and_(
                FollowUpRow.id == followup_id,
                FollowUpRow.status == FollowUpStatus.PENDING.value,
            ))
            .values(**values)
        )
        try:
            async with self._scope() as db:
                result = await db.execute(stmt)
                return (result.rowcount or 0) == 1
        except SQLAlchemyError as e:
            raise StoreError(f"status update failed for {followup_id}: {e}") from e

    async def mark_sent(self, followup_id: str, sent_at: datetime, delivery_id: str = "") -> bool:
        sent_at = _utc(sent_at)
        return await self._transition(
            followup_id,
            status=FollowUpStatus.SENT.value,
            sent_at=sent_at,
            delivery_id=delivery_id,
            updated_at=sent_at,
        )

    async def mark_failed(self, followup_id: str, failed_at: datetime, error: str) -> bool:
        failed_at = _utc(failed_at)
        return await self._transition(
            followup_id,
            status=FollowUpStatus.FAILED.value,
            failed_at=failed_at,
            error=error,
            updated_at=failed_at,
        )

    # ── Maintenance ────────────────────────────────────────

    async def archive_failed(self, before: datetime) -> int:
        stmt = (
            update(FollowUpRow)
            .where(and_(
                FollowUpRow.status == FollowUpStatus.FAILED.value,
                FollowUpRow.failed_at.is_not(None),
                FollowUpRow.failed_at < _utc(before),
            ))
            .values(status=FollowUpStatus.ARCHIVED.value, updated_at=utcnow())
        )
        try:
            async with self._scope() as db:
                result = await db.execute(stmt)
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreError(f"archive_failed failed: {e}") from e

    async def purge(self, statuses: Iterable[FollowUpStatus], before: datetime) -> int:
        values = [FollowUpStatus(s).value for s in statuses]
        if not values:
            return 0
        stmt = delete(FollowUpRow).where(and_(
            FollowUpRow.status.in_(values),
            FollowUpRow.updated_at < _utc(before),
        ))
        try:
            async with self._scope() as db:
                result = await db.execute(stmt)
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreError(f"purge failed: {e}") from e

    async def count_by_status(
        self, since: datetime = None, company_id: str = None,
    ) -> dict[str, dict[str, int]]:
        stmt = select(FollowUpRow.status, FollowUpRow.channel, func.count(FollowUpRow.id))
        if since is not None:
            stmt = stmt.where(FollowUpRow.created_at >= _utc(since))
        if company_id is not None:
            stmt = stmt.where(FollowUpRow.company_id == company_id)
        stmt = stmt.group_by(FollowUpRow.status, FollowUpRow.channel)
        try:
            async with self._scope() as db:
                result = await db.execute(stmt)
                counts: dict[str, dict[str, int]] = {}
                for status, channel, n in result.all():
                    counts.setdefault(status, {})[channel] = int(n)
                return counts
        except SQLAlchemyError as e:
            raise StoreError(f"count_by_status failed: {e}") from e

    # ── Rule sets ──────────────────────────────────────────

    async def get_rules(self, company_id: str) -> Optional[list[dict[str, Any]]]:
        try:
            async with self._scope() as db:
                row = await db.get(CompanyRulesRow, company_id)
                if row is None:
                    return None
                rules = row.rules
                # SQLite may hand JSON back as text
                if isinstance(rules, str):
                    rules = json.loads(rules)
                return list(rules or [])
        except SQLAlchemyError as e:
            raise StoreError(f"get_rules failed: {e}") from e

    async def save_rules(self, company_id: str, rules: list[dict[str, Any]]) -> None:
        try:
            async with self._scope() as db:
                row = await db.get(CompanyRulesRow, company_id)
                if row:
                    row.rules = list(rules)
                else:
                    db.add(CompanyRulesRow(company_id=company_id, rules=list(rules)))
        except SQLAlchemyError as e:
            raise StoreError(f"save_rules failed: {e}") from e

    async def list_company_ids(self) -> list[str]:
        try:
            async with self._scope() as db:
                from_rules = await db.execute(select(CompanyRulesRow.company_id))
                from_followups = await db.execute(select(FollowUpRow.company_id).distinct())
                ids = set(from_rules.scalars().all()) | set(from_followups.scalars().all())
                return sorted(ids)
        except SQLAlchemyError as e:
            raise StoreError(f"list_company_ids failed: {e}") from e

    # ── Health ─────────────────────────────────────────────

    async def ping(self) -> bool:
        try:
            async with self._scope() as db:
                await db.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("store_ping_failed", error=str(e))
            return False

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _followup_to_row(fu: FollowUp) -> FollowUpRow:
        return FollowUpRow(
            id=fu.id,
            company_id=fu.company_id,
            invoice_ref=fu.invoice_ref,
            channel=fu.channel.value,
            status=fu.status.value,
            priority=fu.priority.value,
            rule_name=fu.message.rule_name,
            message=fu.message.model_dump(mode="json"),
            delivery_id=fu.delivery_id,
            error=fu.error,
            scheduled_at=_utc(fu.scheduled_at),
            sent_at=_utc(fu.sent_at),
            failed_at=_utc(fu.failed_at),
            created_at=_utc(fu.created_at),
            updated_at=_utc(fu.updated_at),
        )

    @staticmethod
    def _row_to_followup(row: FollowUpRow) -> FollowUp:
        message = row.message or {}
        if isinstance(message, str):
            message = json.loads(message)
        message.setdefault("rule_name", row.rule_name)
        return FollowUp(
            id=row.id,
            company_id=row.company_id,
            invoice_ref=row.invoice_ref,
            channel=ChannelType(row.channel),
            status=FollowUpStatus(row.status),
            priority=FollowUpPriority(row.priority),
            scheduled_at=_utc(row.scheduled_at),
            sent_at=_utc(row.sent_at),
            failed_at=_utc(row.failed_at),
            error=row.error or "",
            message=MessageDescriptor(**message),
            delivery_id=row.delivery_id or "",
            created_at=_utc(row.created_at),
            updated_at=_utc(row.updated_at),
        )
