"""
Rules Engine: Turns an invoice's due date into a schedule of follow-ups.

Rules come from three places, first match wins:
  1. the company's stored rule set (store.get_rules)
  2. the default rule set in settings.yaml (``rules:``)
  3. DEFAULT_FOLLOWUP_RULES below

``compute_schedule`` is pure. ``recompute`` persists the result by replacing
every *pending* follow-up of the invoice in one store transaction, under the
invoice's lock, so it is idempotent and safe to run on every invoice sync.
"""
from __future__ import annotations

import structlog
from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from core.errors import ValidationError
from core.locks import KeyedLock
from database.store_base import BaseFollowUpStore
from models.schemas import (
    ChannelType, FollowUp, FollowUpDraft, FollowUpPriority, FollowUpRule,
    FollowUpStatus, InvoiceSnapshot, RecomputeResult, SyncSummary, utcnow,
)

logger = structlog.get_logger()


DEFAULT_FOLLOWUP_RULES: list[FollowUpRule] = [
    FollowUpRule(name="Pre-due reminder", offset_days=-1, channel=ChannelType.EMAIL,
                 template_id="pre_due_reminder"),
    FollowUpRule(name="Due date notice", offset_days=0, channel=ChannelType.EMAIL,
                 template_id="due_date_notice"),
    FollowUpRule(name="Gentle reminder", offset_days=7, channel=ChannelType.EMAIL,
                 template_id="gentle_reminder"),
    FollowUpRule(name="Second reminder", offset_days=10, channel=ChannelType.EMAIL,
                 template_id="second_reminder"),
    FollowUpRule(name="Firm reminder", offset_days=14, channel=ChannelType.EMAIL,
                 template_id="firm_reminder"),
    FollowUpRule(name="Fourth reminder", offset_days=21, channel=ChannelType.EMAIL,
                 template_id="fourth_reminder"),
    FollowUpRule(name="Final notice", offset_days=28, channel=ChannelType.EMAIL,
                 template_id="final_notice"),
    FollowUpRule(name="Phone call", offset_days=30, channel=ChannelType.CALL,
                 template_id="phone_script", active=False),
]


def priority_for_offset(offset_days: int) -> FollowUpPriority:
    if offset_days > 14:
        return FollowUpPriority.URGENT
    if offset_days > 7:
        return FollowUpPriority.HIGH
    return FollowUpPriority.NORMAL


def _due_instant(invoice: InvoiceSnapshot) -> datetime:
    return datetime.combine(invoice.due_date, time.min, tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Rule Engine
# ──────────────────────────────────────────────────────────────

class FollowUpRuleEngine:
    """
    Resolves rule sets per company, computes drafts, and owns the
    replace-pending recompute.
    """

    def __init__(
        self,
        store: BaseFollowUpStore,
        default_rules: Iterable[dict[str, Any] | FollowUpRule] = None,
        grace_days: int = 1,
        locks: KeyedLock = None,
    ):
        self.store = store
        self.grace = timedelta(days=grace_days)
        self.locks = locks if locks is not None else KeyedLock()
        configured = self.load_rules(default_rules) if default_rules else []
        self.default_rules: list[FollowUpRule] = configured or list(DEFAULT_FOLLOWUP_RULES)

    # ── Rule sets ─────────────────────────────────────────────

    @staticmethod
    def load_rules(raw_rules: Iterable[dict[str, Any] | FollowUpRule]) -> list[FollowUpRule]:
        """
        Validate raw rule definitions. Invalid entries and duplicate names are
        rejected with a logged ValidationError and skipped; order is preserved.
        """
        rules: list[FollowUpRule] = []
        names: set[str] = set()
        for index, raw in enumerate(raw_rules):
            try:
                rule = raw if isinstance(raw, FollowUpRule) else FollowUpRule(**raw)
                if rule.name in names:
                    raise ValidationError(f"duplicate rule name {rule.name!r}", field="name")
            except (PydanticValidationError, TypeError) as e:
                err = ValidationError(f"invalid follow-up rule at index {index}: {e}")
                logger.error("rule_rejected", index=index, error=str(err))
                continue
            except ValidationError as e:
                logger.error("rule_rejected", index=index, error=str(e))
                continue
            names.add(rule.name)
            rules.append(rule)
        logger.info("rules_loaded", count=len(rules))
        return rules

    async def rules_for(self, company_id: str) -> list[FollowUpRule]:
        stored = await self.store.get_rules(company_id)
        if stored:
            rules = self.load_rules(stored)
            if rules:
                return rules
            logger.warning("company_rules_unusable", company_id=company_id)
        return list(self.default_rules)

    async def set_rules(self, company_id: str, raw_rules: list[dict[str, Any]]) -> list[FollowUpRule]:
        rules = self.load_rules(raw_rules)
        if not rules:
            raise ValidationError(f"no valid follow-up rules for company {company_id}")
        await self.store.save_rules(company_id, [r.model_dump(mode="json") for r in rules])
        logger.info("company_rules_saved", company_id=company_id, count=len(rules))
        return rules

    # ── Pure schedule computation ─────────────────────────────

    def compute_schedule(
        self,
        invoice: InvoiceSnapshot,
        rules: Iterable[FollowUpRule],
        now: datetime = None,
    ) -> list[FollowUpDraft]:
        if invoice.due_date is None or invoice.balance <= 0:
            return []

        now = now or utcnow()
        cutoff = now - self.grace
        due = _due_instant(invoice)

        drafts: list[FollowUpDraft] = []
        for rule in rules:
            if not rule.active:
                continue
            scheduled_at = due + timedelta(days=rule.offset_days)
            if scheduled_at < cutoff:
                continue
            template_id = rule.template_id or rule.name.lower().replace(" ", "_")
            drafts.append(FollowUpDraft(
                rule_name=rule.name,
                channel=rule.channel,
                template_id=template_id,
                scheduled_at=scheduled_at,
                priority=priority_for_offset(rule.offset_days),
                text=f"{rule.name}: {template_id} for invoice {invoice.external_id}",
            ))
        return drafts

    # ── Persistence ───────────────────────────────────────────

    async def recompute(
        self,
        company_id: str,
        invoice: InvoiceSnapshot,
        rules: Optional[list[FollowUpRule]] = None,
        now: datetime = None,
    ) -> RecomputeResult:
        if rules is None:
            rules = await self.rules_for(company_id)
        drafts = self.compute_schedule(invoice, rules, now=now)
        followups = [FollowUp.from_draft(company_id, invoice.external_id, d) for d in drafts]

        async with self.locks.hold((company_id, invoice.external_id)):
            deleted, inserted = await self.store.replace_pending(
                company_id, invoice.external_id, followups,
            )

        result = RecomputeResult(
            company_id=company_id,
            invoice_ref=invoice.external_id,
            deleted=deleted,
            created=len(inserted),
            failed=len(followups) - len(inserted),
        )
        logger.info("followups_recomputed",
                    company_id=company_id,
                    invoice_ref=invoice.external_id,
                    deleted=result.deleted,
                    created=result.created,
                    failed=result.failed)
        return result

    async def recompute_many(
        self,
        company_id: str,
        invoices: Iterable[InvoiceSnapshot],
        now: datetime = None,
    ) -> SyncSummary:
        """Recompute each invoice in isolation; one failure never stops the rest."""
        summary = SyncSummary(company_id=company_id)
        rules = await self.rules_for(company_id)
        for invoice in invoices:
            summary.invoices += 1
            try:
                result = await self.recompute(company_id, invoice, rules=rules, now=now)
            except Exception as e:
                logger.error("recompute_failed",
                             company_id=company_id,
                             invoice_ref=invoice.external_id,
                             error=str(e))
                summary.errors.append({"invoice_ref": invoice.external_id, "error": str(e)})
                continue
            summary.recomputed += 1
            summary.created += result.created
            summary.deleted += result.deleted
        return summary

    async def next_followup(self, company_id: str, invoice_ref: str) -> Optional[FollowUp]:
        """Earliest pending follow-up for an invoice, if any."""
        pending = await self.store.list_for_invoice(
            company_id, invoice_ref, status=FollowUpStatus.PENDING,
        )
        return pending[0] if pending else None
