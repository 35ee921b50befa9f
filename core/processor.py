"""
FollowUp Processor: executes pending follow-ups.

Flow for one follow-up:
  1. Take the invoice lock and re-read the row; skip it if a recompute
     deleted it or it is no longer pending
  2. Resolve invoice context from billing (bounded by dispatch_timeout)
  3. Pick the template tier, render, and send through the channel adapter
     (bounded by dispatch_timeout)
  4. pending → sent with the delivery id, or pending → failed with the error

Failed follow-ups are terminal here; nothing is re-enqueued.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from datetime import datetime
from typing import Optional

import httpx

from billing.connector import BillingConnector
from channels.base import ChannelRegistry
from channels.templates import render_message, resolve_template_id
from core.errors import (
    DispatchError, InvoiceLookupError, PermanentDispatchError, TransientDispatchError,
)
from core.locks import KeyedLock
from database.store_base import BaseFollowUpStore
from models.schemas import (
    BatchResult, DeliveryContext, DeliveryReceipt, FollowUp, FollowUpPriority,
    FollowUpStatus, ProcessResult, utcnow,
)

logger = structlog.get_logger()


class FollowUpProcessor:

    def __init__(
        self,
        store: BaseFollowUpStore,
        billing: BillingConnector,
        channels: ChannelRegistry,
        dispatch_timeout: float = 30.0,
        concurrency: int = 1,
        locks: KeyedLock = None,
        sender_name: str = "Accounts Receivable",
    ):
        self.store = store
        self.billing = billing
        self.channels = channels
        self.dispatch_timeout = dispatch_timeout
        self.concurrency = max(1, concurrency)
        self.locks = locks if locks is not None else KeyedLock()
        self.sender_name = sender_name

    # ── Single follow-up ──────────────────────────────────────

    async def process_one(self, followup: FollowUp) -> ProcessResult:
        async with self.locks.hold((followup.company_id, followup.invoice_ref)):
            current = await self.store.get_followup(followup.id)
            if current is None or current.status != FollowUpStatus.PENDING:
                reason = "deleted" if current is None else f"status={current.status.value}"
                logger.info("followup_skipped", followup_id=followup.id, reason=reason)
                return ProcessResult(followup_id=followup.id, success=False, skipped=True,
                                     detail={"reason": reason})

            try:
                receipt = await self._dispatch(current)
            except (DispatchError, InvoiceLookupError) as e:
                return await self._fail(current, e)
            except Exception as e:
                # unexpected adapter/billing bug: still terminal for this row
                logger.error("followup_dispatch_crashed", followup_id=current.id, exc_info=True)
                return await self._fail(current, e)

            if not await self.store.mark_sent(current.id, utcnow(), receipt.message_id):
                return self._conflict(current, "sent", receipt.model_dump(mode="json"))
            logger.info("followup_dispatched",
                        followup_id=current.id,
                        invoice_ref=current.invoice_ref,
                        channel=current.channel.value,
                        delivery_status=receipt.status,
                        delivery_id=receipt.message_id)
            return ProcessResult(followup_id=current.id, success=True,
                                 detail=receipt.model_dump(mode="json"))

    async def _fail(self, followup: FollowUp, error: Exception) -> ProcessResult:
        message = str(error) or error.__class__.__name__
        retryable = getattr(error, "retryable", False)
        log = logger.warning if retryable else logger.error
        log("followup_failed",
            followup_id=followup.id,
            invoice_ref=followup.invoice_ref,
            channel=followup.channel.value,
            error_type=error.__class__.__name__,
            error=message)
        if not await self.store.mark_failed(followup.id, utcnow(), message):
            return self._conflict(followup, "failed", {"error": message})
        return ProcessResult(followup_id=followup.id, success=False, error=message,
                             detail={"error_type": error.__class__.__name__,
                                     "transient": retryable})

    def _conflict(self, followup: FollowUp, target: str, detail: dict) -> ProcessResult:
        # row stopped being pending while the send was in flight
        logger.warning("followup_state_conflict",
                       followup_id=followup.id,
                       invoice_ref=followup.invoice_ref,
                       target=target)
        return ProcessResult(followup_id=followup.id, success=False, skipped=True,
                             detail={"reason": "state_conflict", "target": target, **detail})

    async def _dispatch(self, followup: FollowUp) -> DeliveryReceipt:
        adapter = self.channels.require(followup.channel)

        try:
            invoice = await asyncio.wait_for(
                self.billing.get_invoice(followup.company_id, followup.invoice_ref),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientDispatchError(
                f"Invoice lookup timed out after {self.dispatch_timeout}s",
                followup.channel.value) from e
        except httpx.HTTPError as e:
            raise TransientDispatchError(f"Invoice lookup failed: {e}",
                                         followup.channel.value) from e

        template_id = resolve_template_id(followup.channel, followup.message.template_id,
                                          invoice.days_overdue)
        variables = invoice.template_vars()
        variables["companyName"] = self.sender_name
        subject, body = render_message(followup.channel, template_id, variables)
        context = DeliveryContext(followup=followup, invoice=invoice,
                                  template_id=template_id, subject=subject, body=body)

        try:
            receipt = await asyncio.wait_for(adapter.send(context), timeout=self.dispatch_timeout)
        except asyncio.TimeoutError as e:
            raise TransientDispatchError(
                f"Dispatch timed out after {self.dispatch_timeout}s",
                followup.channel.value) from e

        if receipt.status not in ("sent", "scheduled"):
            raise PermanentDispatchError(f"Unexpected delivery status {receipt.status!r}",
                                         followup.channel.value)
        return receipt

    async def handle_job(self, job) -> dict:
        """``followups`` queue processor: payload ``{"followup_id": ...}``."""
        followup = await self.store.get_followup(str(job.payload.get("followup_id", "")))
        if followup is None:
            logger.info("followup_job_orphaned", job_id=job.id,
                        followup_id=job.payload.get("followup_id"))
            return {"skipped": True, "reason": "deleted"}
        result = await self.process_one(followup)
        return result.model_dump(mode="json")

    # ── Batches ───────────────────────────────────────────────

    async def _process_isolated(self, followup: FollowUp) -> ProcessResult:
        try:
            return await self.process_one(followup)
        except Exception as e:
            logger.error("followup_processing_error",
                         followup_id=followup.id,
                         error=str(e),
                         exc_info=True)
            return ProcessResult(followup_id=followup.id, success=False,
                                 error=str(e) or e.__class__.__name__)

    async def process_pending(
        self,
        company_id: str = None,
        limit: int = 50,
        priority: Optional[FollowUpPriority] = None,
        now: datetime = None,
    ) -> BatchResult:
        """
        Process due follow-ups oldest first. One item's failure never stops
        the batch; results keep the selection order even when run in parallel.
        """
        start = time.monotonic()
        if priority is not None:
            priority = FollowUpPriority(priority)
        due = await self.store.list_due(now or utcnow(), company_id=company_id,
                                        limit=limit, priority=priority)

        if self.concurrency == 1:
            results = [await self._process_isolated(fu) for fu in due]
        else:
            semaphore = asyncio.Semaphore(self.concurrency)

            async def bounded(fu: FollowUp) -> ProcessResult:
                async with semaphore:
                    return await self._process_isolated(fu)

            results = list(await asyncio.gather(*(bounded(fu) for fu in due)))

        batch = BatchResult(processed=len(results), results=results)
        for result in results:
            if result.skipped:
                batch.skipped += 1
            elif result.success:
                batch.successful += 1
            else:
                batch.failed += 1
                batch.errors.append({"followup_id": result.followup_id, "error": result.error})
        batch.duration = round(time.monotonic() - start, 3)

        logger.info("followup_batch_processed",
                    company_id=company_id,
                    priority=priority.value if priority else None,
                    processed=batch.processed,
                    successful=batch.successful,
                    failed=batch.failed,
                    skipped=batch.skipped,
                    duration=batch.duration)
        return batch
