"""
Tests for FollowUpProcessor: single dispatch, batches, isolation and timeouts.
"""
import asyncio
import pytest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from channels import EmailAdapter
from channels.base import ChannelRegistry
from core.processor import FollowUpProcessor
from job_queue.base import Job
from models.schemas import (
    ChannelType, DeliveryReceipt, FollowUpPriority, FollowUpStatus, InvoiceSnapshot,
)


def utc(y, m, d, h=0):
    return datetime(y, m, d, h, tzinfo=timezone.utc)


def invoice_for(ref: str) -> InvoiceSnapshot:
    return InvoiceSnapshot(external_id=ref, due_date=date(2025, 1, 10), balance=100.0)


async def seed(store, *followups):
    for fu in followups:
        await store.replace_pending(fu.company_id, fu.invoice_ref, [fu])
    return followups


class TestProcessOne:

    @pytest.mark.asyncio
    async def test_success_marks_sent(self, processor, store, make_followup):
        (fu,) = await seed(store, make_followup())
        result = await processor.process_one(fu)

        assert result.success is True
        row = await store.get_followup(fu.id)
        assert row.status == FollowUpStatus.SENT
        assert row.sent_at is not None
        assert row.delivery_id == result.detail["message_id"]
        assert result.detail["recipient"] == "ap@globex.example"

    @pytest.mark.asyncio
    async def test_missing_invoice_marks_failed(self, processor, store, make_followup):
        (fu,) = await seed(store, make_followup(invoice_ref="INV-404"))
        result = await processor.process_one(fu)

        assert result.success is False
        assert "not found" in result.error
        row = await store.get_followup(fu.id)
        assert row.status == FollowUpStatus.FAILED
        assert row.failed_at is not None
        assert row.error == result.error

    @pytest.mark.asyncio
    async def test_unknown_channel_fails(self, store, billing, make_followup):
        processor = FollowUpProcessor(store, billing, ChannelRegistry([EmailAdapter()]))
        (fu,) = await seed(store, make_followup(channel=ChannelType.SMS))
        result = await processor.process_one(fu)

        assert result.success is False
        assert "Unknown follow-up type" in result.error
        assert (await store.get_followup(fu.id)).status == FollowUpStatus.FAILED

    @pytest.mark.asyncio
    async def test_no_recipient_fails(self, processor, store, billing, raw_invoice, make_followup):
        billing.add_invoice("acme", {**raw_invoice, "id": "INV-2000", "customer_email": ""})
        (fu,) = await seed(store, make_followup(invoice_ref="INV-2000"))
        result = await processor.process_one(fu)

        assert result.success is False
        assert result.error == "No valid customer contact information"
        assert result.detail["transient"] is False

    @pytest.mark.asyncio
    async def test_call_channel_is_scheduled(self, processor, store, make_followup):
        (fu,) = await seed(store, make_followup(channel=ChannelType.CALL, rule_name="Phone call"))
        result = await processor.process_one(fu)

        assert result.success is True
        assert result.detail["status"] == "scheduled"
        assert result.detail["recipient"] == "+15551234567"

    @pytest.mark.asyncio
    async def test_lookup_timeout_marks_failed(self, store, billing, channels, make_followup):
        processor = FollowUpProcessor(store, billing, channels, dispatch_timeout=0.05)
        (fu,) = await seed(store, make_followup())

        async def slow(company_id, invoice_ref):
            await asyncio.sleep(1)

        with patch.object(billing, "get_invoice", side_effect=slow):
            result = await processor.process_one(fu)

        assert result.success is False
        assert "timed out" in result.error
        assert result.detail["transient"] is True
        assert (await store.get_followup(fu.id)).status == FollowUpStatus.FAILED

    @pytest.mark.asyncio
    async def test_skips_row_no_longer_pending(self, processor, store, make_followup):
        (fu,) = await seed(store, make_followup())
        await store.mark_sent(fu.id, utc(2025, 1, 17), "earlier")

        result = await processor.process_one(fu)

        assert result.skipped is True
        assert result.detail["reason"] == "status=sent"
        assert (await store.get_followup(fu.id)).delivery_id == "earlier"

    @pytest.mark.asyncio
    async def test_failed_row_is_never_redispatched(self, processor, store, make_followup):
        (fu,) = await seed(store, make_followup())
        await store.mark_failed(fu.id, utc(2025, 1, 17), "bounced")

        result = await processor.process_one(fu)

        assert result.skipped is True
        assert result.detail["reason"] == "status=failed"
        assert (await store.get_followup(fu.id)).error == "bounced"

    @pytest.mark.asyncio
    async def test_unknown_receipt_status_fails(self, processor, store, channels, make_followup):
        (fu,) = await seed(store, make_followup())
        adapter = channels.require(ChannelType.EMAIL)
        receipt = DeliveryReceipt(status="queued", channel=ChannelType.EMAIL)

        with patch.object(adapter, "send", AsyncMock(return_value=receipt)):
            result = await processor.process_one(fu)

        assert result.success is False
        assert result.error == "Unexpected delivery status 'queued'"
        assert (await store.get_followup(fu.id)).status == FollowUpStatus.FAILED

    @pytest.mark.asyncio
    async def test_skips_deleted_row(self, processor, make_followup):
        result = await processor.process_one(make_followup())
        assert result.skipped is True
        assert result.detail["reason"] == "deleted"

    @pytest.mark.asyncio
    async def test_queue_job_handler(self, processor, store, make_followup):
        (fu,) = await seed(store, make_followup())
        out = await processor.handle_job(Job(queue="followups", payload={"followup_id": fu.id}))
        assert out["success"] is True

        orphan = await processor.handle_job(Job(queue="followups", payload={"followup_id": "gone"}))
        assert orphan == {"skipped": True, "reason": "deleted"}


class TestProcessPending:

    @pytest.mark.asyncio
    async def test_batch_isolates_failing_item(self, processor, store, billing, raw_invoice, make_followup):
        billing.add_invoice("acme", {**raw_invoice, "id": "INV-1003"})
        first, second, third = await seed(
            store,
            make_followup(invoice_ref="INV-1001", scheduled_at=utc(2025, 1, 17)),
            make_followup(invoice_ref="INV-MISSING", scheduled_at=utc(2025, 1, 18)),
            make_followup(invoice_ref="INV-1003", scheduled_at=utc(2025, 1, 19)),
        )

        batch = await processor.process_pending(now=utc(2025, 2, 1))

        assert (batch.processed, batch.successful, batch.failed) == (3, 2, 1)
        assert [r.followup_id for r in batch.results] == [first.id, second.id, third.id]
        assert batch.errors[0]["followup_id"] == second.id
        assert batch.duration >= 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_isolated(self, processor, store, billing, raw_invoice,
                                                    make_followup):
        billing.add_invoice("acme", {**raw_invoice, "id": "INV-1002"})
        a, b = await seed(
            store,
            make_followup(invoice_ref="INV-1001", scheduled_at=utc(2025, 1, 17)),
            make_followup(invoice_ref="INV-1002", scheduled_at=utc(2025, 1, 18)),
        )
        real = billing.get_invoice

        async def crash_first(company_id, invoice_ref):
            if invoice_ref == "INV-1001":
                raise RuntimeError("boom")
            return await real(company_id, invoice_ref)

        with patch.object(billing, "get_invoice", side_effect=crash_first):
            batch = await processor.process_pending(now=utc(2025, 2, 1))

        assert (batch.successful, batch.failed) == (1, 1)
        assert (await store.get_followup(a.id)).status == FollowUpStatus.FAILED
        assert (await store.get_followup(b.id)).status == FollowUpStatus.SENT

    @pytest.mark.asyncio
    async def test_sent_rows_excluded_from_later_batches(self, processor, store, make_followup):
        await seed(store, make_followup())
        first = await processor.process_pending(now=utc(2025, 2, 1))
        second = await processor.process_pending(now=utc(2025, 2, 1))

        assert first.successful == 1
        assert second.processed == 0

    @pytest.mark.asyncio
    async def test_future_rows_not_due(self, processor, store, make_followup):
        await seed(store, make_followup(scheduled_at=utc(2025, 3, 1)))
        batch = await processor.process_pending(now=utc(2025, 2, 1))
        assert batch.processed == 0

    @pytest.mark.asyncio
    async def test_limit_and_order(self, processor, store, billing, raw_invoice, make_followup):
        for n in range(5):
            billing.add_invoice("acme", {**raw_invoice, "id": f"INV-{n}"})
        rows = await seed(store, *[
            make_followup(invoice_ref=f"INV-{n}", scheduled_at=utc(2025, 1, 20) - timedelta(days=n))
            for n in range(5)
        ])

        batch = await processor.process_pending(limit=2, now=utc(2025, 2, 1))

        assert batch.processed == 2
        # oldest scheduled first
        assert [r.followup_id for r in batch.results] == [rows[4].id, rows[3].id]

    @pytest.mark.asyncio
    async def test_priority_filter(self, processor, store, billing, raw_invoice, make_followup):
        billing.add_invoice("acme", {**raw_invoice, "id": "INV-URG"})
        normal, urgent = await seed(
            store,
            make_followup(invoice_ref="INV-1001"),
            make_followup(invoice_ref="INV-URG", priority=FollowUpPriority.URGENT),
        )

        batch = await processor.process_pending(priority="urgent", now=utc(2025, 2, 1))

        assert [r.followup_id for r in batch.results] == [urgent.id]
        assert (await store.get_followup(normal.id)).status == FollowUpStatus.PENDING

    @pytest.mark.asyncio
    async def test_parallel_batch_keeps_order(self, store, billing, channels, raw_invoice, make_followup):
        processor = FollowUpProcessor(store, billing, channels, concurrency=3)
        for n in range(6):
            billing.add_invoice("acme", {**raw_invoice, "id": f"INV-P{n}"})
        rows = await seed(store, *[
            make_followup(invoice_ref=f"INV-P{n}", scheduled_at=utc(2025, 1, 10 + n))
            for n in range(6)
        ])

        batch = await processor.process_pending(now=utc(2025, 2, 1))

        assert batch.successful == 6
        assert [r.followup_id for r in batch.results] == [r.id for r in rows]


class TestInvoiceSerialization:

    @pytest.mark.asyncio
    async def test_recompute_waits_for_inflight_dispatch(self, processor, engine, store, channels,
                                                         invoice, simple_rules, make_followup):
        (fu,) = await seed(store, make_followup())
        adapter = channels.require(ChannelType.EMAIL)
        real_send = adapter.send

        async def slow_send(context):
            await asyncio.sleep(0.1)
            return await real_send(context)

        assert processor.locks is engine.locks
        with patch.object(adapter, "send", side_effect=slow_send):
            dispatch = asyncio.create_task(processor.process_one(fu))
            await asyncio.sleep(0.02)
            assert engine.locks.locked(("acme", "INV-1001"))

            recomputed = await engine.recompute("acme", invoice, rules=simple_rules,
                                                now=utc(2025, 1, 1))
            assert dispatch.done()

        result = await dispatch
        assert result.success is True
        # the row was sent before the recompute ran, so it survives it
        assert recomputed.deleted == 0
        assert recomputed.created == 3
        row = await store.get_followup(fu.id)
        assert row.status == FollowUpStatus.SENT

    @pytest.mark.asyncio
    async def test_other_invoices_are_not_blocked(self, processor, engine, store, channels,
                                                  simple_rules, make_followup):
        await seed(store, make_followup())
        adapter = channels.require(ChannelType.EMAIL)
        gate = asyncio.Event()
        real_send = adapter.send

        async def held_send(context):
            await gate.wait()
            return await real_send(context)

        other = invoice_for("INV-7777")
        with patch.object(adapter, "send", side_effect=held_send):
            dispatch = asyncio.create_task(processor.process_pending(now=utc(2025, 2, 1)))
            await asyncio.sleep(0.02)
            recomputed = await asyncio.wait_for(
                engine.recompute("acme", other, rules=simple_rules, now=utc(2025, 1, 1)), timeout=1)
            gate.set()
            batch = await dispatch

        assert recomputed.created == 3
        assert batch.successful == 1


class TestStateConflicts:

    @pytest.mark.asyncio
    async def test_send_landing_on_non_pending_row_is_not_success(self, processor, store, make_followup):
        (fu,) = await seed(store, make_followup())

        with patch.object(store, "mark_sent", AsyncMock(return_value=False)):
            result = await processor.process_one(fu)

        assert result.success is False
        assert result.skipped is True
        assert result.detail["reason"] == "state_conflict"
        assert result.detail["target"] == "sent"

    @pytest.mark.asyncio
    async def test_failure_landing_on_non_pending_row(self, processor, store, make_followup):
        (fu,) = await seed(store, make_followup(invoice_ref="INV-404"))

        with patch.object(store, "mark_failed", AsyncMock(return_value=False)):
            result = await processor.process_one(fu)

        assert result.skipped is True
        assert result.detail["target"] == "failed"
        assert "not found" in result.detail["error"]

    @pytest.mark.asyncio
    async def test_batch_counts_conflict_as_skipped(self, processor, store, make_followup):
        await seed(store, make_followup())

        with patch.object(store, "mark_sent", AsyncMock(return_value=False)):
            batch = await processor.process_pending(now=utc(2025, 2, 1))

        assert (batch.processed, batch.successful, batch.skipped) == (1, 0, 1)
