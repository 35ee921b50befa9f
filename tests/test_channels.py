"""
Tests for channel adapters, templates and the channel registry.

Coverage:
  Templates: escalation tiers, placeholder rendering, template resolution, phone format
  Base:      rate limiter, metrics, provider error classification
  Email:     simulated send, provider send, suppression, invalid address
  SMS:       segment counting, truncation, simulated send
  Call:      scheduled call task
  Registry:  require, coverage check, disabled channels, initialize
"""
import asyncio
import json
import pytest
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx

from channels import CallAdapter, ChannelRegistry, EmailAdapter, SMSAdapter, create_channel_registry
from channels.base import ChannelMetrics, TokenBucketRateLimiter
from channels.sms_adapter import segment_count, truncate_to_segments
from channels.templates import (
    format_phone_number, render, render_message, resolve_template_id, template_for_days_overdue,
)
from config.settings import ChannelConfig
from core.errors import PermanentDispatchError, TransientDispatchError, ValidationError
from models.schemas import ChannelType, DeliveryContext, FollowUp, InvoiceContext, MessageDescriptor


# ── Fixtures ──────────────────────────────────────────

def make_invoice(**overrides) -> InvoiceContext:
    params = {
        "id": "INV-1001", "doc_number": "1001", "customer_name": "Globex Ltd",
        "customer_email": "ap@globex.example", "customer_phone": "(555) 123-4567",
        "balance": 850.5, "due_date": date(2025, 1, 10), "days_overdue": 7,
        "payment_link": "https://pay.example/i/INV-1001",
    }
    params.update(overrides)
    return InvoiceContext(**params)


def make_context(channel=ChannelType.EMAIL, body="Please pay", **invoice) -> DeliveryContext:
    followup = FollowUp(
        company_id="acme", invoice_ref="INV-1001", channel=channel,
        scheduled_at=datetime(2025, 1, 17, tzinfo=timezone.utc),
        message=MessageDescriptor(rule_name="Week late", template_id="gentle_reminder"),
    )
    return DeliveryContext(
        followup=followup,
        invoice=make_invoice(**invoice),
        template_id="gentle_reminder",
        subject="Invoice 1001 - Payment Due",
        body=body,
    )


def provider(status_code: int, body: dict = None, seen: list = None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(json.loads(request.content))
        return httpx.Response(status_code, json=body or {})
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ══════════════════════════════════════════════════════════════
#  TEMPLATES
# ══════════════════════════════════════════════════════════════

class TestTemplates:

    @pytest.mark.parametrize("days,template", [
        (-3, "pre_due_reminder"), (0, "due_date_notice"), (1, "gentle_reminder"),
        (10, "second_reminder"), (14, "firm_reminder"), (21, "fourth_reminder"),
        (28, "final_notice"), (90, "final_notice"),
    ])
    def test_escalation_tiers(self, days, template):
        assert template_for_days_overdue(days) == template

    def test_render_leaves_unknown_placeholders(self):
        assert render("Hi {{customerName}} {{oops}}", {"customerName": "Ann"}) == "Hi Ann {{oops}}"

    def test_render_message_email(self):
        variables = {**make_invoice().template_vars(), "companyName": "Acme"}
        subject, body = render_message(ChannelType.EMAIL, "gentle_reminder", variables)
        assert subject == "Invoice 1001 - Payment Due"
        assert "USD 850.50" in body
        assert body.endswith("Acme")

    def test_render_message_unknown_template_falls_back(self):
        _, body = render_message(ChannelType.SMS, "no_such", {"customerName": "Ann"})
        assert body.startswith("Hi Ann, this is a friendly reminder")

    def test_resolve_template_id(self):
        assert resolve_template_id(ChannelType.EMAIL, "final_notice", 3) == "final_notice"
        assert resolve_template_id(ChannelType.SMS, "custom_unknown", 15) == "firm_reminder"
        assert resolve_template_id(ChannelType.EMAIL, "", -1) == "pre_due_reminder"
        assert resolve_template_id(ChannelType.CALL, "", 30) == "phone_script"

    @pytest.mark.parametrize("raw,expected", [
        ("(555) 123-4567", "+15551234567"),
        ("1-555-123-4567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
        ("", None),
        ("n/a", None),
        (None, None),
    ])
    def test_format_phone_number(self, raw, expected):
        assert format_phone_number(raw) == expected


# ══════════════════════════════════════════════════════════════
#  BASE
# ══════════════════════════════════════════════════════════════

class TestTokenBucketRateLimiter:

    @pytest.mark.asyncio
    async def test_burst_then_exhausted(self):
        limiter = TokenBucketRateLimiter(rate=1, burst=2)
        assert await limiter.acquire(timeout=0.1) is True
        assert await limiter.acquire(timeout=0.1) is True
        assert await limiter.acquire(timeout=0.05) is False

    @pytest.mark.asyncio
    async def test_refill(self):
        limiter = TokenBucketRateLimiter(rate=100, burst=1)
        assert await limiter.acquire(timeout=0.01) is True
        await asyncio.sleep(0.02)
        assert await limiter.acquire(timeout=0.05) is True


class TestChannelMetrics:

    def test_counts_and_recent_errors(self):
        metrics = ChannelMetrics(ChannelType.SMS)
        metrics.record_send(10.0)
        metrics.record_send(30.0)
        for n in range(12):
            metrics.record_failure(f"e{n}")
        data = metrics.to_dict()
        assert data["sent"] == 2
        assert data["failed"] == 12
        assert data["avg_latency_ms"] == 20.0
        assert data["recent_errors"][0] == "e2"
        assert len(data["recent_errors"]) == 10


class TestProviderErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (429, TransientDispatchError),
        (503, TransientDispatchError),
        (400, PermanentDispatchError),
        (404, PermanentDispatchError),
    ])
    async def test_status_classification(self, status, error):
        adapter = EmailAdapter()
        await adapter.initialize({"api_url": "https://mail.example/send"})
        adapter._client = provider(status)

        with pytest.raises(error) as exc:
            await adapter.send(make_context())
        assert exc.value.channel == "email"
        assert (await adapter.health_check())["metrics"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        adapter = SMSAdapter()
        await adapter.initialize({"api_url": "https://sms.example/send"})
        with patch.object(SMSAdapter, "_post_json",
                          AsyncMock(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(TransientDispatchError, match="transport error"):
                await adapter.send(make_context(channel=ChannelType.SMS))

    @pytest.mark.asyncio
    async def test_no_recipient_is_permanent(self):
        adapter = SMSAdapter()
        await adapter.initialize({})
        with pytest.raises(PermanentDispatchError, match="No valid customer contact"):
            await adapter.send(make_context(channel=ChannelType.SMS, customer_phone=""))

    @pytest.mark.asyncio
    async def test_rate_limited_is_transient(self):
        limiter = TokenBucketRateLimiter(rate=1, burst=1)
        adapter = EmailAdapter(rate_limiter=limiter)
        await adapter.initialize({})
        with patch.object(limiter, "acquire", AsyncMock(return_value=False)):
            with pytest.raises(TransientDispatchError, match="Rate limit"):
                await adapter.send(make_context())


# ══════════════════════════════════════════════════════════════
#  EMAIL
# ══════════════════════════════════════════════════════════════

class TestEmailAdapter:

    @pytest.mark.asyncio
    async def test_simulated_send(self):
        adapter = EmailAdapter()
        await adapter.initialize({})
        receipt = await adapter.send(make_context())
        assert receipt.status == "sent"
        assert receipt.recipient == "ap@globex.example"
        assert receipt.detail["simulated"] is True
        assert receipt.message_id.endswith("@simulated>")

    @pytest.mark.asyncio
    async def test_provider_send(self):
        seen = []
        adapter = EmailAdapter()
        await adapter.initialize({"api_url": "https://mail.example/send",
                                  "from_address": "ar@acme.example"})
        adapter._client = provider(202, {"id": "msg-42"}, seen)

        receipt = await adapter.send(make_context())
        await adapter.shutdown()

        assert receipt.message_id == "msg-42"
        assert seen[0]["from"] == "ar@acme.example"
        assert seen[0]["custom_args"]["invoice_ref"] == "INV-1001"

    def test_suppression_and_validation(self):
        adapter = EmailAdapter()
        assert adapter.recipient(make_invoice(customer_email=" AP@Globex.Example ")) == "ap@globex.example"
        adapter.suppress("ap@globex.example")
        assert adapter.recipient(make_invoice()) is None
        assert adapter.recipient(make_invoice(customer_email="not-an-address")) is None


# ══════════════════════════════════════════════════════════════
#  SMS / CALL
# ══════════════════════════════════════════════════════════════

class TestSMSAdapter:

    def test_segment_count(self):
        assert segment_count("") == 0
        assert segment_count("a" * 160) == 1
        assert segment_count("a" * 161) == 2
        assert segment_count("€" * 80) == 1          # extended chars count double
        assert segment_count("ü" * 70) == 1
        assert segment_count("привет" * 12) == 2      # unicode: 72 chars

    def test_truncate(self):
        text = "a" * 1000
        cut = truncate_to_segments(text, 2)
        assert segment_count(cut) == 2
        assert cut.endswith("...")
        assert truncate_to_segments("short", 1) == "short"

    @pytest.mark.asyncio
    async def test_simulated_send_truncates(self):
        adapter = SMSAdapter()
        await adapter.initialize({"max_segments": 1})
        receipt = await adapter.send(make_context(channel=ChannelType.SMS, body="x" * 500))
        assert receipt.recipient == "+15551234567"
        assert receipt.detail == {"simulated": True, "segments": 1}


class TestCallAdapter:

    @pytest.mark.asyncio
    async def test_call_is_scheduled_not_dialled(self):
        adapter = CallAdapter()
        await adapter.initialize({})
        receipt = await adapter.send(make_context(channel=ChannelType.CALL, body="Call Globex"))
        assert receipt.status == "scheduled"
        assert receipt.message_id.startswith("call_")
        assert receipt.detail == {"script": "Call Globex", "manual": True}


# ══════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════

class TestChannelRegistry:

    def test_require_unknown_channel(self):
        registry = ChannelRegistry([EmailAdapter()])
        assert isinstance(registry.require(ChannelType.EMAIL), EmailAdapter)
        with pytest.raises(PermanentDispatchError, match="Unknown follow-up type"):
            registry.require(ChannelType.SMS)

    def test_ensure_coverage(self):
        registry = ChannelRegistry([EmailAdapter()])
        registry.ensure_coverage([ChannelType.EMAIL])
        with pytest.raises(ValidationError, match="call, sms"):
            registry.ensure_coverage([ChannelType.SMS, ChannelType.CALL, ChannelType.EMAIL])

    def test_disabled_channel_not_registered(self):
        registry = create_channel_registry({"sms": ChannelConfig(enabled=False)})
        assert set(registry.get_available()) == {ChannelType.EMAIL, ChannelType.CALL}

    @pytest.mark.asyncio
    async def test_initialize_all_uses_credentials(self):
        registry = create_channel_registry()
        await registry.initialize_all({
            "email": ChannelConfig(credentials={"from_address": "ar@acme.example"}),
        })
        health = await registry.health_check_all()
        assert set(health) == {"email", "sms", "call"}
        assert all(h["initialized"] for h in health.values())
        assert registry.get(ChannelType.EMAIL)._config == {"from_address": "ar@acme.example"}
        await registry.shutdown_all()
