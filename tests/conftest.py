"""Shared test fixtures for the follow-up engine."""
import pytest
from datetime import date, datetime, timezone

from billing.connector import InMemoryBillingConnector
from channels import create_channel_registry
from config.settings import reset_settings
from core.locks import KeyedLock
from core.processor import FollowUpProcessor
from database.store_factory import reset_store
from database.store_memory import InMemoryFollowUpStore
from models.schemas import (
    ChannelType, FollowUp, FollowUpPriority, FollowUpRule, InvoiceSnapshot, MessageDescriptor,
)
from rules.engine import FollowUpRuleEngine


COMPANY = "acme"


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_settings()
    reset_store()
    yield
    reset_settings()
    reset_store()


@pytest.fixture
def store() -> InMemoryFollowUpStore:
    return InMemoryFollowUpStore()


@pytest.fixture
def raw_invoice() -> dict:
    return {
        "id": "INV-1001",
        "doc_number": "1001",
        "customer_name": "Globex Ltd",
        "customer_email": "ap@globex.example",
        "customer_phone": "(555) 123-4567",
        "total_amount": 1200.0,
        "balance": 850.5,
        "due_date": "2025-01-10",
    }


@pytest.fixture
def billing(raw_invoice) -> InMemoryBillingConnector:
    connector = InMemoryBillingConnector(payment_link_base="https://pay.example/i")
    connector.add_invoice(COMPANY, raw_invoice)
    return connector


@pytest.fixture
def channels():
    return create_channel_registry()


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def engine(store, locks) -> FollowUpRuleEngine:
    return FollowUpRuleEngine(store, locks=locks)


@pytest.fixture
def processor(store, billing, channels, locks) -> FollowUpProcessor:
    return FollowUpProcessor(store, billing, channels, dispatch_timeout=2.0, locks=locks)


@pytest.fixture
def invoice() -> InvoiceSnapshot:
    return InvoiceSnapshot(external_id="INV-1001", due_date=date(2025, 1, 10), balance=850.5)


@pytest.fixture
def simple_rules() -> list[FollowUpRule]:
    return [
        FollowUpRule(name="Day before", offset_days=-1, template_id="pre_due_reminder"),
        FollowUpRule(name="Week late", offset_days=7, template_id="gentle_reminder"),
        FollowUpRule(name="Text at two weeks", offset_days=14, channel=ChannelType.SMS,
                     template_id="firm_reminder"),
    ]


def make_followup(
    invoice_ref: str = "INV-1001",
    rule_name: str = "Week late",
    scheduled_at: datetime = None,
    channel: ChannelType = ChannelType.EMAIL,
    priority: FollowUpPriority = FollowUpPriority.NORMAL,
    company_id: str = COMPANY,
) -> FollowUp:
    return FollowUp(
        company_id=company_id,
        invoice_ref=invoice_ref,
        channel=channel,
        priority=priority,
        scheduled_at=scheduled_at or datetime(2025, 1, 17, tzinfo=timezone.utc),
        message=MessageDescriptor(rule_name=rule_name, template_id="gentle_reminder",
                                  text=f"{rule_name} for {invoice_ref}"),
    )


@pytest.fixture(name="make_followup")
def make_followup_fixture():
    return make_followup
