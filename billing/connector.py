"""
Billing Connector: the invoice source of truth, seen from the engine.

Two calls are all the engine needs:
  - get_invoice(company_id, invoice_ref)   → InvoiceContext (for dispatch)
  - list_open_invoices(company_id)         → [InvoiceSnapshot] (for recompute)

RESTBillingConnector talks to any HTTP billing API configured in
settings.yaml; field names are auto-detected so QuickBooks-style payloads
(``DocNumber``, ``DueDate``, ``BillEmail.Address``) and plain snake_case
payloads both work. InMemoryBillingConnector serves development and tests.
"""
from __future__ import annotations

import abc
import structlog
from datetime import date, datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import BillingConfig, get_settings
from core.errors import InvoiceLookupError
from models.schemas import InvoiceContext, InvoiceSnapshot

logger = structlog.get_logger()


def _pick(raw: dict[str, Any], *names: str, default: Any = None) -> Any:
    """First present, non-empty field; dotted names walk nested dicts."""
    for name in names:
        value: Any = raw
        for part in name.split("."):
            value = value.get(part) if isinstance(value, dict) else None
            if value is None:
                break
        if value not in (None, ""):
            return value
    return default


def _as_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def days_overdue(due: Optional[date], today: date = None) -> int:
    if due is None:
        return 0
    today = today or datetime.now(timezone.utc).date()
    return (today - due).days


class BillingConnector(abc.ABC):
    """Abstract base for all billing connectors."""

    def __init__(self, payment_link_base: str = ""):
        self.payment_link_base = payment_link_base.rstrip("/")

    @abc.abstractmethod
    async def get_invoice(self, company_id: str, invoice_ref: str) -> InvoiceContext:
        """Raise InvoiceLookupError when the invoice cannot be resolved."""
        ...

    @abc.abstractmethod
    async def list_open_invoices(self, company_id: str) -> list[InvoiceSnapshot]:
        ...

    async def close(self) -> None:
        pass

    # ── Normalization ─────────────────────────────────────────

    def normalize_context(self, raw: dict[str, Any], today: date = None) -> InvoiceContext:
        invoice_id = str(_pick(raw, "id", "Id", "invoice_id", "external_id", default=""))
        due = _as_date(_pick(raw, "due_date", "DueDate", "dueDate"))
        link = _pick(raw, "payment_link", "paymentLink", "InvoiceLink", default="")
        if not link and self.payment_link_base and invoice_id:
            link = f"{self.payment_link_base}/{invoice_id}"
        return InvoiceContext(
            id=invoice_id,
            doc_number=str(_pick(raw, "doc_number", "DocNumber", "number", default=invoice_id)),
            customer_name=str(_pick(raw, "customer_name", "CustomerRef.name", "customer.name",
                                    default="Valued Customer")),
            customer_email=str(_pick(raw, "customer_email", "BillEmail.Address", "email",
                                     "customer.email", default="")),
            customer_phone=str(_pick(raw, "customer_phone", "phone", "customer.phone",
                                     "PrimaryPhone.FreeFormNumber", default="")),
            total_amount=float(_pick(raw, "total_amount", "TotalAmt", "total", default=0) or 0),
            balance=float(_pick(raw, "balance", "Balance", default=0) or 0),
            due_date=due,
            days_overdue=days_overdue(due, today),
            payment_link=str(link),
            currency=str(_pick(raw, "currency", "CurrencyRef.value", default="USD")),
        )

    @staticmethod
    def normalize_snapshot(raw: dict[str, Any]) -> InvoiceSnapshot:
        return InvoiceSnapshot(
            external_id=str(_pick(raw, "id", "Id", "invoice_id", "external_id", default="")),
            due_date=_as_date(_pick(raw, "due_date", "DueDate", "dueDate")),
            balance=float(_pick(raw, "balance", "Balance", default=0) or 0),
            customer_id=str(_pick(raw, "customer_id", "CustomerRef.value", "customer.id", default="")),
        )


# ──────────────────────────────────────────────────────────────
#  REST
# ──────────────────────────────────────────────────────────────

class RESTBillingConnector(BillingConnector):
    """
    REST billing API connector.
    Endpoints are named in settings.yaml and may contain {company_id} /
    {invoice_id} path parameters.
    """

    def __init__(self, config: BillingConfig = None):
        self.config = config or get_settings().billing
        super().__init__(payment_link_base=self.config.payment_link_base)
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def get_invoice(self, company_id: str, invoice_ref: str) -> InvoiceContext:
        try:
            raw = await self._request(
                "GET", "get_invoice",
                path_params={"company_id": company_id, "invoice_id": invoice_ref},
            )
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 404:
                raise InvoiceLookupError(f"Invoice {invoice_ref} not found", invoice_ref) from e
            if status in (401, 403):
                raise InvoiceLookupError(f"Billing API refused access to invoice {invoice_ref}",
                                         invoice_ref, not_found=False) from e
            raise
        if isinstance(raw, dict) and isinstance(raw.get("Invoice"), dict):
            raw = raw["Invoice"]
        if not isinstance(raw, dict):
            raise InvoiceLookupError(f"Invoice {invoice_ref} not found", invoice_ref)
        return self.normalize_context(raw)

    async def list_open_invoices(self, company_id: str) -> list[InvoiceSnapshot]:
        result = await self._request(
            "GET", "list_open_invoices", path_params={"company_id": company_id},
        )
        if isinstance(result, dict):
            result = result.get("data", result.get("results", result.get("Invoice", [])))
        snapshots = []
        for raw in result or []:
            try:
                snapshots.append(self.normalize_snapshot(raw))
            except (ValueError, TypeError) as e:
                logger.warning("billing_invoice_unparseable", company_id=company_id, error=str(e))
        return snapshots

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


# ──────────────────────────────────────────────────────────────
#  In-memory (development / tests)
# ──────────────────────────────────────────────────────────────

class InMemoryBillingConnector(BillingConnector):
    """Invoices held in a dict: company_id → {invoice_ref → raw invoice}."""

    def __init__(self, invoices: dict[str, dict[str, dict[str, Any]]] = None,
                 payment_link_base: str = ""):
        super().__init__(payment_link_base=payment_link_base)
        self._invoices: dict[str, dict[str, dict[str, Any]]] = invoices or {}

    def add_invoice(self, company_id: str, raw: dict[str, Any]) -> None:
        ref = str(_pick(raw, "id", "Id", "invoice_id", "external_id"))
        self._invoices.setdefault(company_id, {})[ref] = dict(raw)

    def remove_invoice(self, company_id: str, invoice_ref: str) -> None:
        self._invoices.get(company_id, {}).pop(invoice_ref, None)

    async def get_invoice(self, company_id: str, invoice_ref: str) -> InvoiceContext:
        raw = self._invoices.get(company_id, {}).get(invoice_ref)
        if raw is None:
            raise InvoiceLookupError(f"Invoice {invoice_ref} not found", invoice_ref)
        return self.normalize_context(raw)

    async def list_open_invoices(self, company_id: str) -> list[InvoiceSnapshot]:
        snapshots = [self.normalize_snapshot(raw)
                     for raw in self._invoices.get(company_id, {}).values()]
        return [s for s in snapshots if s.balance > 0]


def create_billing_connector(config: BillingConfig = None) -> BillingConnector:
    config = config or get_settings().billing
    if config.type == "rest":
        logger.info("billing_connector_created", type="rest", base_url=config.base_url)
        return RESTBillingConnector(config)
    logger.info("billing_connector_created", type="memory")
    return InMemoryBillingConnector(payment_link_base=config.payment_link_base)
