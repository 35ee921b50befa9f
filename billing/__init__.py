"""Billing system connectors (invoice source of truth)."""
from billing.connector import (
    BillingConnector,
    InMemoryBillingConnector,
    RESTBillingConnector,
    create_billing_connector,
)

__all__ = [
    "BillingConnector", "InMemoryBillingConnector", "RESTBillingConnector",
    "create_billing_connector",
]
