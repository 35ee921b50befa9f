"""
Error taxonomy for the FollowUp engine.

    EngineError
    ├── ValidationError          bad rule / cron / channel configuration
    ├── DispatchError            a single follow-up could not be delivered
    │   ├── TransientDispatchError   network, timeout, provider 5xx
    │   └── PermanentDispatchError   no recipient, unknown channel
    ├── InvoiceLookupError       invoice missing or billing auth refused
    ├── StoreError               persistence failure for one operation
    ├── BrokerUnavailable        durable queue backend unreachable
    └── UnknownQueueError        queue name not defined
"""
from __future__ import annotations


class EngineError(Exception):
    """Base exception for all engine operations."""


class ValidationError(EngineError):
    def __init__(self, message: str, field: str = ""):
        self.field = field
        super().__init__(message)


class DispatchError(EngineError):
    """A follow-up dispatch failed. Always terminal for the follow-up."""

    retryable = False

    def __init__(self, message: str, channel: str = ""):
        self.channel = channel
        super().__init__(message)


class TransientDispatchError(DispatchError):
    retryable = True


class PermanentDispatchError(DispatchError):
    retryable = False


class InvoiceLookupError(EngineError):
    def __init__(self, message: str, invoice_ref: str = "", not_found: bool = True):
        self.invoice_ref = invoice_ref
        self.not_found = not_found
        super().__init__(message)


class StoreError(EngineError):
    pass


class BrokerUnavailable(EngineError):
    def __init__(self, url: str, reason: str = ""):
        self.url = url
        self.reason = reason
        super().__init__(f"Queue broker unavailable at {url}: {reason}" if reason
                         else f"Queue broker unavailable at {url}")


class UnknownQueueError(EngineError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Invalid queue name: {name}")
