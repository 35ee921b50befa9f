"""Channel adapters for all supported follow-up channels."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelMetrics,
    TokenBucketRateLimiter,
)
from channels.call_adapter import CallAdapter
from channels.email_adapter import EmailAdapter
from channels.sms_adapter import SMSAdapter


def create_channel_registry(enabled: dict = None) -> ChannelRegistry:
    """Registry with every built-in adapter, minus channels explicitly disabled."""
    enabled = enabled or {}
    registry = ChannelRegistry()
    for adapter_cls in (EmailAdapter, SMSAdapter, CallAdapter):
        cfg = enabled.get(adapter_cls.channel_type.value)
        if cfg is not None and not getattr(cfg, "enabled", True):
            continue
        registry.register(adapter_cls())
    return registry


__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelMetrics", "TokenBucketRateLimiter",
    "EmailAdapter", "SMSAdapter", "CallAdapter", "create_channel_registry",
]
