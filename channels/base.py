"""
Channel Adapters: Base infrastructure for all follow-up channels.

Provides:
- TokenBucketRateLimiter: async token bucket with configurable burst
- ChannelMetrics: per-channel send/fail/latency tracking
- ChannelAdapter: abstract base wrapping every send with recipient
  resolution, rate limiting, error classification, and metrics
- ChannelRegistry: adapter lookup resolved once at construction, with a
  coverage check against the channels the rules can produce
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Iterable, Optional

import httpx
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from core.errors import (
    DispatchError, PermanentDispatchError, TransientDispatchError, ValidationError,
)
from models.schemas import ChannelType, DeliveryContext, DeliveryReceipt, InvoiceContext

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """Refills ``rate`` tokens per second up to ``burst``; one token per send."""

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = max(float(rate), 0.001)
        self.burst = burst
        self._tokens = float(burst)
        self._stamp = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        """Wait for a token; False if none frees up within ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                wait = self._take()
            if wait == 0.0:
                return True
            if time.monotonic() + wait > deadline:
                return False
            await asyncio.sleep(wait)

    def _take(self) -> float:
        """Consume a token and return 0.0, or return the seconds until one exists."""
        now = time.monotonic()
        self._tokens = min(float(self.burst), self._tokens + (now - self._stamp) * self.rate)
        self._stamp = now
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        return (1.0 - self._tokens) / self.rate


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure, and latency metrics."""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.sent: int = 0
        self.failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float):
        self.sent += 1
        self._latencies.append(latency_ms)
        del self._latencies[:-500]

    def record_failure(self, error: str):
        self.failed += 1
        self._errors.append(error)
        del self._errors[:-10]

    def to_dict(self) -> dict[str, Any]:
        avg = sum(self._latencies) / len(self._latencies) if self._latencies else 0.0
        return {
            "channel": self.channel.value,
            "sent": self.sent,
            "failed": self.failed,
            "avg_latency_ms": round(avg, 1),
            "recent_errors": list(self._errors),
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER: Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement ``recipient`` and ``_do_send``. ``send`` is the only
    entry point the processor uses; it always returns a DeliveryReceipt or
    raises a DispatchError subclass.
    """

    channel_type: ChannelType

    def __init__(self, rate_limiter: TokenBucketRateLimiter = None):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._rate_limiter = rate_limiter
        self._metrics = ChannelMetrics(self.channel_type)
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = dict(config or {})
        rate = self._config.get("rate_per_second")
        if rate and self._rate_limiter is None:
            self._rate_limiter = TokenBucketRateLimiter(
                rate=float(rate), burst=int(self._config.get("burst", rate)),
            )
        self._initialized = True

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    def recipient(self, invoice: InvoiceContext) -> Optional[str]:
        """Channel address for the invoice's customer, or None."""
        ...

    @abc.abstractmethod
    async def _do_send(self, recipient: str, context: DeliveryContext) -> DeliveryReceipt:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send(self, context: DeliveryContext) -> DeliveryReceipt:
        channel = self.channel_type.value
        recipient = self.recipient(context.invoice)
        if not recipient:
            self._metrics.record_failure("no_recipient")
            raise PermanentDispatchError("No valid customer contact information", channel)

        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            self._metrics.record_failure("rate_limited")
            raise TransientDispatchError(f"Rate limit exceeded for {channel}", channel)

        start = time.monotonic()
        try:
            receipt = await self._do_send(recipient, context)
        except DispatchError as e:
            self._metrics.record_failure(str(e))
            raise
        except httpx.HTTPStatusError as e:
            self._metrics.record_failure(str(e))
            status = e.response.status_code
            if status == 429 or status >= 500:
                raise TransientDispatchError(f"{channel} provider error {status}", channel) from e
            raise PermanentDispatchError(f"{channel} provider rejected message ({status})", channel) from e
        except httpx.HTTPError as e:
            self._metrics.record_failure(str(e))
            raise TransientDispatchError(f"{channel} transport error: {e}", channel) from e

        latency = (time.monotonic() - start) * 1000
        self._metrics.record_send(latency)
        logger.info("channel_message_sent",
                    channel=channel,
                    followup_id=context.followup.id,
                    recipient=recipient,
                    message_id=receipt.message_id,
                    status=receipt.status,
                    latency_ms=round(latency, 1))
        return receipt

    # ── HTTP transport ────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {}
            api_key = self._config.get("api_key")
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=float(self._config.get("timeout", 15.0)),
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(url, json=payload)
        response.raise_for_status()
        return response.json() if response.content else {}

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self, adapters: Iterable[ChannelAdapter] = ()):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(ChannelType(channel_type))

    def require(self, channel_type: ChannelType) -> ChannelAdapter:
        adapter = self.get(channel_type)
        if adapter is None:
            raise PermanentDispatchError(f"Unknown follow-up type: {channel_type}", str(channel_type))
        return adapter

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    def ensure_coverage(self, channels: Iterable[ChannelType]) -> None:
        """Fail fast when a rule can produce a channel nobody handles."""
        missing = sorted({ChannelType(c).value for c in channels} - {c.value for c in self._adapters})
        if missing:
            raise ValidationError(f"No channel adapter registered for: {', '.join(missing)}",
                                  field="channel")

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            ch_cfg = configs.get(ch.value, {})
            # ChannelConfig dataclass → dict so adapters can call .get()
            if hasattr(ch_cfg, "credentials"):
                ch_cfg = ch_cfg.credentials
            await adapter.initialize(ch_cfg)

    async def shutdown_all(self):
        for ch, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.error("channel_shutdown_failed", channel=ch.value, error=str(e))
