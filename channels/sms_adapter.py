"""
SMS Channel Adapter: Twilio-style SMS messaging.

Provides:
- E.164 phone normalization
- GSM-7 vs Unicode detection for accurate segment counting
- Truncation to the configured max segment limit
- Simulated sends when no provider ``api_url`` is configured
"""
from __future__ import annotations

import uuid
import structlog
from typing import Optional

from channels.base import ChannelAdapter
from channels.templates import format_phone_number
from models.schemas import ChannelType, DeliveryContext, DeliveryReceipt, InvoiceContext

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  GSM-7 CHARACTER SET & SEGMENT COUNTING
# ══════════════════════════════════════════════════════════════

_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
_GSM7_EXTENDED = set("^{}[]~|\\€")


def _is_gsm7(text: str) -> bool:
    return all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text)


def segment_count(text: str) -> int:
    """
    GSM-7: 160 chars single / 153 per segment.
    Unicode: 70 chars single / 67 per segment.
    """
    if not text:
        return 0
    if _is_gsm7(text):
        length = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        return 1 if length <= 160 else (length + 152) // 153
    return 1 if len(text) <= 70 else (len(text) + 66) // 67


def truncate_to_segments(text: str, max_segments: int) -> str:
    if segment_count(text) <= max_segments:
        return text
    per_segment = 153 if _is_gsm7(text) else 67
    limit = per_segment * max_segments - 3
    while limit > 0 and segment_count(text[:limit] + "...") > max_segments:
        limit -= 1
    return text[:limit] + "..."


# ══════════════════════════════════════════════════════════════
#  SMS ADAPTER
# ══════════════════════════════════════════════════════════════

class SMSAdapter(ChannelAdapter):

    channel_type = ChannelType.SMS

    def recipient(self, invoice: InvoiceContext) -> Optional[str]:
        return format_phone_number(invoice.customer_phone)

    async def _do_send(self, recipient: str, context: DeliveryContext) -> DeliveryReceipt:
        max_segments = int(self._config.get("max_segments", 3))
        body = truncate_to_segments(context.body, max_segments)
        segments = segment_count(body)
        api_url = self._config.get("api_url")

        if not api_url:
            message_id = f"SM{uuid.uuid4().hex}"
            logger.info("sms_simulated", to=recipient, segments=segments, message_id=message_id)
            return DeliveryReceipt(status="sent", channel=self.channel_type,
                                   recipient=recipient, message_id=message_id,
                                   detail={"simulated": True, "segments": segments})

        result = await self._post_json(api_url, {
            "to": recipient,
            "from": self._config.get("from_number", ""),
            "body": body,
        })
        message_id = str(result.get("sid") or result.get("message_id") or uuid.uuid4())
        return DeliveryReceipt(status="sent", channel=self.channel_type,
                               recipient=recipient, message_id=message_id,
                               detail={"segments": segments})
