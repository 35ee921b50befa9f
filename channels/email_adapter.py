"""
Email Channel Adapter: transactional email over an HTTP provider API.

When ``api_url`` is configured the rendered message is POSTed as JSON
(SendGrid/Postmark style). Without it the send is simulated and logged,
which keeps development and tests free of provider credentials.
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any, Optional

from channels.base import ChannelAdapter
from models.schemas import ChannelType, DeliveryContext, DeliveryReceipt, InvoiceContext

logger = structlog.get_logger()

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class EmailAdapter(ChannelAdapter):
    """Email adapter with a suppression list for bounced or unsubscribed addresses."""

    channel_type = ChannelType.EMAIL

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._suppressed: set[str] = set()

    def recipient(self, invoice: InvoiceContext) -> Optional[str]:
        email = (invoice.customer_email or "").strip().lower()
        if not email or not _EMAIL_RE.match(email) or email in self._suppressed:
            return None
        return email

    def suppress(self, email: str) -> None:
        self._suppressed.add(email.strip().lower())
        logger.info("email_suppressed", email=email)

    async def _do_send(self, recipient: str, context: DeliveryContext) -> DeliveryReceipt:
        from_address = self._config.get("from_address", "billing@example.com")
        api_url = self._config.get("api_url")
        payload: dict[str, Any] = {
            "to": recipient,
            "from": from_address,
            "subject": context.subject,
            "text": context.body,
            "custom_args": {
                "followup_id": context.followup.id,
                "invoice_ref": context.followup.invoice_ref,
                "template": context.template_id,
            },
        }

        if not api_url:
            message_id = f"<{uuid.uuid4().hex}@simulated>"
            logger.info("email_simulated", to=recipient, subject=context.subject,
                        message_id=message_id)
            return DeliveryReceipt(status="sent", channel=self.channel_type,
                                   recipient=recipient, message_id=message_id,
                                   detail={"simulated": True, "subject": context.subject})

        body = await self._post_json(api_url, payload)
        message_id = str(body.get("message_id") or body.get("id") or uuid.uuid4())
        return DeliveryReceipt(status="sent", channel=self.channel_type,
                               recipient=recipient, message_id=message_id,
                               detail={"subject": context.subject})
