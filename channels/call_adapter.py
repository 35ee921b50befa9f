"""
Call Channel Adapter: phone follow-ups are queued for a human.

Nothing is dialled. The adapter validates the number, renders the call
script, and returns a receipt with status ``scheduled``; the receipt's
message id is the call task id collectors work from.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Optional

from channels.base import ChannelAdapter
from channels.templates import format_phone_number
from models.schemas import ChannelType, DeliveryContext, DeliveryReceipt, InvoiceContext

logger = structlog.get_logger()


class CallAdapter(ChannelAdapter):

    channel_type = ChannelType.CALL

    def recipient(self, invoice: InvoiceContext) -> Optional[str]:
        return format_phone_number(invoice.customer_phone)

    async def _do_send(self, recipient: str, context: DeliveryContext) -> DeliveryReceipt:
        task_id = f"call_{uuid.uuid4().hex[:12]}"
        logger.info("call_task_scheduled",
                    task_id=task_id,
                    phone=recipient,
                    invoice_ref=context.followup.invoice_ref)
        return DeliveryReceipt(
            status="scheduled",
            channel=self.channel_type,
            recipient=recipient,
            message_id=task_id,
            detail={"script": context.body, "manual": True},
        )
