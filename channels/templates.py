"""
Message templates for invoice follow-ups.

Templates use ``{{variable}}`` placeholders filled from
InvoiceContext.template_vars() plus ``companyName``. Unknown placeholders are
left as-is so a typo is visible in the sent message rather than silently
blanked.
"""
from __future__ import annotations

import re
from typing import Mapping, Optional

from models.schemas import ChannelType

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def template_for_days_overdue(days_overdue: int) -> str:
    """Escalation tier by how late the invoice is."""
    if days_overdue < 0:
        return "pre_due_reminder"
    if days_overdue == 0:
        return "due_date_notice"
    if days_overdue >= 28:
        return "final_notice"
    if days_overdue >= 21:
        return "fourth_reminder"
    if days_overdue >= 14:
        return "firm_reminder"
    if days_overdue >= 10:
        return "second_reminder"
    return "gentle_reminder"


def render(template: str, variables: Mapping[str, str]) -> str:
    def replace(match: re.Match) -> str:
        key = match.group(1)
        return str(variables[key]) if key in variables else match.group(0)
    return _PLACEHOLDER.sub(replace, template)


# ──────────────────────────────────────────────────────────────
#  Email: (subject, body)
# ──────────────────────────────────────────────────────────────

EMAIL_TEMPLATES: dict[str, tuple[str, str]] = {
    "pre_due_reminder": (
        "Invoice {{invoiceNumber}} due tomorrow",
        "Hi {{customerName}},\n\n"
        "A quick heads-up that invoice {{invoiceNumber}} for {{currency}} {{amount}} "
        "is due on {{dueDate}}.\n\nPay online: {{paymentLink}}\n\n{{companyName}}",
    ),
    "due_date_notice": (
        "Invoice {{invoiceNumber}} - Payment Due",
        "Hi {{customerName}},\n\n"
        "Invoice {{invoiceNumber}} for {{currency}} {{amount}} is due today ({{dueDate}}).\n\n"
        "Pay online: {{paymentLink}}\n\n{{companyName}}",
    ),
    "gentle_reminder": (
        "Invoice {{invoiceNumber}} - Payment Due",
        "Hi {{customerName}},\n\n"
        "I wanted to reach out regarding invoice {{invoiceNumber}} which was due on "
        "{{dueDate}}. The amount due is {{currency}} {{amount}}.\n\n"
        "Pay online: {{paymentLink}}\n\nThanks,\n{{companyName}}",
    ),
    "second_reminder": (
        "Re: Invoice {{invoiceNumber}} - Past Due",
        "Hi {{customerName}},\n\n"
        "I'm following up on invoice {{invoiceNumber}}. The payment is now "
        "{{daysOverdue}} days past due.\n\nAmount due: {{currency}} {{amount}}\n"
        "Original due date: {{dueDate}}\n\nPay online: {{paymentLink}}\n\n{{companyName}}",
    ),
    "firm_reminder": (
        "URGENT: Invoice {{invoiceNumber}} - Immediate Action Required",
        "{{customerName}},\n\n"
        "Invoice {{invoiceNumber}} is {{daysOverdue}} days past due and requires "
        "immediate attention.\n\nAmount due: {{currency}} {{amount}}\n\n"
        "Pay online: {{paymentLink}}\n\n{{companyName}}",
    ),
    "fourth_reminder": (
        "Invoice {{invoiceNumber}} - {{daysOverdue}} days overdue",
        "{{customerName}},\n\n"
        "We still have not received payment for invoice {{invoiceNumber}} "
        "({{currency}} {{amount}}, due {{dueDate}}). Please pay now or contact us "
        "to arrange a payment plan.\n\nPay online: {{paymentLink}}\n\n{{companyName}}",
    ),
    "final_notice": (
        "FINAL NOTICE: Invoice {{invoiceNumber}} - Action Required",
        "{{customerName}},\n\n"
        "Invoice {{invoiceNumber}} is now {{daysOverdue}} days past due and remains "
        "unpaid despite multiple requests. This is our final notice before the "
        "account is referred for collection.\n\nAmount due: {{currency}} {{amount}}\n\n"
        "Pay online: {{paymentLink}}\n\n{{companyName}}",
    ),
}


# ──────────────────────────────────────────────────────────────
#  SMS: single body
# ──────────────────────────────────────────────────────────────

SMS_TEMPLATES: dict[str, str] = {
    "pre_due_reminder": (
        "Hi {{customerName}}, invoice {{invoiceNumber}} for ${{amount}} is due "
        "{{dueDate}}. Pay: {{paymentLink}} - {{companyName}}"
    ),
    "due_date_notice": (
        "Hi {{customerName}}, invoice {{invoiceNumber}} for ${{amount}} is due today. "
        "Pay: {{paymentLink}} - {{companyName}}"
    ),
    "gentle_reminder": (
        "Hi {{customerName}}, this is a friendly reminder that your invoice "
        "{{invoiceNumber}} for ${{amount}} is now {{daysOverdue}} days overdue. "
        "Please remit payment at your earliest convenience. Thank you! - {{companyName}}"
    ),
    "second_reminder": (
        "{{customerName}}, this is your second notice for overdue invoice "
        "{{invoiceNumber}} (${{amount}}, {{daysOverdue}} days past due). "
        "Please pay immediately. - {{companyName}}"
    ),
    "firm_reminder": (
        "URGENT: {{customerName}}, invoice {{invoiceNumber}} (${{amount}}) is "
        "{{daysOverdue}} days overdue. Payment required within 48 hours. - {{companyName}}"
    ),
    "fourth_reminder": (
        "{{customerName}}, invoice {{invoiceNumber}} (${{amount}}) is still unpaid "
        "after {{daysOverdue}} days. Pay: {{paymentLink}} - {{companyName}}"
    ),
    "final_notice": (
        "FINAL NOTICE: {{customerName}}, invoice {{invoiceNumber}} (${{amount}}, "
        "{{daysOverdue}} days overdue) will be referred for collection. "
        "Contact us now. - {{companyName}}"
    ),
}


CALL_SCRIPT = (
    "Call {{customerName}} about invoice {{invoiceNumber}}: {{currency}} {{amount}}, "
    "{{daysOverdue}} days overdue (due {{dueDate}}). Offer payment link {{paymentLink}}."
)


def resolve_template_id(channel: ChannelType, requested: str, days_overdue: int) -> str:
    """The rule's template wins when the channel knows it; otherwise the tier."""
    known = EMAIL_TEMPLATES if channel == ChannelType.EMAIL else SMS_TEMPLATES
    if channel == ChannelType.CALL:
        return requested or "phone_script"
    if requested and requested in known:
        return requested
    return template_for_days_overdue(days_overdue)


def render_message(channel: ChannelType, template_id: str,
                   variables: Mapping[str, str]) -> tuple[str, str]:
    """Return (subject, body) for a channel; subject is empty outside email."""
    if channel == ChannelType.EMAIL:
        subject, body = EMAIL_TEMPLATES.get(template_id, EMAIL_TEMPLATES["gentle_reminder"])
        return render(subject, variables), render(body, variables)
    if channel == ChannelType.SMS:
        body = SMS_TEMPLATES.get(template_id, SMS_TEMPLATES["gentle_reminder"])
        return "", render(body, variables)
    return "", render(CALL_SCRIPT, variables)


def format_phone_number(phone: Optional[str]) -> Optional[str]:
    """Normalize to E.164; 10-digit numbers are taken as North American."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if not digits:
        return None
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"
