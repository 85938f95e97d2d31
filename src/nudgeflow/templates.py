"""Nudge email templates: compiled-in defaults and placeholder rendering."""

import logging
import re
from datetime import datetime
from decimal import Decimal

from .eligibility import days_overdue
from .models import FIRM, FRIENDLY, PROFESSIONAL, Invoice, User

logger = logging.getLogger("nudgeflow.templates")

PLACEHOLDERS = (
    "clientName", "invoiceId", "amount", "dueDate",
    "daysPastDue", "businessName", "unsubscribeLink",
)

# Placeholder spellings used by templates saved before the camelCase names.
_LEGACY_NAMES = {
    "client_name": "clientName",
    "invoice_id": "invoiceId",
    "due_date": "dueDate",
    "days_past_due": "daysPastDue",
    "business_name": "businessName",
    "unsubscribe_link": "unsubscribeLink",
}

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_]+)\s*\}\}")


_FRIENDLY = [
    (
        "Friendly reminder about Invoice {{invoiceId}}",
        "Hi {{clientName}},\n\n"
        "I hope this email finds you well. I wanted to send a friendly reminder "
        "that Invoice {{invoiceId}} for {{amount}} was due on {{dueDate}}.\n\n"
        "If you've already taken care of this, please disregard this email. "
        "Otherwise, I'd appreciate if you could process the payment at your "
        "earliest convenience.\n\n"
        "Thanks so much!\n"
        "{{businessName}}",
    ),
    (
        "Following up on Invoice {{invoiceId}}",
        "Hi {{clientName}},\n\n"
        "I'm following up on Invoice {{invoiceId}} for {{amount}} which was due "
        "on {{dueDate}}.\n\n"
        "If there are any questions or concerns about this invoice, please don't "
        "hesitate to reach out. I'm here to help!\n\n"
        "Thank you for your attention to this matter.\n\n"
        "Best regards,\n"
        "{{businessName}}",
    ),
    (
        "Final reminder: Invoice {{invoiceId}} is overdue",
        "Hi {{clientName}},\n\n"
        "This is a final reminder that Invoice {{invoiceId}} for {{amount}} is "
        "now overdue (due date: {{dueDate}}).\n\n"
        "Please arrange payment as soon as possible. If you have any questions, "
        "please contact me directly.\n\n"
        "Thank you,\n"
        "{{businessName}}",
    ),
]

_PROFESSIONAL = [
    (
        "Payment Reminder: Invoice {{invoiceId}} - Due {{dueDate}}",
        "Dear {{clientName}},\n\n"
        "This is a reminder that invoice {{invoiceId}} in the amount of "
        "{{amount}} was due on {{dueDate}}.\n\n"
        "Please remit payment at your earliest convenience. If payment has "
        "already been sent, please disregard this notice.\n\n"
        "Sincerely,\n"
        "{{businessName}}",
    ),
    (
        "Second Notice: Invoice {{invoiceId}}",
        "Dear {{clientName}},\n\n"
        "Our records show that invoice {{invoiceId}} for {{amount}} remains "
        "outstanding {{daysPastDue}} days after its due date of {{dueDate}}.\n\n"
        "For any questions regarding this invoice or to discuss payment "
        "arrangements, please contact us.\n\n"
        "Sincerely,\n"
        "{{businessName}}",
    ),
    (
        "Final Notice: Invoice {{invoiceId}}",
        "Dear {{clientName}},\n\n"
        "This is a final notice that invoice {{invoiceId}} for {{amount}}, due "
        "on {{dueDate}}, is now {{daysPastDue}} days overdue.\n\n"
        "Please arrange payment promptly. Thank you for your attention to this "
        "matter.\n\n"
        "Sincerely,\n"
        "{{businessName}}",
    ),
]

_FIRM = [
    (
        "Payment Required: Invoice {{invoiceId}}",
        "Dear {{clientName}},\n\n"
        "Invoice {{invoiceId}} for {{amount}} was due on {{dueDate}} and "
        "remains unpaid.\n\n"
        "Please process payment immediately to avoid any service interruption.\n\n"
        "{{businessName}}",
    ),
    (
        "Overdue Payment: Invoice {{invoiceId}}",
        "Dear {{clientName}},\n\n"
        "Invoice {{invoiceId}} for {{amount}} is now overdue by {{daysPastDue}} "
        "days (due date: {{dueDate}}).\n\n"
        "Immediate payment is required. Please remit payment within 48 hours.\n\n"
        "{{businessName}}",
    ),
    (
        "URGENT: Final Notice for Invoice {{invoiceId}}",
        "Dear {{clientName}},\n\n"
        "This is a final notice regarding Invoice {{invoiceId}} for {{amount}} "
        "which was due on {{dueDate}}.\n\n"
        "Payment must be received immediately to avoid further action.\n\n"
        "{{businessName}}",
    ),
]

DEFAULT_TEMPLATES = {
    FRIENDLY: _FRIENDLY,
    PROFESSIONAL: _PROFESSIONAL,
    FIRM: _FIRM,
}


def default_template(tone: str, ordinal: int) -> tuple[str, str]:
    """Built-in (subject, body) for a tone and 1-based nudge ordinal.

    Ordinals past the last authored variant reuse the last one.
    """
    variants = DEFAULT_TEMPLATES.get(tone)
    if variants is None:
        logger.warning("Unknown message tone %r, using %s", tone, FRIENDLY)
        variants = DEFAULT_TEMPLATES[FRIENDLY]
    index = min(max(ordinal, 1) - 1, len(variants) - 1)
    return variants[index]


def format_amount(amount: Decimal, currency_symbol: str = "$") -> str:
    return f"{currency_symbol}{amount:,.2f}"


def unsubscribe_link(app_url: str, invoice_id: int) -> str:
    return f"{app_url.rstrip('/')}/unsubscribe?invoice={invoice_id}"


def build_context(
    invoice: Invoice,
    user: User,
    now: datetime,
    app_url: str = "http://localhost:5000",
    currency_symbol: str = "$",
) -> dict[str, str]:
    """Placeholder values for one invoice."""
    return {
        "clientName": invoice.client_name,
        "invoiceId": invoice.invoice_number,
        "amount": format_amount(invoice.amount, currency_symbol),
        "dueDate": invoice.due_date.strftime("%b %d, %Y"),
        "daysPastDue": str(max(days_overdue(invoice.due_date, now), 0)),
        "businessName": user.display_business_name,
        "unsubscribeLink": unsubscribe_link(app_url, invoice.id),
    }


def render(text: str, context: dict[str, str]) -> str:
    """Substitute ``{{name}}`` placeholders. Unknown names are left as-is."""
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        name = _LEGACY_NAMES.get(name, name)
        if name in context:
            return context[name]
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, text)


def uses_placeholder(text: str, name: str) -> bool:
    for match in _PLACEHOLDER_RE.finditer(text):
        if _LEGACY_NAMES.get(match.group(1), match.group(1)) == name:
            return True
    return False
