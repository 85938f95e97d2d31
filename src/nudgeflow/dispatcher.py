"""Nudge delivery: pick a template, render it, and hand the email to SMTP."""

import logging
import smtplib
import ssl
import time
import uuid
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, formatdate

from .config import Config, EmailConfig
from .models import DispatchResult, Invoice, User
from .templates import (
    build_context,
    default_template,
    render,
    unsubscribe_link,
    uses_placeholder,
)

logger = logging.getLogger("nudgeflow.dispatcher")


def _sanitize_header(value: str) -> str:
    """Strip newlines from header values to prevent injection."""
    return value.replace("\r", " ").replace("\n", " ").strip()


def _generate_message_id(domain: str) -> str:
    return f"<{uuid.uuid4().hex}@{domain}>"


class SmtpTransport:
    """Sends prepared messages through the configured SMTP server."""

    def __init__(self, config: EmailConfig):
        self.config = config

    def _send_once(self, msg: EmailMessage) -> None:
        config = self.config
        # Port 465 uses implicit TLS, anything else STARTTLS
        if config.smtp_port == 465:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(
                config.smtp_host, config.smtp_port, context=context, timeout=config.timeout,
            ) as server:
                if config.smtp_user:
                    server.login(config.smtp_user, config.smtp_password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=config.timeout) as server:
                server.starttls()
                if config.smtp_user:
                    server.login(config.smtp_user, config.smtp_password)
                server.send_message(msg)

    def send(self, msg: EmailMessage) -> None:
        """Send with a bounded number of retries. Raises the last error."""
        attempts = 1 + max(self.config.max_retries, 0)
        for attempt in range(1, attempts + 1):
            try:
                self._send_once(msg)
                return
            except smtplib.SMTPRecipientsRefused:
                raise  # retrying will not help
            except (smtplib.SMTPException, OSError) as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    "SMTP send to %s failed (attempt %d/%d): %s",
                    msg["To"], attempt, attempts, e,
                )
                time.sleep(min(2 ** (attempt - 1), 10))


class EmailDispatcher:
    """Formats a nudge for an invoice and sends it to the client."""

    def __init__(self, config: Config, store, transport=None):
        self.config = config
        self.store = store
        self.transport = transport or SmtpTransport(config.email)

    def resolve_template(self, user: User, ordinal: int) -> tuple[str, str]:
        """User's custom template for their tone, else the built-in default."""
        template = self.store.get_template(user.id, user.message_tone, ordinal)
        if template:
            return template.subject, template.body
        return default_template(user.message_tone, ordinal)

    def build_message(
        self, invoice: Invoice, user: User, subject: str, body: str,
    ) -> EmailMessage:
        email_config = self.config.email
        from_address = user.from_email or email_config.effective_from_address
        from_name = email_config.from_name or user.display_business_name
        domain = from_address.split("@")[-1] if "@" in from_address else "localhost"

        msg = EmailMessage()
        msg["To"] = invoice.client_email
        msg["From"] = formataddr((_sanitize_header(from_name), from_address))
        msg["Reply-To"] = user.email
        msg["Subject"] = _sanitize_header(subject)
        msg["Date"] = formatdate(localtime=True)
        msg["Message-ID"] = _generate_message_id(domain)

        link = unsubscribe_link(email_config.app_url, invoice.id)
        msg["List-Unsubscribe"] = f"<{link}>"

        content = body
        if not uses_placeholder(body, "unsubscribeLink") and link not in body:
            content = (
                f"{body}\n\n---\n"
                f"This email was sent by {user.display_business_name}.\n"
                f"Unsubscribe from these reminders: {link}"
            )
        msg.set_content(content, subtype="plain")
        return msg

    def send(
        self,
        invoice: Invoice,
        user: User,
        ordinal: int,
        now: datetime | None = None,
    ) -> DispatchResult:
        """Render and send nudge number ``ordinal``. Never raises on delivery errors."""
        now = now or datetime.now(timezone.utc)

        if not self.config.email.enabled:
            return DispatchResult(ok=False, error="email delivery disabled")

        try:
            subject_template, body_template = self.resolve_template(user, ordinal)
            context = build_context(
                invoice, user, now,
                app_url=self.config.email.app_url,
                currency_symbol=self.config.email.currency_symbol,
            )
            subject = render(subject_template, context)
            body = render(body_template, context)
            msg = self.build_message(invoice, user, subject, body)
        except Exception as e:
            logger.error("Failed to build nudge for invoice %s: %s", invoice.id, e)
            return DispatchResult(ok=False, error=str(e))

        try:
            self.transport.send(msg)
        except Exception as e:
            logger.error(
                "Failed to send nudge %d for invoice %s to %s: %s",
                ordinal, invoice.invoice_number, invoice.client_email, e,
            )
            return DispatchResult(ok=False, subject=subject, body=body, error=str(e))

        logger.info(
            "Nudge %d sent for invoice %s to %s",
            ordinal, invoice.invoice_number, invoice.client_email,
        )
        return DispatchResult(
            ok=True, subject=subject, body=body, recipients=[invoice.client_email],
        )
