"""Repository seam between the scheduling core and SQLite.

The scheduler, projector and dispatcher only talk to a store object; tests can
pass any object with the same methods.
"""

import logging
import sqlite3
from datetime import datetime

from . import db
from .config import BillingConfig
from .models import EmailTemplate, Invoice, NudgeLog, Policy, User

logger = logging.getLogger("nudgeflow.store")


def policy_from_user(user: User, billing: BillingConfig) -> Policy:
    """Build the immutable nudge policy from a user row and tier limits."""
    tier_cap = billing.max_nudges_for(user.subscription_tier, user.is_pro)
    max_nudges = user.max_nudges if user.max_nudges is not None else tier_cap
    return Policy(
        user_id=user.id,
        nudge_enabled=user.nudge_enabled,
        first_nudge_delay=user.first_nudge_delay,
        nudge_interval=user.nudge_interval,
        max_nudges=max_nudges,
        business_hours_only=user.business_hours_only,
        business_start_hour=user.business_start_hour,
        business_end_hour=user.business_end_hour,
        weekdays_only=user.weekdays_only,
        timezone=user.timezone,
        message_tone=user.message_tone,
        subscription_tier=user.subscription_tier,
        is_pro=user.is_pro,
        from_email=user.from_email,
    )


class NudgeStore:
    """Invoice, user/policy, nudge log and template repository over one connection."""

    def __init__(self, conn: sqlite3.Connection, billing: BillingConfig | None = None):
        self.conn = conn
        self.billing = billing or BillingConfig()

    # Invoices

    def list_overdue_active(self, now: datetime) -> list[Invoice]:
        return db.list_overdue_active(self.conn, now)

    def get_invoice(self, invoice_id: int) -> Invoice | None:
        return db.get_invoice(self.conn, invoice_id)

    def update_invoice(self, invoice_id: int, **fields) -> Invoice | None:
        invoice = db.update_invoice(self.conn, invoice_id, **fields)
        self.conn.commit()
        return invoice

    def list_invoices_for_user(self, user_id: int) -> list[Invoice]:
        return db.list_invoices_for_user(self.conn, user_id)

    def list_active_invoices_for_user(self, user_id: int) -> list[Invoice]:
        return db.list_active_invoices_for_user(self.conn, user_id)

    def record_sent_nudge(
        self,
        invoice: Invoice,
        subject: str,
        body: str,
        sent_at: datetime,
        deactivate: bool = False,
    ) -> NudgeLog | None:
        """Append the log row and advance counters in one transaction.

        Returns None if the invoice's nudge_count moved since it was read.
        """
        try:
            if not db.record_nudge(
                self.conn, invoice.id, invoice.nudge_count, sent_at, deactivate,
            ):
                self.conn.rollback()
                return None
            entry = db.append_nudge_log(self.conn, invoice.id, subject, body, sent_at)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return entry

    # Users / policies

    def get_user(self, user_id: int) -> User | None:
        return db.get_user(self.conn, user_id)

    def get_policy(self, user_id: int) -> Policy | None:
        user = db.get_user(self.conn, user_id)
        if user is None:
            return None
        return policy_from_user(user, self.billing)

    # Nudge logs

    def get_nudge_logs(self, invoice_id: int) -> list[NudgeLog]:
        return db.get_nudge_logs(self.conn, invoice_id)

    # Templates

    def get_template(self, user_id: int, tone: str, ordinal: int) -> EmailTemplate | None:
        return db.get_email_template(self.conn, user_id, tone, ordinal)
