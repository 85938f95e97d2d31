"""Database operations for nudgeflow invoices, users and nudge logs."""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterator

from .models import (
    ACTIVE_STATUSES,
    PAID,
    PENDING,
    EmailTemplate,
    Invoice,
    NudgeLog,
    User,
)

logger = logging.getLogger("nudgeflow.db")

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_USER_FIELDS = (
    "business_name", "timezone", "message_tone", "is_pro", "subscription_tier",
    "nudge_enabled", "first_nudge_delay", "nudge_interval", "max_nudges",
    "business_hours_only", "business_start_hour", "business_end_hour",
    "weekdays_only", "from_email",
)

_INVOICE_UPDATABLE = (
    "client_name", "client_email", "invoice_number", "amount", "due_date",
    "status", "paid_at", "nudge_count", "last_nudge_at", "nudge_active",
)


def to_db_timestamp(value: datetime | None) -> str | None:
    """Serialize a datetime as a fixed-width UTC ISO string (sortable as text)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def init_db(db_path: Path) -> None:
    """Initialize database with schema."""
    with sqlite3.connect(db_path) as conn:
        conn.executescript(SCHEMA_PATH.read_text())


@contextmanager
def get_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Get database connection with row factory."""
    # timeout=30.0 waits up to 30s for locks instead of failing immediately
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


# ============================================================================
# Users
# ============================================================================


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        business_name=row["business_name"],
        timezone=row["timezone"] or "UTC",
        message_tone=row["message_tone"] or "friendly",
        is_pro=bool(row["is_pro"]),
        subscription_tier=row["subscription_tier"] or "free",
        nudge_enabled=bool(row["nudge_enabled"]),
        first_nudge_delay=row["first_nudge_delay"],
        nudge_interval=row["nudge_interval"],
        max_nudges=row["max_nudges"],
        business_hours_only=bool(row["business_hours_only"]),
        business_start_hour=row["business_start_hour"],
        business_end_hour=row["business_end_hour"],
        weekdays_only=bool(row["weekdays_only"]),
        from_email=row["from_email"],
        created_at=from_db_timestamp(row["created_at"]),
    )


def create_user(conn: sqlite3.Connection, email: str, **fields) -> int:
    """Create a user. Extra keyword arguments set policy/profile columns."""
    unknown = set(fields) - set(_USER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown user field(s): {', '.join(sorted(unknown))}")

    columns = ["email", "created_at", *fields]
    values = [email, to_db_timestamp(_utcnow()), *fields.values()]
    placeholders = ", ".join("?" for _ in columns)
    cursor = conn.execute(
        f"INSERT INTO users ({', '.join(columns)}) VALUES ({placeholders})",
        values,
    )
    return cursor.lastrowid


def get_user(conn: sqlite3.Connection, user_id: int) -> User | None:
    cursor = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
    row = cursor.fetchone()
    return _row_to_user(row) if row else None


def get_user_by_email(conn: sqlite3.Connection, email: str) -> User | None:
    cursor = conn.execute(
        "SELECT * FROM users WHERE lower(email) = lower(?)", (email,),
    )
    row = cursor.fetchone()
    return _row_to_user(row) if row else None


def update_user(conn: sqlite3.Connection, user_id: int, **fields) -> User | None:
    """Update profile/policy columns on a user row."""
    unknown = set(fields) - set(_USER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown user field(s): {', '.join(sorted(unknown))}")
    if fields:
        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn.execute(
            f"UPDATE users SET {assignments} WHERE id = ?",
            (*fields.values(), user_id),
        )
    return get_user(conn, user_id)


# ============================================================================
# Invoices
# ============================================================================


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        user_id=row["user_id"],
        client_name=row["client_name"],
        client_email=row["client_email"],
        invoice_number=row["invoice_number"],
        amount=Decimal(row["amount"]),
        due_date=from_db_timestamp(row["due_date"]),
        status=row["status"],
        nudge_count=row["nudge_count"] or 0,
        last_nudge_at=from_db_timestamp(row["last_nudge_at"]),
        nudge_active=bool(row["nudge_active"]),
        paid_at=from_db_timestamp(row["paid_at"]),
        created_at=from_db_timestamp(row["created_at"]),
    )


def create_invoice(
    conn: sqlite3.Connection,
    user_id: int,
    client_name: str,
    client_email: str,
    invoice_number: str,
    amount: Decimal | str | int,
    due_date: datetime,
    created_at: datetime | None = None,
) -> int:
    created = to_db_timestamp(created_at or _utcnow())
    cursor = conn.execute(
        """
        INSERT INTO invoices (
            user_id, client_name, client_email, invoice_number, amount,
            due_date, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id, client_name, client_email, invoice_number,
            str(Decimal(str(amount))), to_db_timestamp(due_date), created, created,
        ),
    )
    return cursor.lastrowid


def get_invoice(conn: sqlite3.Connection, invoice_id: int) -> Invoice | None:
    cursor = conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,))
    row = cursor.fetchone()
    return _row_to_invoice(row) if row else None


def list_invoices_for_user(conn: sqlite3.Connection, user_id: int) -> list[Invoice]:
    cursor = conn.execute(
        "SELECT * FROM invoices WHERE user_id = ? ORDER BY created_at DESC, id DESC",
        (user_id,),
    )
    return [_row_to_invoice(row) for row in cursor.fetchall()]


def list_active_invoices_for_user(conn: sqlite3.Connection, user_id: int) -> list[Invoice]:
    """Invoices counted against the tier quota, oldest first."""
    placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
    cursor = conn.execute(
        f"""
        SELECT * FROM invoices
        WHERE user_id = ? AND status IN ({placeholders})
        ORDER BY created_at ASC, id ASC
        """,
        (user_id, *ACTIVE_STATUSES),
    )
    return [_row_to_invoice(row) for row in cursor.fetchall()]


def list_overdue_active(conn: sqlite3.Connection, now: datetime) -> list[Invoice]:
    """Pending, nudge-active invoices whose due date has passed."""
    cursor = conn.execute(
        """
        SELECT * FROM invoices
        WHERE due_date < ? AND status = ? AND nudge_active = 1
        ORDER BY due_date ASC, id ASC
        """,
        (to_db_timestamp(now), PENDING),
    )
    return [_row_to_invoice(row) for row in cursor.fetchall()]


def update_invoice(conn: sqlite3.Connection, invoice_id: int, **fields) -> Invoice | None:
    """Apply a partial update and return the refreshed invoice."""
    unknown = set(fields) - set(_INVOICE_UPDATABLE)
    if unknown:
        raise ValueError(f"Unknown invoice field(s): {', '.join(sorted(unknown))}")

    values = []
    for name, value in fields.items():
        if isinstance(value, datetime):
            value = to_db_timestamp(value)
        elif isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, bool):
            value = int(value)
        values.append(value)

    if fields:
        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn.execute(
            f"UPDATE invoices SET {assignments}, updated_at = ? WHERE id = ?",
            (*values, to_db_timestamp(_utcnow()), invoice_id),
        )
    return get_invoice(conn, invoice_id)


def record_nudge(
    conn: sqlite3.Connection,
    invoice_id: int,
    expected_count: int,
    sent_at: datetime,
    deactivate: bool = False,
) -> bool:
    """Advance nudge counters if nobody else has since the invoice was read.

    Returns False when the row was not updated (count moved or invoice gone).
    """
    cursor = conn.execute(
        """
        UPDATE invoices
        SET nudge_count = nudge_count + 1,
            last_nudge_at = ?,
            nudge_active = CASE WHEN ? THEN 0 ELSE nudge_active END,
            updated_at = ?
        WHERE id = ? AND nudge_count = ?
        """,
        (
            to_db_timestamp(sent_at), int(deactivate), to_db_timestamp(_utcnow()),
            invoice_id, expected_count,
        ),
    )
    return cursor.rowcount == 1


def mark_invoice_paid(
    conn: sqlite3.Connection, invoice_id: int, paid_at: datetime | None = None,
) -> Invoice | None:
    """Mark an invoice paid. Paid is terminal for nudging."""
    return update_invoice(
        conn, invoice_id,
        status=PAID,
        paid_at=paid_at or _utcnow(),
        nudge_active=False,
    )


def unsubscribe_invoice(conn: sqlite3.Connection, invoice_id: int) -> Invoice | None:
    """Client opt-out: stop nudges for this invoice."""
    return update_invoice(conn, invoice_id, nudge_active=False)


def get_invoice_stats(conn: sqlite3.Connection, user_id: int, now: datetime) -> dict:
    """Dashboard totals for a user's invoices."""
    invoices = list_invoices_for_user(conn, user_id)
    paid = [inv for inv in invoices if inv.status == PAID]
    overdue = [
        inv for inv in invoices
        if inv.status == "overdue" or (inv.status == PENDING and inv.due_date < now)
    ]
    return {
        "total": len(invoices),
        "paid": len(paid),
        "overdue": len(overdue),
        "total_value": sum((inv.amount for inv in invoices), Decimal("0")),
        "paid_value": sum((inv.amount for inv in paid), Decimal("0")),
    }


# ============================================================================
# Nudge logs
# ============================================================================


def _row_to_nudge_log(row: sqlite3.Row) -> NudgeLog:
    return NudgeLog(
        id=row["id"],
        invoice_id=row["invoice_id"],
        email_subject=row["email_subject"],
        email_body=row["email_body"],
        sent_at=from_db_timestamp(row["sent_at"]),
        opened=bool(row["opened"]),
        clicked=bool(row["clicked"]),
    )


def append_nudge_log(
    conn: sqlite3.Connection,
    invoice_id: int,
    subject: str,
    body: str,
    sent_at: datetime,
) -> NudgeLog:
    cursor = conn.execute(
        """
        INSERT INTO nudge_logs (invoice_id, email_subject, email_body, sent_at)
        VALUES (?, ?, ?, ?)
        """,
        (invoice_id, subject, body, to_db_timestamp(sent_at)),
    )
    return NudgeLog(
        id=cursor.lastrowid,
        invoice_id=invoice_id,
        email_subject=subject,
        email_body=body,
        sent_at=sent_at,
    )


def get_nudge_logs(conn: sqlite3.Connection, invoice_id: int) -> list[NudgeLog]:
    """Nudge history for an invoice, newest first."""
    cursor = conn.execute(
        "SELECT * FROM nudge_logs WHERE invoice_id = ? ORDER BY sent_at DESC, id DESC",
        (invoice_id,),
    )
    return [_row_to_nudge_log(row) for row in cursor.fetchall()]


# ============================================================================
# Email templates
# ============================================================================


def _row_to_template(row: sqlite3.Row) -> EmailTemplate:
    return EmailTemplate(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        tone=row["tone"],
        nudge_number=row["nudge_number"],
        subject=row["subject"],
        body=row["body"],
        is_default=bool(row["is_default"]),
    )


def create_email_template(
    conn: sqlite3.Connection,
    user_id: int,
    tone: str,
    subject: str,
    body: str,
    nudge_number: int = 1,
    name: str = "",
    is_default: bool = False,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO email_templates (
            user_id, name, tone, nudge_number, subject, body, is_default, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id, name or f"{tone.title()} Reminder - Nudge {nudge_number}",
            tone, nudge_number, subject, body, int(is_default),
            to_db_timestamp(_utcnow()),
        ),
    )
    return cursor.lastrowid


def get_email_template(
    conn: sqlite3.Connection, user_id: int, tone: str, ordinal: int,
) -> EmailTemplate | None:
    """Pick the user's template for a tone and nudge ordinal.

    Preference: exact ordinal, then the highest ordinal below it, then the
    lowest ordinal above it.
    """
    cursor = conn.execute(
        """
        SELECT * FROM email_templates
        WHERE user_id = ? AND tone = ?
        ORDER BY
            CASE WHEN nudge_number <= ? THEN 0 ELSE 1 END,
            CASE WHEN nudge_number <= ? THEN -nudge_number ELSE nudge_number END,
            id
        LIMIT 1
        """,
        (user_id, tone, ordinal, ordinal),
    )
    row = cursor.fetchone()
    return _row_to_template(row) if row else None


def list_email_templates(conn: sqlite3.Connection, user_id: int) -> list[EmailTemplate]:
    cursor = conn.execute(
        "SELECT * FROM email_templates WHERE user_id = ? ORDER BY tone, nudge_number, id",
        (user_id,),
    )
    return [_row_to_template(row) for row in cursor.fetchall()]
