"""Nudge eligibility: should an overdue invoice be nudged right now, and when next.

Pure functions over (invoice, policy, now). Day math is asymmetric:
days overdue round up (any partial day counts) while days since the last
nudge round down (a full interval must elapse before repeating).

The business-hours and weekday gates read the clock in ``gate_tz``. ``None``
means the server process's local zone, which is what the scheduler uses unless
``[scheduler] use_user_timezone`` is enabled.
"""

import logging
import math
from datetime import datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo

from .models import PENDING, Invoice, Policy

logger = logging.getLogger("nudgeflow.eligibility")

DAY = timedelta(days=1)


def days_overdue(due_date: datetime, now: datetime) -> int:
    """Whole days past due, rounded up."""
    return math.ceil((now - due_date) / DAY)


def days_since(moment: datetime, now: datetime) -> int:
    """Whole days elapsed since ``moment``, rounded down."""
    return math.floor((now - moment) / DAY)


def resolve_timezone(name: str) -> tzinfo:
    """ZoneInfo for a user's timezone, UTC if the name is unknown."""
    try:
        return ZoneInfo(name)
    except Exception:
        logger.warning("Unknown timezone %r, using UTC", name)
        return ZoneInfo("UTC")


def _policy_usable(policy: Policy) -> bool:
    problems = policy.validate()
    if problems:
        logger.warning(
            "Invalid nudge policy for user %s, not nudging: %s",
            policy.user_id, "; ".join(problems),
        )
        return False
    return True


def within_send_window(policy: Policy, now: datetime, gate_tz: tzinfo | None = None) -> bool:
    """Business-hours and weekday gates. Both only apply when enabled."""
    local = now.astimezone(gate_tz)

    if policy.business_hours_only:
        if not policy.business_start_hour <= local.hour < policy.business_end_hour:
            return False

    if policy.weekdays_only and local.weekday() >= 5:  # Saturday=5, Sunday=6
        return False

    return True


def is_nudgeable(invoice: Invoice, policy: Policy) -> bool:
    """Pending, nudge-active and automation enabled."""
    return (
        invoice.status == PENDING
        and invoice.nudge_active
        and policy.nudge_enabled
    )


def at_cap(invoice: Invoice, policy: Policy) -> bool:
    return invoice.nudge_count >= policy.max_nudges


def cadence_due(invoice: Invoice, policy: Policy, now: datetime) -> bool:
    """First nudge after the delay, later nudges every interval."""
    if invoice.nudge_count == 0:
        return days_overdue(invoice.due_date, now) >= policy.first_nudge_delay

    if invoice.last_nudge_at is None:
        # Counted nudges without a timestamp cannot be scheduled.
        return False
    return days_since(invoice.last_nudge_at, now) >= policy.nudge_interval


def should_fire(
    invoice: Invoice,
    policy: Policy,
    now: datetime,
    *,
    gate_tz: tzinfo | None = None,
) -> bool:
    """Decide whether a nudge should be sent for this invoice at ``now``."""
    if not is_nudgeable(invoice, policy):
        return False

    if not _policy_usable(policy):
        return False

    # Not overdue yet
    if now < invoice.due_date:
        return False

    if not within_send_window(policy, now, gate_tz):
        return False

    if at_cap(invoice, policy):
        return False

    return cadence_due(invoice, policy, now)


def next_eligible_time(invoice: Invoice, policy: Policy, now: datetime) -> datetime | None:
    """Projected time of the next nudge, ignoring the send-window gates.

    Returns None for invoices that will not be nudged again.
    """
    if invoice.status != PENDING or not invoice.nudge_active:
        return None

    if not _policy_usable(policy) or at_cap(invoice, policy):
        return None

    if invoice.nudge_count == 0:
        candidate = invoice.due_date + timedelta(days=policy.first_nudge_delay)
    elif invoice.last_nudge_at is not None:
        candidate = invoice.last_nudge_at + timedelta(days=policy.nudge_interval)
    else:
        return None

    return max(candidate, now)
