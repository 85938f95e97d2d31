"""Upcoming-nudge projection for dashboard display. Read-only."""

from datetime import datetime

from .eligibility import next_eligible_time
from .models import Invoice, Policy, UpcomingNudge


def upcoming_nudges(
    invoices: list[Invoice], policy: Policy, now: datetime,
) -> list[UpcomingNudge]:
    """Next nudge time and ordinal for each invoice that will be nudged again.

    Sorted soonest first. Send-window gates are not applied; the scheduler
    checks them at tick time.
    """
    upcoming = []
    for invoice in invoices:
        next_at = next_eligible_time(invoice, policy, now)
        if next_at is None:
            continue
        upcoming.append(UpcomingNudge(
            invoice=invoice,
            next_nudge_at=next_at,
            ordinal=invoice.nudge_count + 1,
        ))

    upcoming.sort(key=lambda u: (u.next_nudge_at, u.invoice.id))
    return upcoming


def upcoming_nudges_for_user(store, user_id: int, now: datetime) -> list[UpcomingNudge]:
    """Load a user's invoices and policy from the store and project them."""
    policy = store.get_policy(user_id)
    if policy is None:
        return []
    return upcoming_nudges(store.list_invoices_for_user(user_id), policy, now)
