"""Tests for scheduler.py module."""

import logging
import os
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from nudgeflow import db
from nudgeflow.models import DispatchResult
from nudgeflow.scheduler import NudgeScheduler, next_tick_after, run_tick
from nudgeflow.store import NudgeStore

UTC = timezone.utc
NOW = datetime(2026, 3, 4, 10, 0, tzinfo=UTC)  # Wednesday


class FakeDispatcher:
    """Records sends; succeeds unless told otherwise."""

    def __init__(self, ok=True, on_send=None):
        self.ok = ok
        self.on_send = on_send
        self.calls = []

    def send(self, invoice, user, ordinal, now=None):
        self.calls.append((invoice.id, ordinal))
        if self.on_send:
            self.on_send(invoice)
        if not self.ok:
            return DispatchResult(ok=False, error="smtp down")
        return DispatchResult(
            ok=True,
            subject=f"Nudge {ordinal} for {invoice.invoice_number}",
            body=f"Hi {invoice.client_name}",
            recipients=[invoice.client_email],
        )


def _user(conn, email="owner@example.com", **fields):
    user_id = db.create_user(conn, email, business_name="Owner Co", **fields)
    conn.commit()
    return user_id


def _invoice(conn, user_id, number="INV-001", due=None, created_at=None, **updates):
    invoice_id = db.create_invoice(
        conn, user_id, "Acme Corp", "billing@acme.example", number,
        Decimal("500.00"), due or NOW - timedelta(days=2), created_at=created_at,
    )
    if updates:
        db.update_invoice(conn, invoice_id, **updates)
    conn.commit()
    return invoice_id


def _scheduler(conn, dispatcher, **kwargs):
    kwargs.setdefault("server_timezone", UTC)
    return NudgeScheduler(NudgeStore(conn), dispatcher, **kwargs)


@pytest.fixture
def server_local_zone():
    """Pin the process local timezone for the test, restoring it afterwards."""
    original = os.environ.get("TZ")

    def _pin(name):
        os.environ["TZ"] = name
        time.tzset()

    yield _pin

    if original is None:
        os.environ.pop("TZ", None)
    else:
        os.environ["TZ"] = original
    time.tzset()


class TestTick:
    def test_sends_first_nudge_and_records_it(self, db_conn):
        user_id = _user(db_conn)
        invoice_id = _invoice(db_conn, user_id)
        dispatcher = FakeDispatcher()

        results = _scheduler(db_conn, dispatcher).tick(NOW)

        assert results["sent"] == 1
        assert dispatcher.calls == [(invoice_id, 1)]
        invoice = db.get_invoice(db_conn, invoice_id)
        assert invoice.nudge_count == 1
        assert invoice.last_nudge_at == NOW
        assert invoice.nudge_active is True
        logs = db.get_nudge_logs(db_conn, invoice_id)
        assert len(logs) == 1
        assert logs[0].email_subject == "Nudge 1 for INV-001"
        assert logs[0].sent_at == NOW

    def test_repeated_tick_does_not_resend(self, db_conn):
        user_id = _user(db_conn)
        invoice_id = _invoice(db_conn, user_id)
        dispatcher = FakeDispatcher()
        scheduler = _scheduler(db_conn, dispatcher)

        scheduler.tick(NOW)
        results = scheduler.tick(NOW + timedelta(hours=1))

        assert results["sent"] == 0
        assert results["not_due"] == 1
        assert len(dispatcher.calls) == 1
        assert db.get_invoice(db_conn, invoice_id).nudge_count == 1

    def test_second_nudge_after_interval(self, db_conn):
        user_id = _user(db_conn, nudge_interval=3)
        invoice_id = _invoice(db_conn, user_id)
        dispatcher = FakeDispatcher()
        scheduler = _scheduler(db_conn, dispatcher)

        scheduler.tick(NOW)
        # Saturday and Sunday are gated; Monday is 5 days later
        scheduler.tick(NOW + timedelta(days=3))
        results = scheduler.tick(NOW + timedelta(days=5))

        assert results["sent"] == 1
        assert dispatcher.calls == [(invoice_id, 1), (invoice_id, 2)]
        assert db.get_invoice(db_conn, invoice_id).nudge_count == 2

    def test_failed_send_leaves_invoice_untouched(self, db_conn):
        user_id = _user(db_conn)
        invoice_id = _invoice(db_conn, user_id)

        results = _scheduler(db_conn, FakeDispatcher(ok=False)).tick(NOW)

        assert results["failed"] == 1
        invoice = db.get_invoice(db_conn, invoice_id)
        assert invoice.nudge_count == 0
        assert invoice.last_nudge_at is None
        assert db.get_nudge_logs(db_conn, invoice_id) == []

    def test_failed_send_retried_next_tick(self, db_conn):
        user_id = _user(db_conn)
        invoice_id = _invoice(db_conn, user_id)

        _scheduler(db_conn, FakeDispatcher(ok=False)).tick(NOW)
        results = _scheduler(db_conn, FakeDispatcher()).tick(NOW + timedelta(hours=1))

        assert results["sent"] == 1
        assert db.get_invoice(db_conn, invoice_id).nudge_count == 1

    def test_no_candidates(self, db_conn):
        results = _scheduler(db_conn, FakeDispatcher()).tick(NOW)
        assert results["candidates"] == 0
        assert results["sent"] == 0


class TestCap:
    def test_capped_invoice_deactivated_without_sending(self, db_conn):
        user_id = _user(db_conn)
        invoice_id = _invoice(
            db_conn, user_id, nudge_count=3, last_nudge_at=NOW - timedelta(days=10),
        )
        dispatcher = FakeDispatcher()

        results = _scheduler(db_conn, dispatcher).tick(NOW)

        assert results["capped"] == 1
        assert dispatcher.calls == []
        assert db.get_invoice(db_conn, invoice_id).nudge_active is False

    def test_final_nudge_deactivates_invoice(self, db_conn):
        user_id = _user(db_conn)
        invoice_id = _invoice(
            db_conn, user_id, nudge_count=2, last_nudge_at=NOW - timedelta(days=4),
        )

        results = _scheduler(db_conn, FakeDispatcher()).tick(NOW)

        assert results["sent"] == 1
        invoice = db.get_invoice(db_conn, invoice_id)
        assert invoice.nudge_count == 3
        assert invoice.nudge_active is False

    def test_pro_tier_has_higher_cap(self, db_conn):
        user_id = _user(db_conn, is_pro=True, subscription_tier="pro")
        invoice_id = _invoice(
            db_conn, user_id, nudge_count=3, last_nudge_at=NOW - timedelta(days=4),
        )

        results = _scheduler(db_conn, FakeDispatcher()).tick(NOW)

        assert results["sent"] == 1
        invoice = db.get_invoice(db_conn, invoice_id)
        assert invoice.nudge_count == 4
        assert invoice.nudge_active is True

    def test_user_override_cap(self, db_conn):
        user_id = _user(db_conn, max_nudges=1)
        invoice_id = _invoice(db_conn, user_id)

        _scheduler(db_conn, FakeDispatcher()).tick(NOW)

        invoice = db.get_invoice(db_conn, invoice_id)
        assert invoice.nudge_count == 1
        assert invoice.nudge_active is False


class TestTerminalStates:
    def test_paid_invoice_not_a_candidate(self, db_conn):
        user_id = _user(db_conn)
        invoice_id = _invoice(db_conn, user_id)
        db.mark_invoice_paid(db_conn, invoice_id, NOW - timedelta(hours=1))
        dispatcher = FakeDispatcher()

        results = _scheduler(db_conn, dispatcher).tick(NOW)

        assert results["candidates"] == 0
        assert dispatcher.calls == []

    def test_unsubscribed_invoice_not_a_candidate(self, db_conn):
        user_id = _user(db_conn)
        invoice_id = _invoice(db_conn, user_id)
        db.unsubscribe_invoice(db_conn, invoice_id)

        results = _scheduler(db_conn, FakeDispatcher()).tick(NOW)

        assert results["candidates"] == 0

    def test_not_yet_due_not_a_candidate(self, db_conn):
        user_id = _user(db_conn)
        _invoice(db_conn, user_id, due=NOW + timedelta(days=1))

        results = _scheduler(db_conn, FakeDispatcher()).tick(NOW)

        assert results["candidates"] == 0

    def test_automation_disabled(self, db_conn):
        user_id = _user(db_conn, nudge_enabled=False)
        _invoice(db_conn, user_id)
        dispatcher = FakeDispatcher()

        results = _scheduler(db_conn, dispatcher).tick(NOW)

        assert results["not_due"] == 1
        assert dispatcher.calls == []


class TestQuota:
    def test_free_user_over_quota_gets_no_nudges(self, db_conn):
        user_id = _user(db_conn)
        ids = [
            _invoice(
                db_conn, user_id, number=f"INV-{n}",
                created_at=NOW - timedelta(days=30 - n),
            )
            for n in range(4)
        ]
        before = [db.get_invoice(db_conn, invoice_id) for invoice_id in ids]
        dispatcher = FakeDispatcher()

        results = _scheduler(db_conn, dispatcher, free_invoice_quota=3).tick(NOW)

        assert results["sent"] == 0
        assert results["skipped_quota"] == 4
        assert dispatcher.calls == []
        after = [db.get_invoice(db_conn, invoice_id) for invoice_id in ids]
        assert after == before
        assert all(inv.status == "pending" and inv.nudge_active for inv in after)

    def test_free_user_at_quota_is_nudged(self, db_conn):
        user_id = _user(db_conn)
        for n in range(3):
            _invoice(db_conn, user_id, number=f"INV-{n}")

        results = _scheduler(db_conn, FakeDispatcher(), free_invoice_quota=3).tick(NOW)

        assert results["sent"] == 3
        assert results["skipped_quota"] == 0

    def test_not_yet_due_invoices_count_toward_quota(self, db_conn):
        user_id = _user(db_conn)
        _invoice(db_conn, user_id, number="INV-0")
        for n in range(1, 4):
            _invoice(db_conn, user_id, number=f"INV-{n}", due=NOW + timedelta(days=10))

        results = _scheduler(db_conn, FakeDispatcher(), free_invoice_quota=3).tick(NOW)

        assert results["candidates"] == 1
        assert results["skipped_quota"] == 1

    def test_quota_is_per_user(self, db_conn):
        busy = _user(db_conn, email="busy@example.com")
        quiet = _user(db_conn, email="quiet@example.com")
        for n in range(4):
            _invoice(db_conn, busy, number=f"B-{n}")
        quiet_invoice = _invoice(db_conn, quiet, number="Q-1")
        dispatcher = FakeDispatcher()

        results = _scheduler(db_conn, dispatcher, free_invoice_quota=3).tick(NOW)

        assert dispatcher.calls == [(quiet_invoice, 1)]
        assert results["skipped_quota"] == 4

    def test_paid_invoices_free_up_quota(self, db_conn):
        user_id = _user(db_conn)
        ids = [
            _invoice(
                db_conn, user_id, number=f"INV-{n}",
                created_at=NOW - timedelta(days=30 - n),
            )
            for n in range(4)
        ]
        db.mark_invoice_paid(db_conn, ids[0], NOW - timedelta(days=1))
        db_conn.commit()

        results = _scheduler(db_conn, FakeDispatcher(), free_invoice_quota=3).tick(NOW)

        assert results["sent"] == 3
        assert db.get_invoice(db_conn, ids[3]).nudge_count == 1

    def test_paid_tier_not_limited(self, db_conn):
        user_id = _user(db_conn, subscription_tier="pro", is_pro=True)
        for n in range(5):
            _invoice(db_conn, user_id, number=f"INV-{n}")

        results = _scheduler(db_conn, FakeDispatcher(), free_invoice_quota=3).tick(NOW)

        assert results["sent"] == 5
        assert results["skipped_quota"] == 0


class TestSendWindow:
    def test_outside_business_hours(self, db_conn):
        user_id = _user(db_conn)
        _invoice(db_conn, user_id)
        dispatcher = FakeDispatcher()

        results = _scheduler(db_conn, dispatcher).tick(NOW.replace(hour=20))

        assert results["not_due"] == 1
        assert dispatcher.calls == []

    def test_weekend(self, db_conn):
        user_id = _user(db_conn)
        _invoice(db_conn, user_id)
        saturday = datetime(2026, 3, 7, 10, 0, tzinfo=UTC)

        results = _scheduler(db_conn, FakeDispatcher()).tick(saturday)

        assert results["sent"] == 0

    def test_user_timezone_gating(self, db_conn):
        user_id = _user(db_conn, timezone="America/New_York")
        _invoice(db_conn, user_id)
        scheduler = _scheduler(db_conn, FakeDispatcher(), use_user_timezone=True)

        # 13:00 UTC is 08:00 in New York
        assert scheduler.tick(datetime(2026, 3, 4, 13, 0, tzinfo=UTC))["sent"] == 0
        assert scheduler.tick(datetime(2026, 3, 4, 14, 0, tzinfo=UTC))["sent"] == 1

    def test_server_timezone_pinned(self, db_conn):
        user_id = _user(db_conn, timezone="America/New_York")
        _invoice(db_conn, user_id)
        scheduler = _scheduler(db_conn, FakeDispatcher())

        assert scheduler.tick(datetime(2026, 3, 4, 13, 0, tzinfo=UTC))["sent"] == 1

    def test_default_gates_on_server_local_time(self, db_conn, server_local_zone):
        """Without timezone settings the gate reads the server's local clock.

        This mirrors the long-standing behaviour of gating on process local
        time even though users carry a timezone. It is a known discrepancy:
        users outside the server's zone get nudges at the wrong local hour
        unless ``use_user_timezone`` is enabled.
        """
        server_local_zone("EST5EDT,M3.2.0,M11.1.0")  # US Eastern
        user_id = _user(db_conn, timezone="Asia/Tokyo")
        _invoice(db_conn, user_id)
        scheduler = NudgeScheduler(NudgeStore(db_conn), FakeDispatcher())

        assert scheduler.gate_timezone(NudgeStore(db_conn).get_policy(user_id)) is None
        # 08:00 in New York (22:00 in Tokyo)
        assert scheduler.tick(datetime(2026, 3, 4, 13, 0, tzinfo=UTC))["sent"] == 0
        # 09:00 in New York (23:00 in Tokyo): the server clock opens the window
        assert scheduler.tick(datetime(2026, 3, 4, 14, 0, tzinfo=UTC))["sent"] == 1


class TestFailures:
    def test_missing_user_skipped(self, db_conn):
        _invoice(db_conn, 999)
        dispatcher = FakeDispatcher()

        results = _scheduler(db_conn, dispatcher).tick(NOW)

        assert results["skipped_missing_user"] == 1
        assert dispatcher.calls == []

    def test_error_on_one_invoice_does_not_stop_tick(self, db_conn):
        user_id = _user(db_conn)
        first = _invoice(db_conn, user_id, number="INV-1", due=NOW - timedelta(days=3))
        second = _invoice(db_conn, user_id, number="INV-2", due=NOW - timedelta(days=2))

        def _explode(invoice):
            if invoice.id == first:
                raise RuntimeError("template exploded")

        results = _scheduler(db_conn, FakeDispatcher(on_send=_explode)).tick(NOW)

        assert results["errors"] == 1
        assert results["sent"] == 1
        assert db.get_invoice(db_conn, first).nudge_count == 0
        assert db.get_invoice(db_conn, second).nudge_count == 1

    def test_concurrent_update_reported_as_unrecorded(self, db_conn, caplog):
        user_id = _user(db_conn)
        invoice_id = _invoice(db_conn, user_id)
        alert = MagicMock()

        def _race(invoice):
            db.update_invoice(db_conn, invoice.id, nudge_count=1, last_nudge_at=NOW)
            db_conn.commit()

        scheduler = _scheduler(db_conn, FakeDispatcher(on_send=_race), alert=alert)
        with caplog.at_level(logging.ERROR, logger="nudgeflow.scheduler"):
            results = scheduler.tick(NOW)

        assert results["unrecorded"] == 1
        assert results["sent"] == 0
        assert "SENT BUT NOT RECORDED" in caplog.text
        alert.assert_called_once()
        assert db.get_nudge_logs(db_conn, invoice_id) == []
        assert db.get_invoice(db_conn, invoice_id).nudge_count == 1

    def test_store_error_after_send_reported_as_unrecorded(self, db_conn):
        user_id = _user(db_conn)
        _invoice(db_conn, user_id)
        alert = MagicMock()
        scheduler = _scheduler(db_conn, FakeDispatcher(), alert=alert)

        with patch.object(
            scheduler.store, "record_sent_nudge", side_effect=RuntimeError("disk full"),
        ):
            results = scheduler.tick(NOW)

        assert results["unrecorded"] == 1
        title, message = alert.call_args.args
        assert "disk full" in message


class TestNextTickAfter:
    def test_hourly(self):
        moment = datetime(2026, 3, 4, 10, 15, tzinfo=UTC)
        assert next_tick_after("0 * * * *", moment) == datetime(2026, 3, 4, 11, 0, tzinfo=UTC)

    def test_on_boundary_moves_forward(self):
        moment = datetime(2026, 3, 4, 10, 0, tzinfo=UTC)
        assert next_tick_after("0 * * * *", moment) == datetime(2026, 3, 4, 11, 0, tzinfo=UTC)


class TestRunTick:
    def test_end_to_end_with_default_templates(self, db_path, make_config):
        config = make_config(db_path=db_path)
        config.scheduler.server_timezone = "UTC"
        with db.get_db(db_path) as conn:
            user_id = _user(conn)
            invoice_id = _invoice(conn, user_id)

        with patch("nudgeflow.dispatcher.SmtpTransport.send") as mock_send:
            results = run_tick(config, NOW)

        assert results["sent"] == 1
        msg = mock_send.call_args.args[0]
        assert msg["To"] == "billing@acme.example"
        assert msg["Subject"] == "Friendly reminder about Invoice INV-001"

        with db.get_db(db_path) as conn:
            logs = db.get_nudge_logs(conn, invoice_id)
        assert len(logs) == 1
        assert "$500.00" in logs[0].email_body
