"""Shared test fixtures for nudgeflow tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from nudgeflow import db
from nudgeflow.config import Config
from nudgeflow.models import Invoice, Policy

UTC = timezone.utc

# Wednesday, inside default business hours
NOW = datetime(2026, 3, 4, 10, 0, tzinfo=UTC)


@pytest.fixture
def db_path(tmp_path):
    """Initialize a real SQLite database using schema.sql and return its path."""
    path = tmp_path / "test.db"
    db.init_db(path)
    return path


@pytest.fixture
def db_conn(db_path):
    """Yield a database connection with row factory set."""
    with db.get_db(db_path) as conn:
        yield conn


@pytest.fixture
def make_policy():
    """Factory for Policy values with the send-window gates open."""
    def _make_policy(**overrides):
        defaults = {
            "user_id": 1,
            "nudge_enabled": True,
            "first_nudge_delay": 1,
            "nudge_interval": 3,
            "max_nudges": 3,
            "business_hours_only": False,
            "weekdays_only": False,
        }
        defaults.update(overrides)
        return Policy(**defaults)
    return _make_policy


@pytest.fixture
def make_invoice():
    """Factory for Invoice values, overdue by two days relative to NOW."""
    def _make_invoice(**overrides):
        defaults = {
            "id": 1,
            "user_id": 1,
            "client_name": "Acme Corp",
            "client_email": "billing@acme.example",
            "invoice_number": "INV-001",
            "amount": Decimal("1250.00"),
            "due_date": NOW - timedelta(days=2),
            "created_at": NOW - timedelta(days=30),
        }
        defaults.update(overrides)
        return Invoice(**defaults)
    return _make_invoice


@pytest.fixture
def make_config(tmp_path):
    """Factory fixture that creates Config instances with tmp paths."""
    def _make_config(**overrides):
        defaults = {"db_path": tmp_path / "test.db"}
        defaults.update(overrides)
        return Config(**defaults)
    return _make_config
