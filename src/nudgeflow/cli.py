"""CLI interface for local testing and administration."""

import argparse
import dataclasses
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

from . import db
from .config import load_config
from .logging_setup import setup_logging
from .models import TONES, User, validate_policy
from .projector import upcoming_nudges_for_user
from .scheduler import run_daemon, run_tick
from .store import NudgeStore, policy_from_user


def _parse_datetime(value: str) -> datetime:
    """ISO date or datetime; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Not a boolean: {value!r}")


def _resolve_user(conn, ref: str) -> User:
    """Look up a user by numeric id or email, exiting if not found."""
    user = db.get_user(conn, int(ref)) if ref.isdigit() else db.get_user_by_email(conn, ref)
    if user is None:
        print(f"Error: user not found: {ref}", file=sys.stderr)
        sys.exit(1)
    return user


def _coerce_user_field(name: str, raw: str):
    fields = {f.name: f for f in dataclasses.fields(User)}
    if name not in fields or name in ("id", "email", "created_at"):
        raise ValueError(f"Unknown setting: {name}")
    default = fields[name].default
    if name == "max_nudges":
        return None if raw.lower() in ("", "none", "default") else int(raw)
    if isinstance(default, bool):
        return _parse_bool(raw)
    if isinstance(default, int):
        return int(raw)
    return raw or None


def cmd_init(args):
    """Initialize the database."""
    config = load_config(Path(args.config) if args.config else None)
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    db.init_db(config.db_path)
    print(f"Database initialized at {config.db_path}")


def cmd_run(args):
    """Run a single nudge tick."""
    config = load_config(Path(args.config) if args.config else None)
    now = _parse_datetime(args.now) if args.now else None
    results = run_tick(config, now)
    for key, count in results.items():
        print(f"{key:22} {count}")


def cmd_daemon(args):
    """Run the tick loop until stopped."""
    config = load_config(Path(args.config) if args.config else None)
    run_daemon(config)


def cmd_user_add(args):
    config = load_config(Path(args.config) if args.config else None)
    fields = {
        "timezone": args.timezone,
        "message_tone": args.tone,
        "subscription_tier": args.tier,
        "is_pro": args.pro,
    }
    if args.business_name:
        fields["business_name"] = args.business_name
    with db.get_db(config.db_path) as conn:
        user_id = db.create_user(conn, args.email, **fields)
        print(f"User created: {user_id}")


def cmd_user_set(args):
    """Update policy settings, rejecting values the scheduler cannot use."""
    config = load_config(Path(args.config) if args.config else None)
    with db.get_db(config.db_path) as conn:
        user = _resolve_user(conn, args.user)
        updates = {}
        try:
            for assignment in args.settings:
                name, sep, raw = assignment.partition("=")
                if not sep:
                    raise ValueError(f"Expected key=value, got {assignment!r}")
                updates[name.strip()] = _coerce_user_field(name.strip(), raw.strip())
            if "message_tone" in updates and updates["message_tone"] not in TONES:
                raise ValueError(f"message_tone must be one of: {', '.join(TONES)}")
            candidate = dataclasses.replace(user, **updates)
            validate_policy(policy_from_user(candidate, config.billing))
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        db.update_user(conn, user.id, **updates)
        print(f"Updated {len(updates)} setting(s) for {user.email}")


def cmd_user_show(args):
    config = load_config(Path(args.config) if args.config else None)
    with db.get_db(config.db_path) as conn:
        user = _resolve_user(conn, args.user)
        policy = policy_from_user(user, config.billing)
        print(f"User {user.id}: {user.email} ({user.display_business_name})")
        print(f"  tier: {user.subscription_tier}{' (pro)' if user.is_pro else ''}")
        print(f"  tone: {user.message_tone}  timezone: {user.timezone}")
        print(f"  nudges: {'enabled' if policy.nudge_enabled else 'disabled'}, "
              f"first after {policy.first_nudge_delay}d, every {policy.nudge_interval}d, "
              f"max {policy.max_nudges}")
        if policy.business_hours_only:
            print(f"  business hours: {policy.business_start_hour:02d}:00-"
                  f"{policy.business_end_hour:02d}:00")
        if policy.weekdays_only:
            print("  weekdays only")
        for problem in policy.validate():
            print(f"  WARNING: {problem}")


def cmd_invoice_add(args):
    config = load_config(Path(args.config) if args.config else None)
    try:
        amount = Decimal(args.amount)
        due_date = _parse_datetime(args.due)
    except (InvalidOperation, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    with db.get_db(config.db_path) as conn:
        user = _resolve_user(conn, args.user)
        invoice_id = db.create_invoice(
            conn, user.id, args.client_name, args.client_email,
            args.number, amount, due_date,
        )
        print(f"Invoice created: {invoice_id}")


def cmd_invoice_list(args):
    config = load_config(Path(args.config) if args.config else None)
    with db.get_db(config.db_path) as conn:
        user = _resolve_user(conn, args.user)
        invoices = db.list_invoices_for_user(conn, user.id)
        if not invoices:
            print("No invoices")
            return
        for inv in invoices:
            active = "active" if inv.nudge_active else "off"
            print(
                f"[{inv.id}] {inv.invoice_number:12} {inv.status:9} "
                f"{inv.amount:>10} due {inv.due_date:%Y-%m-%d} "
                f"nudges {inv.nudge_count} ({active}) {inv.client_name}"
            )


def cmd_invoice_paid(args):
    config = load_config(Path(args.config) if args.config else None)
    with db.get_db(config.db_path) as conn:
        invoice = db.mark_invoice_paid(conn, args.invoice_id)
        if invoice is None:
            print(f"Error: invoice not found: {args.invoice_id}", file=sys.stderr)
            sys.exit(1)
        print(f"Invoice {invoice.invoice_number} marked paid")


def cmd_invoice_unsubscribe(args):
    config = load_config(Path(args.config) if args.config else None)
    with db.get_db(config.db_path) as conn:
        invoice = db.unsubscribe_invoice(conn, args.invoice_id)
        if invoice is None:
            print(f"Error: invoice not found: {args.invoice_id}", file=sys.stderr)
            sys.exit(1)
        print(f"Nudges stopped for invoice {invoice.invoice_number}")


def cmd_invoice_logs(args):
    config = load_config(Path(args.config) if args.config else None)
    with db.get_db(config.db_path) as conn:
        logs = db.get_nudge_logs(conn, args.invoice_id)
        if not logs:
            print("No nudges sent")
            return
        for entry in logs:
            print(f"{entry.sent_at:%Y-%m-%d %H:%M} {entry.email_subject}")
            if args.body:
                print(entry.email_body)
                print()


def cmd_upcoming(args):
    config = load_config(Path(args.config) if args.config else None)
    now = _parse_datetime(args.now) if args.now else datetime.now(timezone.utc)
    with db.get_db(config.db_path) as conn:
        user = _resolve_user(conn, args.user)
        store = NudgeStore(conn, config.billing)
        upcoming = upcoming_nudges_for_user(store, user.id, now)
        if not upcoming:
            print("No upcoming nudges")
            return
        for item in upcoming:
            print(
                f"{item.next_nudge_at:%Y-%m-%d %H:%M} nudge #{item.ordinal} "
                f"{item.invoice.invoice_number} ({item.invoice.client_name})"
            )


def cmd_stats(args):
    config = load_config(Path(args.config) if args.config else None)
    with db.get_db(config.db_path) as conn:
        user = _resolve_user(conn, args.user)
        stats = db.get_invoice_stats(conn, user.id, datetime.now(timezone.utc))
        for key, value in stats.items():
            print(f"{key:12} {value}")


def cmd_template_add(args):
    config = load_config(Path(args.config) if args.config else None)
    if args.tone not in TONES:
        print(f"Error: tone must be one of: {', '.join(TONES)}", file=sys.stderr)
        sys.exit(1)
    body = args.body if args.body is not None else sys.stdin.read()
    with db.get_db(config.db_path) as conn:
        user = _resolve_user(conn, args.user)
        template_id = db.create_email_template(
            conn, user.id, args.tone, args.subject, body,
            nudge_number=args.nudge_number,
        )
        print(f"Template created: {template_id}")


def main():
    parser = argparse.ArgumentParser(description="nudgeflow CLI")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Initialize database")

    run_parser = subparsers.add_parser("run", help="Run one nudge tick")
    run_parser.add_argument("--now", help="Evaluate as of this ISO timestamp")

    subparsers.add_parser("daemon", help="Run the scheduler daemon")

    # user
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="user_action", required=True)

    user_add_parser = user_subparsers.add_parser("add", help="Create a user")
    user_add_parser.add_argument("email")
    user_add_parser.add_argument("--business-name")
    user_add_parser.add_argument("--timezone", default="UTC")
    user_add_parser.add_argument("--tone", choices=TONES, default="friendly")
    user_add_parser.add_argument("--tier", default="free")
    user_add_parser.add_argument("--pro", action="store_true")

    user_set_parser = user_subparsers.add_parser("set", help="Update nudge settings (key=value)")
    user_set_parser.add_argument("user", help="User id or email")
    user_set_parser.add_argument("settings", nargs="+", help="e.g. nudge_interval=5")

    user_show_parser = user_subparsers.add_parser("show", help="Show user and policy")
    user_show_parser.add_argument("user", help="User id or email")

    # invoice
    invoice_parser = subparsers.add_parser("invoice", help="Invoice management")
    invoice_subparsers = invoice_parser.add_subparsers(dest="invoice_action", required=True)

    invoice_add_parser = invoice_subparsers.add_parser("add", help="Record an invoice")
    invoice_add_parser.add_argument("-u", "--user", required=True, help="User id or email")
    invoice_add_parser.add_argument("--client-name", required=True)
    invoice_add_parser.add_argument("--client-email", required=True)
    invoice_add_parser.add_argument("--number", required=True, help="Invoice number")
    invoice_add_parser.add_argument("--amount", required=True)
    invoice_add_parser.add_argument("--due", required=True, help="Due date (ISO)")

    invoice_list_parser = invoice_subparsers.add_parser("list", help="List invoices")
    invoice_list_parser.add_argument("-u", "--user", required=True, help="User id or email")

    invoice_paid_parser = invoice_subparsers.add_parser("paid", help="Mark an invoice paid")
    invoice_paid_parser.add_argument("invoice_id", type=int)

    invoice_unsub_parser = invoice_subparsers.add_parser("unsubscribe", help="Stop nudges for an invoice")
    invoice_unsub_parser.add_argument("invoice_id", type=int)

    invoice_logs_parser = invoice_subparsers.add_parser("logs", help="Show sent nudges")
    invoice_logs_parser.add_argument("invoice_id", type=int)
    invoice_logs_parser.add_argument("--body", action="store_true", help="Include email bodies")

    # template
    template_parser = subparsers.add_parser("template", help="Add a custom email template")
    template_parser.add_argument("-u", "--user", required=True, help="User id or email")
    template_parser.add_argument("--tone", required=True)
    template_parser.add_argument("--nudge-number", type=int, default=1)
    template_parser.add_argument("--subject", required=True)
    template_parser.add_argument("--body", help="Template body (stdin if omitted)")

    upcoming_parser = subparsers.add_parser("upcoming", help="Show upcoming nudges")
    upcoming_parser.add_argument("-u", "--user", required=True, help="User id or email")
    upcoming_parser.add_argument("--now", help="Project as of this ISO timestamp")

    stats_parser = subparsers.add_parser("stats", help="Invoice totals for a user")
    stats_parser.add_argument("-u", "--user", required=True, help="User id or email")

    args = parser.parse_args()

    if args.command != "init":
        config = load_config(Path(args.config) if args.config else None)
        setup_logging(config, verbose=args.verbose, daemon_mode=args.command == "daemon")

    commands = {
        "init": cmd_init,
        "run": cmd_run,
        "daemon": cmd_daemon,
        "template": cmd_template_add,
        "upcoming": cmd_upcoming,
        "stats": cmd_stats,
    }

    if args.command == "user":
        user_commands = {
            "add": cmd_user_add,
            "set": cmd_user_set,
            "show": cmd_user_show,
        }
        user_commands[args.user_action](args)
    elif args.command == "invoice":
        invoice_commands = {
            "add": cmd_invoice_add,
            "list": cmd_invoice_list,
            "paid": cmd_invoice_paid,
            "unsubscribe": cmd_invoice_unsubscribe,
            "logs": cmd_invoice_logs,
        }
        invoice_commands[args.invoice_action](args)
    else:
        commands[args.command](args)


if __name__ == "__main__":
    main()
