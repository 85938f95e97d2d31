"""Nudge scheduler - periodic sweep over overdue invoices.

Each tick re-derives eligibility from absolute invoice state, so missed or
repeated ticks are harmless. There is no queue of pending sends: an invoice
whose send failed is simply a candidate again on the next tick.
"""

import fcntl
import logging
import os
import signal
import time
from datetime import datetime, timezone, tzinfo
from pathlib import Path

from croniter import croniter

from . import db
from .config import Config, load_config
from .dispatcher import EmailDispatcher
from .eligibility import at_cap, resolve_timezone, should_fire
from .models import Invoice, Policy, User
from .notifications import send_operator_alert
from .store import NudgeStore

logger = logging.getLogger("nudgeflow.scheduler")
tick_logger = logging.getLogger("nudgeflow.ticks")


def _now(tz=timezone.utc):
    """Current time, wrapped for testability."""
    return datetime.now(tz)


# Graceful shutdown flag
_shutdown_requested = False


def _signal_handler(signum, frame):
    """Handle shutdown signals."""
    global _shutdown_requested
    logger.info("Received signal %d, shutting down gracefully...", signum)
    _shutdown_requested = True


def _empty_results() -> dict:
    return {
        "candidates": 0,
        "sent": 0,
        "failed": 0,
        "capped": 0,
        "not_due": 0,
        "skipped_quota": 0,
        "skipped_missing_user": 0,
        "unrecorded": 0,
        "errors": 0,
    }


class NudgeScheduler:
    """Decides which overdue invoices get a nudge and records what was sent."""

    def __init__(
        self,
        store,
        dispatcher,
        *,
        free_invoice_quota: int = 3,
        use_user_timezone: bool = False,
        server_timezone: tzinfo | None = None,
        alert=None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.free_invoice_quota = free_invoice_quota
        self.use_user_timezone = use_user_timezone
        self.server_timezone = server_timezone
        self.alert = alert

    def gate_timezone(self, policy: Policy) -> tzinfo | None:
        """Zone the business-hours/weekday gates are read in. None = process local."""
        if self.use_user_timezone:
            return resolve_timezone(policy.timezone)
        return self.server_timezone

    def tick(self, now: datetime | None = None) -> dict:
        """Run one sweep. Returns counts per outcome."""
        now = now or _now()
        results = _empty_results()

        # Fixed for the whole tick; nothing is sent twice within one sweep.
        candidates = self.store.list_overdue_active(now)
        results["candidates"] = len(candidates)

        users: dict[int, tuple[User, Policy] | None] = {}
        active_counts: dict[int, int] = {}

        for invoice in candidates:
            try:
                outcome = self._process_invoice(invoice, now, users, active_counts)
            except Exception as e:
                logger.error("Error processing invoice %s: %s", invoice.id, e)
                outcome = "errors"
            results[outcome] += 1

        summary = " ".join(f"{key}={count}" for key, count in results.items())
        if results["sent"] or results["failed"] or results["unrecorded"] or results["errors"]:
            tick_logger.info("tick %s %s", now.isoformat(), summary)
        else:
            tick_logger.debug("tick %s %s", now.isoformat(), summary)

        return results

    def _load_user(self, user_id: int, users: dict) -> tuple[User, Policy] | None:
        if user_id not in users:
            user = self.store.get_user(user_id)
            policy = self.store.get_policy(user_id) if user else None
            users[user_id] = (user, policy) if user and policy else None
        return users[user_id]

    def _within_quota(self, invoice: Invoice, policy: Policy, active_counts: dict) -> bool:
        """Free tier: a user with more active invoices than the quota gets no nudges.

        Existing invoices are left as they are; they are simply not nudged until
        the user is back within the quota or upgrades.
        """
        if policy.is_paid_tier:
            return True
        if invoice.user_id not in active_counts:
            active_counts[invoice.user_id] = len(
                self.store.list_active_invoices_for_user(invoice.user_id)
            )
        return active_counts[invoice.user_id] <= self.free_invoice_quota

    def _process_invoice(
        self, invoice: Invoice, now: datetime, users: dict, active_counts: dict,
    ) -> str:
        loaded = self._load_user(invoice.user_id, users)
        if loaded is None:
            logger.warning(
                "User %s for invoice %s not found, skipping", invoice.user_id, invoice.id,
            )
            return "skipped_missing_user"
        user, policy = loaded

        if not self._within_quota(invoice, policy, active_counts):
            logger.debug(
                "User %s is over the free invoice quota, not nudging invoice %s",
                invoice.user_id, invoice.id,
            )
            return "skipped_quota"

        if at_cap(invoice, policy):
            self.store.update_invoice(invoice.id, nudge_active=False)
            logger.info(
                "Invoice %s reached %d nudge(s), deactivating",
                invoice.id, invoice.nudge_count,
            )
            return "capped"

        if not should_fire(invoice, policy, now, gate_tz=self.gate_timezone(policy)):
            return "not_due"

        ordinal = invoice.nudge_count + 1
        result = self.dispatcher.send(invoice, user, ordinal, now)
        if not result.ok:
            logger.warning(
                "Nudge %d for invoice %s not sent, will retry next tick: %s",
                ordinal, invoice.id, result.error,
            )
            return "failed"

        error = None
        try:
            entry = self.store.record_sent_nudge(
                invoice, result.subject, result.body, now,
                deactivate=ordinal >= policy.max_nudges,
            )
        except Exception as e:
            entry = None
            error = e

        if entry is None:
            detail = error or "nudge count changed concurrently"
            logger.error(
                "SENT BUT NOT RECORDED: nudge %d for invoice %s (%s) was delivered "
                "but counters were not updated: %s",
                ordinal, invoice.id, invoice.client_email, detail,
            )
            if self.alert:
                self.alert(
                    "Nudge sent but not recorded",
                    f"Invoice {invoice.id} ({invoice.invoice_number}) nudge {ordinal} "
                    f"was delivered to {invoice.client_email} but not recorded: {detail}",
                )
            return "unrecorded"

        return "sent"


def build_scheduler(config: Config, conn) -> NudgeScheduler:
    """Wire the scheduler with its store, dispatcher and alert channel."""
    store = NudgeStore(conn, config.billing)
    dispatcher = EmailDispatcher(config, store)
    server_tz = (
        resolve_timezone(config.scheduler.server_timezone)
        if config.scheduler.server_timezone else None
    )

    def _alert(title: str, message: str) -> None:
        send_operator_alert(config, title, message, tags="warning")

    return NudgeScheduler(
        store,
        dispatcher,
        free_invoice_quota=config.billing.free_invoice_quota,
        use_user_timezone=config.scheduler.use_user_timezone,
        server_timezone=server_tz,
        alert=_alert,
    )


def run_tick(config: Config, now: datetime | None = None) -> dict:
    """Open the database and run a single tick."""
    with db.get_db(config.db_path) as conn:
        scheduler = build_scheduler(config, conn)
        return scheduler.tick(now)


def next_tick_after(cron_expression: str, moment: datetime) -> datetime:
    """Next cron boundary strictly after ``moment`` (UTC)."""
    return croniter(cron_expression, moment.astimezone(timezone.utc)).get_next(datetime)


def run_daemon(config: Config) -> None:
    """
    Run the scheduler as a daemon, ticking on the configured cron schedule.
    Handles graceful shutdown via SIGTERM/SIGINT.
    """
    global _shutdown_requested

    # Acquire exclusive lock so only one scheduler sends nudges
    lock_path = Path(config.scheduler.lock_path)
    lock_file = open(lock_path, "w")
    try:
        fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        logger.error("Another scheduler daemon is already running. Exiting.")
        lock_file.close()
        return

    lock_file.write(str(os.getpid()))
    lock_file.flush()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    logger.info("STARTUP Scheduler daemon starting (pid: %d)", os.getpid())
    logger.info("STARTUP Tick schedule: %s (UTC)", config.scheduler.tick_cron)
    logger.info("STARTUP Poll interval: %ds", config.scheduler.poll_interval)
    logger.info(
        "STARTUP Send-window clock: %s",
        "user timezone" if config.scheduler.use_user_timezone
        else (config.scheduler.server_timezone or "server local time"),
    )

    next_tick = next_tick_after(config.scheduler.tick_cron, _now())
    logger.info("STARTUP First tick at %s", next_tick.isoformat())

    while not _shutdown_requested:
        now = _now()
        if now >= next_tick:
            try:
                run_tick(config, now)
            except Exception as e:
                logger.error("Error running nudge tick: %s", e)
            next_tick = next_tick_after(config.scheduler.tick_cron, now)

        time.sleep(config.scheduler.poll_interval)

    fcntl.flock(lock_file, fcntl.LOCK_UN)
    lock_file.close()

    logger.info("Shutdown complete.")


def main():
    """Entry point for scheduler script."""
    import argparse

    from .logging_setup import setup_logging

    parser = argparse.ArgumentParser(description="nudgeflow scheduler")
    parser.add_argument("-c", "--config", help="Path to config file")
    parser.add_argument("--daemon", "-d", action="store_true", help="Run as daemon (continuous loop)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    config = load_config(Path(args.config) if args.config else None)

    setup_logging(config, verbose=args.verbose, daemon_mode=args.daemon)

    if args.daemon:
        run_daemon(config)
    else:
        results = run_tick(config)
        logger.info("Sent %d nudge(s)", results["sent"])


if __name__ == "__main__":
    main()
