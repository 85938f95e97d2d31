"""Configuration loading for nudgeflow."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

logger = logging.getLogger("nudgeflow.config")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep
    tick_log: str = ""            # daemon only: one line per tick, kept apart from the main log


@dataclass
class EmailConfig:
    """Outgoing mail (SMTP) settings for nudge delivery."""
    enabled: bool = True
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""  # default sender when the user has no from_email
    from_name: str = ""
    timeout: float = 30.0   # seconds per SMTP attempt
    max_retries: int = 2    # extra attempts after the first failure
    app_url: str = "http://localhost:5000"  # base for unsubscribe links
    currency_symbol: str = "$"

    @property
    def effective_from_address(self) -> str:
        return self.from_address or self.smtp_user or "nudgeflow@localhost"


@dataclass
class NtfyConfig:
    """ntfy push configuration for operator alerts."""
    enabled: bool = False
    server_url: str = "https://ntfy.sh"
    topic: str = ""
    token: str = ""       # bearer token auth
    username: str = ""     # basic auth (alternative to token)
    password: str = ""
    priority: int = 4


@dataclass
class SchedulerConfig:
    tick_cron: str = "0 * * * *"  # hourly, evaluated in UTC
    poll_interval: int = 30       # seconds between daemon wake-ups
    use_user_timezone: bool = False  # gate business hours in the user's timezone
    server_timezone: str = ""     # pin the gating zone; empty = process local time
    lock_path: Path = field(default_factory=lambda: Path("/tmp/nudgeflow-scheduler.lock"))


@dataclass
class BillingConfig:
    """Tier limits. Billing state itself lives outside this service."""
    free_invoice_quota: int = 3
    max_nudges: dict[str, int] = field(default_factory=lambda: {
        "free": 3,
        "pro": 5,
        "platinum": 5,
        "enterprise": 5,
        "unlimited": 5,
    })
    default_paid_max_nudges: int = 5

    def max_nudges_for(self, tier: str, is_pro: bool = False) -> int:
        if tier in self.max_nudges:
            return self.max_nudges[tier]
        if is_pro:
            return self.default_paid_max_nudges
        return self.max_nudges.get("free", 3)


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path("data/nudgeflow.db"))
    email: EmailConfig = field(default_factory=EmailConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    ntfy: NtfyConfig = field(default_factory=NtfyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/nudgeflow/config.toml",
            Path("/etc/nudgeflow/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None or not config_path.exists():
        config = Config()
        _apply_env_overrides(config)
        return config

    with open(config_path, "rb") as f:
        data = tomli.load(f)

    config = Config()

    if "db_path" in data:
        config.db_path = Path(data["db_path"])

    if "email" in data:
        email = data["email"]
        config.email = EmailConfig(
            enabled=email.get("enabled", True),
            smtp_host=email.get("smtp_host", "smtp.gmail.com"),
            smtp_port=email.get("smtp_port", 587),
            smtp_user=email.get("smtp_user", ""),
            smtp_password=email.get("smtp_password", ""),
            from_address=email.get("from_address", ""),
            from_name=email.get("from_name", ""),
            timeout=email.get("timeout", 30.0),
            max_retries=email.get("max_retries", 2),
            app_url=email.get("app_url", "http://localhost:5000"),
            currency_symbol=email.get("currency_symbol", "$"),
        )

    if "scheduler" in data:
        sched = data["scheduler"]
        config.scheduler = SchedulerConfig(
            tick_cron=sched.get("tick_cron", "0 * * * *"),
            poll_interval=sched.get("poll_interval", 30),
            use_user_timezone=sched.get("use_user_timezone", False),
            server_timezone=sched.get("server_timezone", ""),
            lock_path=Path(sched.get("lock_path", "/tmp/nudgeflow-scheduler.lock")),
        )

    if "billing" in data:
        b = data["billing"]
        billing = BillingConfig(
            free_invoice_quota=b.get("free_invoice_quota", 3),
            default_paid_max_nudges=b.get("default_paid_max_nudges", 5),
        )
        if "max_nudges" in b:
            billing.max_nudges.update(b["max_nudges"])
        config.billing = billing

    if "ntfy" in data:
        n = data["ntfy"]
        config.ntfy = NtfyConfig(
            enabled=n.get("enabled", False),
            server_url=n.get("server_url", "https://ntfy.sh"),
            topic=n.get("topic", ""),
            token=n.get("token", ""),
            username=n.get("username", ""),
            password=n.get("password", ""),
            priority=n.get("priority", 4),
        )

    if "logging" in data:
        log = data["logging"]
        config.logging = LoggingConfig(
            level=log.get("level", "INFO"),
            output=log.get("output", "console"),
            file=log.get("file", ""),
            rotate=log.get("rotate", True),
            max_size_mb=log.get("max_size_mb", 10),
            backup_count=log.get("backup_count", 5),
            tick_log=log.get("tick_log", ""),
        )

    _apply_env_overrides(config)
    logger.debug("Loaded config from %s", config_path)
    return config


def _apply_env_overrides(config: Config) -> None:
    """Environment variable overrides for secrets (allows EnvironmentFile= usage)."""
    _env_secret_overrides = [
        ("NUDGEFLOW_SMTP_PASSWORD", "email", "smtp_password"),
        ("NUDGEFLOW_NTFY_TOKEN", "ntfy", "token"),
        ("NUDGEFLOW_NTFY_PASSWORD", "ntfy", "password"),
    ]
    for env_var, section, field_name in _env_secret_overrides:
        val = os.environ.get(env_var)
        if val:
            setattr(getattr(config, section), field_name, val)
