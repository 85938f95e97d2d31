"""Domain types shared by the store, evaluator, scheduler and dispatcher."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

# Invoice status values
PENDING = "pending"
PAID = "paid"
OVERDUE = "overdue"
CANCELLED = "cancelled"
INVOICE_STATUSES = (PENDING, PAID, OVERDUE, CANCELLED)
ACTIVE_STATUSES = (PENDING, OVERDUE)  # counted against tier quotas

# Message tones
FRIENDLY = "friendly"
PROFESSIONAL = "professional"
FIRM = "firm"
TONES = (FRIENDLY, PROFESSIONAL, FIRM)

FREE_TIER = "free"


@dataclass
class Invoice:
    id: int
    user_id: int
    client_name: str
    client_email: str
    invoice_number: str
    amount: Decimal
    due_date: datetime
    status: str = PENDING
    nudge_count: int = 0
    last_nudge_at: datetime | None = None
    nudge_active: bool = True
    paid_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class User:
    """A business account. Policy columns live on the same row."""
    id: int
    email: str
    business_name: str | None = None
    timezone: str = "UTC"
    message_tone: str = FRIENDLY
    is_pro: bool = False
    subscription_tier: str = FREE_TIER
    nudge_enabled: bool = True
    first_nudge_delay: int = 1
    nudge_interval: int = 3
    max_nudges: int | None = None  # None = tier default
    business_hours_only: bool = True
    business_start_hour: int = 9
    business_end_hour: int = 17
    weekdays_only: bool = True
    from_email: str | None = None
    created_at: datetime | None = None

    @property
    def display_business_name(self) -> str:
        return self.business_name or self.email


@dataclass(frozen=True)
class Policy:
    """Immutable nudge automation settings for one user."""
    user_id: int
    nudge_enabled: bool = True
    first_nudge_delay: int = 1      # days after due date
    nudge_interval: int = 3         # days between nudges
    max_nudges: int = 3
    business_hours_only: bool = True
    business_start_hour: int = 9
    business_end_hour: int = 17     # exclusive
    weekdays_only: bool = True
    timezone: str = "UTC"
    message_tone: str = FRIENDLY
    subscription_tier: str = FREE_TIER
    is_pro: bool = False
    from_email: str | None = None

    @property
    def is_paid_tier(self) -> bool:
        return self.is_pro or self.subscription_tier != FREE_TIER

    def validate(self) -> list[str]:
        """Return a list of problems; empty when the policy is usable."""
        problems = []
        if self.first_nudge_delay < 0:
            problems.append("first_nudge_delay must be >= 0")
        if self.nudge_interval < 1:
            problems.append("nudge_interval must be >= 1")
        if self.max_nudges < 0:
            problems.append("max_nudges must be >= 0")
        for name in ("business_start_hour", "business_end_hour"):
            hour = getattr(self, name)
            if not 0 <= hour <= 23:
                problems.append(f"{name} must be between 0 and 23")
        if self.business_end_hour <= self.business_start_hour:
            problems.append("business_end_hour must be after business_start_hour")
        return problems


@dataclass
class NudgeLog:
    id: int
    invoice_id: int
    email_subject: str
    email_body: str
    sent_at: datetime
    opened: bool = False
    clicked: bool = False


@dataclass
class EmailTemplate:
    id: int
    user_id: int
    name: str
    tone: str
    nudge_number: int
    subject: str
    body: str
    is_default: bool = False


@dataclass
class UpcomingNudge:
    invoice: Invoice
    next_nudge_at: datetime
    ordinal: int


@dataclass
class DispatchResult:
    ok: bool
    subject: str = ""
    body: str = ""
    error: str | None = None
    recipients: list[str] = field(default_factory=list)


def validate_policy(policy: Policy) -> Policy:
    """Raise ValueError if the policy is not usable. Used by the settings surface."""
    problems = policy.validate()
    if problems:
        raise ValueError("; ".join(problems))
    return policy
