"""Workflow definitions, subscription state and engine result types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from lifecycle_mail.timing import parse_ts, to_iso


class TriggerEvent(str, Enum):
    SIGNUP = "signup"
    INACTIVITY_7_DAYS = "inactivity_7_days"
    INACTIVITY_14_DAYS = "inactivity_14_days"
    TRIAL_ENDING = "trial_ending"
    SUBSCRIPTION_START = "subscription_start"


class WorkflowType(str, Enum):
    WELCOME = "welcome"
    ONBOARDING = "onboarding"
    ENGAGEMENT = "engagement"
    TRIAL_CONVERSION = "trial_conversion"
    RETENTION = "retention"


class ConditionKind(str, Enum):
    SEGMENT = "segment"
    PROFILE_FIELD = "profile_field"
    ENGAGEMENT_SCORE = "engagement_score"
    SUBSCRIPTION_STATUS = "subscription_status"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Derived profile field used when a profile_field condition names no field
PROFILE_COMPLETENESS = "profile_completeness"


# ---------------------------------------------------------------------------
# Definitions (immutable, loaded once)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Condition:
    """A pure predicate over one user operand.

    ``kind`` stays a plain string so definitions carrying a kind this engine
    does not know about still load; those evaluate as satisfied.
    """
    kind: str
    operator: Operator
    value: Any
    field: str = PROFILE_COMPLETENESS


@dataclass(frozen=True)
class StepDefinition:
    id: str
    step_number: int
    template: str
    subject: str
    delay_days: int = 0
    delay_hours: int = 0
    conditions: tuple[Condition, ...] = ()
    variants: tuple[str, ...] = ()

    @property
    def is_immediate(self) -> bool:
        return self.delay_days == 0 and self.delay_hours == 0


@dataclass(frozen=True)
class WorkflowDefinition:
    id: str
    name: str
    type: WorkflowType
    trigger_event: TriggerEvent
    steps: tuple[StepDefinition, ...]
    active: bool = True
    description: str = ""
    target_segments: frozenset[str] = frozenset()
    exclude_segments: frozenset[str] = frozenset()

    @property
    def last_step_number(self) -> int:
        return self.steps[-1].step_number if self.steps else 0

    @property
    def is_segmented(self) -> bool:
        return bool(self.target_segments or self.exclude_segments)

    def get_step(self, step_number: int) -> StepDefinition | None:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------

@dataclass
class Subscription:
    """One user's progress through one workflow enrollment."""
    id: str
    user_id: str
    workflow_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_step: int = 0
    next_due_at: datetime | None = None
    last_sent_at: datetime | None = None
    send_count: int = 0
    triggered_by: str = ""
    created_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str = ""
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict) -> "Subscription":
        return cls(
            id=str(row["id"]),
            user_id=row["user_id"],
            workflow_id=row["workflow_id"],
            status=SubscriptionStatus(row.get("status") or "active"),
            current_step=row.get("current_step") or 0,
            next_due_at=parse_ts(row.get("next_due_at")),
            last_sent_at=parse_ts(row.get("last_sent_at")),
            send_count=row.get("send_count") or 0,
            triggered_by=row.get("triggered_by") or "",
            created_at=parse_ts(row.get("created_at")),
            completed_at=parse_ts(row.get("completed_at")),
            cancelled_at=parse_ts(row.get("cancelled_at")),
            cancel_reason=row.get("cancel_reason") or "",
            metadata=row.get("metadata") or {},
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "current_step": self.current_step,
            "next_due_at": to_iso(self.next_due_at),
            "last_sent_at": to_iso(self.last_sent_at),
            "send_count": self.send_count,
            "triggered_by": self.triggered_by,
            "created_at": to_iso(self.created_at),
            "completed_at": to_iso(self.completed_at),
            "cancelled_at": to_iso(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
        }


@dataclass(frozen=True)
class Recipient:
    email: str
    full_name: str = ""

    @property
    def first_name(self) -> str:
        return self.full_name.split()[0] if self.full_name.strip() else ""


@dataclass(frozen=True)
class QueuedMessage:
    """A fire-and-forget unit handed to the transport."""
    recipient: str
    subject: str
    html_body: str
    text_body: str
    workflow_id: str
    step_id: str
    step_number: int
    idempotency_key: str
    scheduled_at: datetime
    variant: str = ""


@dataclass(frozen=True)
class TransportResult:
    success: bool
    message_id: str = ""
    error: str = ""
    duplicate: bool = False

    @property
    def acknowledged(self) -> bool:
        return self.success or self.duplicate


@dataclass(frozen=True)
class EngagementSnapshot:
    user_id: str
    sent_count: int = 0
    opened_count: int = 0
    click_count: int = 0
    last_engagement_at: datetime | None = None
    score: float = 0.0


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class EnrollmentResult:
    """Outcome of one trigger call. ``success`` is False if any workflow failed."""
    subscriptions_created: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "subscriptions_created": self.subscriptions_created,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class StepOutcome(str, Enum):
    SENT = "sent"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    STALLED = "stalled"
    FAILED = "failed"
    CONFLICT = "conflict"


@dataclass
class BatchResult:
    processed_count: int = 0
    sent: int = 0
    completed: int = 0
    cancelled: int = 0
    stalled: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False

    def record(self, outcome: StepOutcome) -> None:
        if outcome is StepOutcome.SENT:
            self.sent += 1
        elif outcome is StepOutcome.COMPLETED:
            self.completed += 1
        elif outcome is StepOutcome.CANCELLED:
            self.cancelled += 1
        elif outcome is StepOutcome.STALLED:
            self.stalled += 1
        elif outcome is StepOutcome.FAILED:
            self.failed += 1
        elif outcome is StepOutcome.CONFLICT:
            self.conflicts += 1

    def to_dict(self) -> dict:
        return {
            "processed_count": self.processed_count,
            "sent": self.sent,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "stalled": self.stalled,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "skipped": self.skipped,
        }
