# jobflow/models/domain/job_domain.py
"""
Job Domain Models
The Job aggregate (with its line items) and the calendar rows it owns.
Instances are immutable; lifecycle changes produce new instances through
the state machine in jobflow.services.lifecycle.state_machine.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class JobStatus(str, Enum):
    DRAFT_QUOTE = "draft_quote"
    QUOTE_SENT = "quote_sent"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_DECLINED = "quote_declined"
    QUOTE_EXPIRED = "quote_expired"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INVOICED = "invoiced"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class Recurrence(str, Enum):
    NONE = "none"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class CalendarEventType(str, Enum):
    JOB = "job"
    BLOCKED = "blocked"
    PERSONAL = "personal"


class DocumentKind(str, Enum):
    """Which provider document a billing operation targets."""

    QUOTE = "quote"
    INVOICE = "invoice"


# Jobs awaiting quote or booking confirmation
PENDING_STATUSES = frozenset(
    {JobStatus.DRAFT_QUOTE, JobStatus.QUOTE_SENT, JobStatus.QUOTE_ACCEPTED}
)

# Jobs that hold their calendar slot as committed work
BOOKED_STATUSES = frozenset(
    {
        JobStatus.SCHEDULED,
        JobStatus.IN_PROGRESS,
        JobStatus.COMPLETED,
        JobStatus.INVOICED,
        JobStatus.PAYMENT_PENDING,
        JobStatus.PAID,
        JobStatus.PAST_DUE,
    }
)

# Line items may only change while the matching provider document is a draft
LINE_ITEM_EDITABLE_STATUSES = {
    JobStatus.DRAFT_QUOTE: DocumentKind.QUOTE,
    JobStatus.COMPLETED: DocumentKind.INVOICE,
}


@dataclass(frozen=True, slots=True)
class LineItem:
    """One billable component of a Job."""

    job_id: str
    description: str
    unit_amount_cents: int
    quantity: int = 1
    id: int | None = None
    provider_item_id: str | None = None

    @property
    def amount_cents(self) -> int:
        return self.unit_amount_cents * self.quantity


def compute_total(line_items: Iterable[LineItem]) -> int:
    return sum(item.amount_cents for item in line_items)


@dataclass(frozen=True, slots=True)
class Job:
    """Aggregate root for a unit of billable work."""

    id: str
    customer_id: str
    title: str
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    recurrence: Recurrence = Recurrence.NONE
    recurrence_rule: str | None = None
    total_amount_cents: int = 0
    due_at: datetime | None = None
    provider_quote_id: str | None = None
    provider_invoice_id: str | None = None
    hosted_url: str | None = None
    line_items: tuple[LineItem, ...] = field(default_factory=tuple)

    @property
    def has_line_items(self) -> bool:
        return len(self.line_items) > 0

    def provider_id_for(self, kind: DocumentKind) -> str | None:
        if kind is DocumentKind.QUOTE:
            return self.provider_quote_id
        return self.provider_invoice_id


@dataclass(frozen=True, slots=True)
class CalendarEvent:
    """A materialized occupied or blocked time slot."""

    title: str
    start: datetime
    end: datetime
    type: CalendarEventType
    job_id: str | None = None
    customer_id: str | None = None
    id: int | None = None

    def duration_minutes(self) -> int:
        return max(0, int((self.end - self.start).total_seconds() // 60))


@dataclass(frozen=True, slots=True)
class BookedSlot:
    """A job calendar event joined with the owning job's current status."""

    event: CalendarEvent
    job_status: JobStatus | None


@dataclass(frozen=True, slots=True)
class BlockedDate:
    """A calendar day excluded from booking by an administrator."""

    day: date
    reason: str | None = None
    created_at: datetime | None = None
