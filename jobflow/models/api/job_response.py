# jobflow/models/api/job_response.py
"""
Job API response models.
Used by routes for output formatting.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from jobflow.models.domain.job_domain import BlockedDate, CalendarEvent, Job, LineItem


class LineItemResponse(BaseModel):
    id: int | None = None
    description: str
    unit_amount_cents: int
    quantity: int
    amount_cents: int

    @classmethod
    def from_domain(cls, item: LineItem) -> "LineItemResponse":
        return cls(
            id=item.id,
            description=item.description,
            unit_amount_cents=item.unit_amount_cents,
            quantity=item.quantity,
            amount_cents=item.amount_cents,
        )


class JobResponse(BaseModel):
    """A job with its line items."""

    id: str
    customer_id: str
    title: str
    description: str | None = None
    status: str = Field(..., description="Lifecycle status")
    recurrence: str
    recurrence_rule: str | None = None
    total_amount_cents: int
    due_at: datetime | None = None
    hosted_url: str | None = Field(None, description="Customer-facing quote or invoice link")
    provider_quote_id: str | None = None
    provider_invoice_id: str | None = None
    line_items: list[LineItemResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            customer_id=job.customer_id,
            title=job.title,
            description=job.description,
            status=job.status.value,
            recurrence=job.recurrence.value,
            recurrence_rule=job.recurrence_rule,
            total_amount_cents=job.total_amount_cents,
            due_at=job.due_at,
            hosted_url=job.hosted_url,
            provider_quote_id=job.provider_quote_id,
            provider_invoice_id=job.provider_invoice_id,
            line_items=[LineItemResponse.from_domain(item) for item in job.line_items],
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class JobsListResponse(BaseModel):
    jobs: list[JobResponse]
    total_count: int


class TransitionResponse(BaseModel):
    """Result of a lifecycle operation."""

    job: JobResponse
    previous_status: str
    event: str | None = None
    notifications_enqueued: int = 0
    notification_errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_outcome(cls, outcome) -> "TransitionResponse":
        return cls(
            job=JobResponse.from_domain(outcome.job),
            previous_status=outcome.previous_status.value,
            event=outcome.event.value if outcome.event else None,
            notifications_enqueued=outcome.notifications_enqueued,
            notification_errors=list(outcome.notification_errors),
        )


class ReconcileResponse(BaseModel):
    handled: bool
    job_id: str | None = None
    applied: list[str] = Field(default_factory=list)
    detail: str | None = None


class ImportResponse(BaseModel):
    imported: int
    skipped: int
    imported_job_ids: list[str] = Field(default_factory=list)


class BlockedDateResponse(BaseModel):
    day: str
    reason: str | None = None

    @classmethod
    def from_domain(cls, blocked: BlockedDate) -> "BlockedDateResponse":
        return cls(day=blocked.day.isoformat(), reason=blocked.reason)


class CalendarEventResponse(BaseModel):
    id: int | None = None
    title: str
    start: datetime
    end: datetime
    type: str
    customer_id: str | None = None

    @classmethod
    def from_domain(cls, event: CalendarEvent) -> "CalendarEventResponse":
        return cls(
            id=event.id,
            title=event.title,
            start=event.start,
            end=event.end,
            type=event.type.value,
            customer_id=event.customer_id,
        )


class CalendarFeedUrlResponse(BaseModel):
    url: str = Field(..., description="Secret subscription URL; anyone holding it can read the feed")


class AvailabilityResponse(BaseModel):
    """Day keys (YYYY-MM-DD) in the business timezone."""

    start_day: str
    end_day: str
    booked: list[str]
    pending: list[str]
    blocked: list[str]


class RecurrenceDaysResponse(BaseModel):
    unavailable_weekdays: list[int] = Field(..., description="Sunday is 0")
