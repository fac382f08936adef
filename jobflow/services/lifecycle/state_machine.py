"""
Job/Quote/Invoice state machine.

``transition(job, event, now)`` is a pure function: it validates the event
against the transition table and returns the next Job together with the
effects the caller must run. It never performs I/O.

Effect ordering contract for the caller (see JobLifecycleService):
1. billing effects run first; their provider identifiers are attached with
   ``attach_provider_document`` before anything is persisted,
2. calendar effects are written in the same DB transaction as the status
   compare-and-swap,
3. notifications are enqueued after the commit.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from jobflow.models.domain.billing_domain import ProviderDocument
from jobflow.models.domain.errors import InvalidTransition, MissingLineItems
from jobflow.models.domain.job_domain import DocumentKind, Job, JobStatus
from jobflow.models.domain.notification_domain import ADMINS, Channel, NotificationType

DEFAULT_QUOTE_VALIDITY = timedelta(days=30)
DEFAULT_INVOICE_TERMS = timedelta(days=30)


class JobEventType(str, Enum):
    SEND_QUOTE = "send_quote"
    ACCEPT_QUOTE = "accept_quote"
    DECLINE_QUOTE = "decline_quote"
    EXPIRE_QUOTE = "expire_quote"
    REQUEST_REVISION = "request_revision"
    SCHEDULE = "schedule"
    START = "start"
    COMPLETE = "complete"
    SEND_INVOICE = "send_invoice"
    AWAIT_PAYMENT = "await_payment"
    RECORD_PAYMENT = "record_payment"
    MARK_PAST_DUE = "mark_past_due"
    CANCEL = "cancel"


class EventSource(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"
    PROVIDER = "provider"
    SWEEP = "sweep"


S = JobStatus
E = JobEventType

_CANCELLABLE = frozenset(set(JobStatus) - {S.PAID, S.CANCELLED})

# event -> (allowed source states, target state); None target keeps the status
TRANSITIONS: dict[JobEventType, tuple[frozenset[JobStatus], JobStatus | None]] = {
    E.SEND_QUOTE: (frozenset({S.DRAFT_QUOTE}), S.QUOTE_SENT),
    E.ACCEPT_QUOTE: (frozenset({S.QUOTE_SENT}), S.QUOTE_ACCEPTED),
    E.DECLINE_QUOTE: (frozenset({S.QUOTE_SENT}), S.QUOTE_DECLINED),
    E.EXPIRE_QUOTE: (frozenset({S.QUOTE_SENT}), S.QUOTE_EXPIRED),
    E.REQUEST_REVISION: (frozenset({S.QUOTE_SENT}), None),
    E.SCHEDULE: (frozenset({S.QUOTE_ACCEPTED}), S.SCHEDULED),
    E.START: (frozenset({S.SCHEDULED}), S.IN_PROGRESS),
    E.COMPLETE: (frozenset({S.IN_PROGRESS}), S.COMPLETED),
    E.SEND_INVOICE: (frozenset({S.COMPLETED}), S.INVOICED),
    E.AWAIT_PAYMENT: (frozenset({S.INVOICED}), S.PAYMENT_PENDING),
    E.RECORD_PAYMENT: (frozenset({S.PAYMENT_PENDING, S.PAST_DUE}), S.PAID),
    E.MARK_PAST_DUE: (frozenset({S.INVOICED, S.PAYMENT_PENDING}), S.PAST_DUE),
    E.CANCEL: (_CANCELLABLE, S.CANCELLED),
}

_REQUIRES_LINE_ITEMS = frozenset({E.SEND_QUOTE, E.SEND_INVOICE})


# ---------------------------------------------------------------------------
# Events and effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class JobEvent:
    type: JobEventType
    source: EventSource = EventSource.ADMIN
    slot_start: datetime | None = None
    slot_end: datetime | None = None
    due_at: datetime | None = None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class CreateProviderDocument:
    """Create (or reuse the draft of) and finalize-and-send a provider document."""

    kind: DocumentKind


@dataclass(frozen=True, slots=True)
class AcceptProviderQuote:
    provider_id: str


@dataclass(frozen=True, slots=True)
class CancelProviderDocument:
    kind: DocumentKind
    provider_id: str


@dataclass(frozen=True, slots=True)
class ReserveSlot:
    start: datetime
    end: datetime


@dataclass(frozen=True, slots=True)
class ReleaseSlots:
    pass


@dataclass(frozen=True, slots=True)
class Notify:
    """
    Enqueue a notification after commit. The runner merges a snapshot of the
    committed job into ``payload`` so provider URLs are always current.
    """

    type: NotificationType
    recipient: str
    channels: tuple[Channel, ...]
    payload: dict[str, Any] = field(default_factory=dict)


BillingEffect = CreateProviderDocument | AcceptProviderQuote | CancelProviderDocument
CalendarEffect = ReserveSlot | ReleaseSlots
Effect = BillingEffect | CalendarEffect | Notify


@dataclass(frozen=True, slots=True)
class Transition:
    previous: Job
    job: Job
    event: JobEvent
    effects: tuple[Effect, ...] = ()

    @property
    def billing_effects(self) -> list[BillingEffect]:
        return [
            e
            for e in self.effects
            if isinstance(e, CreateProviderDocument | AcceptProviderQuote | CancelProviderDocument)
        ]

    @property
    def calendar_effects(self) -> list[CalendarEffect]:
        return [e for e in self.effects if isinstance(e, ReserveSlot | ReleaseSlots)]

    @property
    def notifications(self) -> list[Notify]:
        return [e for e in self.effects if isinstance(e, Notify)]

    @property
    def changes_status(self) -> bool:
        return self.previous.status != self.job.status


# ---------------------------------------------------------------------------
# Table queries
# ---------------------------------------------------------------------------


def allowed_events(status: JobStatus) -> set[JobEventType]:
    return {event for event, (sources, _) in TRANSITIONS.items() if status in sources}


def can_apply(status: JobStatus, event_type: JobEventType) -> bool:
    sources, _ = TRANSITIONS[event_type]
    return status in sources


def ensure_allowed(job: Job, event_type: JobEventType) -> None:
    """Raise InvalidTransition unless ``event_type`` is legal for ``job`` now."""
    if not can_apply(job.status, event_type):
        raise InvalidTransition(job.status.value, event_type.value)
    if event_type in _REQUIRES_LINE_ITEMS and not job.has_line_items:
        raise MissingLineItems(job.status.value, event_type.value)


def target_status(job: Job, event_type: JobEventType) -> JobStatus:
    _, target = TRANSITIONS[event_type]
    return target or job.status


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------


_CUSTOMER_ALL = (Channel.EMAIL, Channel.SMS, Channel.PUSH)
_CUSTOMER_EMAIL = (Channel.EMAIL, Channel.PUSH)
_ADMIN = (Channel.EMAIL, Channel.PUSH)


def transition(
    job: Job,
    event: JobEvent,
    now: datetime,
    *,
    quote_validity: timedelta = DEFAULT_QUOTE_VALIDITY,
    invoice_terms: timedelta = DEFAULT_INVOICE_TERMS,
) -> Transition:
    """Apply ``event`` to ``job``. Raises InvalidTransition for illegal pairs."""
    ensure_allowed(job, event.type)

    changes: dict[str, Any] = {"status": target_status(job, event.type), "updated_at": now}
    effects: list[Effect] = []
    customer = job.customer_id

    if event.type is E.SEND_QUOTE:
        changes["due_at"] = event.due_at or now + quote_validity
        effects.append(CreateProviderDocument(DocumentKind.QUOTE))
        effects.append(Notify(NotificationType.QUOTE_CREATED, customer, _CUSTOMER_EMAIL))

    elif event.type is E.ACCEPT_QUOTE:
        if event.source is EventSource.CUSTOMER and job.provider_quote_id:
            effects.append(AcceptProviderQuote(job.provider_quote_id))
        effects.append(Notify(NotificationType.QUOTE_ACCEPTED, ADMINS, _ADMIN))

    elif event.type is E.DECLINE_QUOTE:
        if event.source is EventSource.CUSTOMER and job.provider_quote_id:
            effects.append(CancelProviderDocument(DocumentKind.QUOTE, job.provider_quote_id))
        effects.append(Notify(NotificationType.QUOTE_DECLINED, ADMINS, _ADMIN))

    elif event.type is E.EXPIRE_QUOTE:
        effects.append(Notify(NotificationType.QUOTE_EXPIRED, customer, _CUSTOMER_EMAIL))

    elif event.type is E.REQUEST_REVISION:
        if not event.reason or not event.reason.strip():
            raise ValueError("A revision reason is required")
        effects.append(
            Notify(
                NotificationType.QUOTE_REVISION_REQUESTED,
                ADMINS,
                _ADMIN,
                {"reason": event.reason.strip()},
            )
        )

    elif event.type is E.SCHEDULE:
        if event.slot_start is None or event.slot_end is None:
            raise ValueError("Scheduling requires a start and end time")
        if event.slot_end <= event.slot_start:
            raise ValueError("Slot end must be after its start")
        # due_at held the quote deadline; SEND_INVOICE sets it again
        changes["due_at"] = None
        effects.append(ReleaseSlots())
        effects.append(ReserveSlot(event.slot_start, event.slot_end))
        effects.append(
            Notify(
                NotificationType.APPOINTMENT_SCHEDULED,
                customer,
                _CUSTOMER_ALL,
                {"start": event.slot_start.isoformat(), "end": event.slot_end.isoformat()},
            )
        )

    elif event.type is E.START:
        effects.append(Notify(NotificationType.JOB_STARTED, customer, (Channel.PUSH,)))

    elif event.type is E.COMPLETE:
        effects.append(Notify(NotificationType.JOB_COMPLETED, customer, _CUSTOMER_EMAIL))

    elif event.type is E.SEND_INVOICE:
        changes["due_at"] = event.due_at or now + invoice_terms
        effects.append(CreateProviderDocument(DocumentKind.INVOICE))
        effects.append(Notify(NotificationType.INVOICE_SENT, customer, _CUSTOMER_ALL))

    elif event.type is E.RECORD_PAYMENT:
        effects.append(Notify(NotificationType.INVOICE_PAID, customer, _CUSTOMER_EMAIL))

    elif event.type is E.MARK_PAST_DUE:
        effects.append(Notify(NotificationType.INVOICE_PAST_DUE, customer, _CUSTOMER_ALL))

    elif event.type is E.CANCEL:
        # drafts left by create_draft are discarded along with open documents
        if job.status in (S.DRAFT_QUOTE, S.QUOTE_SENT) and job.provider_quote_id:
            effects.append(CancelProviderDocument(DocumentKind.QUOTE, job.provider_quote_id))
        elif (
            job.status in (S.COMPLETED, S.INVOICED, S.PAYMENT_PENDING, S.PAST_DUE)
            and job.provider_invoice_id
        ):
            effects.append(CancelProviderDocument(DocumentKind.INVOICE, job.provider_invoice_id))
        effects.append(ReleaseSlots())
        effects.append(
            Notify(
                NotificationType.APPOINTMENT_CANCELLED,
                customer,
                _CUSTOMER_ALL,
                {"reason": event.reason} if event.reason else {},
            )
        )

    return Transition(previous=job, job=replace(job, **changes), event=event, effects=tuple(effects))


def attach_provider_document(job: Job, document: ProviderDocument) -> Job:
    """Record a finalized provider document's identifiers on the pending job."""
    if document.kind is DocumentKind.QUOTE:
        return replace(job, provider_quote_id=document.provider_id, hosted_url=document.hosted_url)
    return replace(
        job,
        provider_invoice_id=document.provider_id,
        hosted_url=document.hosted_url,
        due_at=document.due_at or job.due_at,
    )


def job_snapshot(job: Job) -> dict[str, Any]:
    """Notification payload fields describing a job."""
    return {
        "job_id": job.id,
        "job_title": job.title,
        "status": job.status.value,
        "total_amount_cents": job.total_amount_cents,
        "hosted_url": job.hosted_url,
        "due_at": job.due_at.isoformat() if job.due_at else None,
    }
