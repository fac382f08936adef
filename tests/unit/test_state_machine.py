from datetime import UTC, datetime, timedelta

import pytest

from jobflow.models.domain.billing_domain import ProviderDocument
from jobflow.models.domain.errors import InvalidTransition, MissingLineItems
from jobflow.models.domain.job_domain import DocumentKind, Job, JobStatus, LineItem
from jobflow.models.domain.notification_domain import ADMINS, NotificationType
from jobflow.services.lifecycle.state_machine import (
    TRANSITIONS,
    AcceptProviderQuote,
    CancelProviderDocument,
    CreateProviderDocument,
    EventSource,
    JobEvent,
    JobEventType,
    ReleaseSlots,
    ReserveSlot,
    allowed_events,
    attach_provider_document,
    job_snapshot,
    transition,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
E = JobEventType
S = JobStatus


def _job(status=S.DRAFT_QUOTE, lines=1, **fields) -> Job:
    items = tuple(
        LineItem(job_id="job-1", description=f"Item {i}", unit_amount_cents=10000, id=i)
        for i in range(lines)
    )
    return Job(
        id="job-1",
        customer_id="customer-1",
        title="Deck repair",
        status=status,
        created_at=NOW,
        updated_at=NOW,
        line_items=items,
        total_amount_cents=10000 * lines,
        **fields,
    )


def _event_for(event_type: JobEventType) -> JobEvent:
    if event_type is E.SCHEDULE:
        return JobEvent(event_type, slot_start=NOW, slot_end=NOW + timedelta(hours=2))
    if event_type is E.REQUEST_REVISION:
        return JobEvent(event_type, reason="Lower the price")
    return JobEvent(event_type)


@pytest.mark.parametrize("status", list(JobStatus))
@pytest.mark.parametrize("event_type", list(JobEventType))
def test_only_table_transitions_are_reachable(status, event_type):
    sources, target = TRANSITIONS[event_type]
    job = _job(status)

    if status not in sources:
        with pytest.raises(InvalidTransition):
            transition(job, _event_for(event_type), NOW)
        return

    result = transition(job, _event_for(event_type), NOW)
    assert result.job.status is (target or status)
    assert result.previous is job


def test_illegal_event_leaves_job_unchanged():
    job = _job(S.PAID)
    with pytest.raises(InvalidTransition) as exc_info:
        transition(job, JobEvent(E.SEND_QUOTE), NOW)

    assert exc_info.value.current == "paid"
    assert job.status is S.PAID


def test_paid_and_cancelled_are_terminal():
    assert allowed_events(S.PAID) == set()
    assert allowed_events(S.CANCELLED) == set()


def test_send_quote_requires_line_items():
    with pytest.raises(MissingLineItems):
        transition(_job(lines=0), JobEvent(E.SEND_QUOTE), NOW)


def test_send_invoice_requires_line_items():
    with pytest.raises(MissingLineItems) as exc_info:
        transition(_job(S.COMPLETED, lines=0), JobEvent(E.SEND_INVOICE), NOW)
    assert exc_info.value.status_code == 422


def test_send_quote_sets_validity_and_requests_provider_document():
    result = transition(_job(), JobEvent(E.SEND_QUOTE), NOW, quote_validity=timedelta(days=14))

    assert result.job.status is S.QUOTE_SENT
    assert result.job.due_at == NOW + timedelta(days=14)
    assert result.billing_effects == [CreateProviderDocument(DocumentKind.QUOTE)]
    assert [n.type for n in result.notifications] == [NotificationType.QUOTE_CREATED]


def test_customer_accept_mirrors_to_provider_but_webhook_accept_does_not():
    job = _job(S.QUOTE_SENT, provider_quote_id="qt_1")

    from_customer = transition(job, JobEvent(E.ACCEPT_QUOTE, source=EventSource.CUSTOMER), NOW)
    from_provider = transition(job, JobEvent(E.ACCEPT_QUOTE, source=EventSource.PROVIDER), NOW)

    assert from_customer.billing_effects == [AcceptProviderQuote("qt_1")]
    assert from_provider.billing_effects == []
    assert from_customer.notifications[0].recipient == ADMINS


def test_schedule_releases_then_reserves_and_clears_due_date():
    start = NOW + timedelta(days=3)
    end = start + timedelta(hours=4)
    job = _job(S.QUOTE_ACCEPTED, due_at=NOW + timedelta(days=10))

    result = transition(job, JobEvent(E.SCHEDULE, slot_start=start, slot_end=end), NOW)

    assert result.job.status is S.SCHEDULED
    assert result.job.due_at is None
    assert result.calendar_effects == [ReleaseSlots(), ReserveSlot(start, end)]
    assert result.notifications[0].payload["start"] == start.isoformat()


def test_schedule_rejects_inverted_slot():
    with pytest.raises(ValueError):
        transition(
            _job(S.QUOTE_ACCEPTED),
            JobEvent(E.SCHEDULE, slot_start=NOW, slot_end=NOW - timedelta(hours=1)),
            NOW,
        )


def test_request_revision_keeps_status_and_needs_reason():
    job = _job(S.QUOTE_SENT)

    result = transition(job, JobEvent(E.REQUEST_REVISION, reason="  Too expensive "), NOW)
    assert result.job.status is S.QUOTE_SENT
    assert not result.changes_status
    assert result.notifications[0].payload == {"reason": "Too expensive"}

    with pytest.raises(ValueError):
        transition(job, JobEvent(E.REQUEST_REVISION, reason=" "), NOW)


def test_send_invoice_uses_terms_unless_due_date_given():
    job = _job(S.COMPLETED)
    default = transition(job, JobEvent(E.SEND_INVOICE), NOW, invoice_terms=timedelta(days=15))
    explicit = transition(job, JobEvent(E.SEND_INVOICE, due_at=NOW + timedelta(days=3)), NOW)

    assert default.job.due_at == NOW + timedelta(days=15)
    assert explicit.job.due_at == NOW + timedelta(days=3)


@pytest.mark.parametrize(
    "status, fields, expected",
    [
        (S.QUOTE_SENT, {"provider_quote_id": "qt_1"}, CancelProviderDocument(DocumentKind.QUOTE, "qt_1")),
        (
            S.PAYMENT_PENDING,
            {"provider_invoice_id": "in_1"},
            CancelProviderDocument(DocumentKind.INVOICE, "in_1"),
        ),
        (S.DRAFT_QUOTE, {"provider_quote_id": "qt_d"}, CancelProviderDocument(DocumentKind.QUOTE, "qt_d")),
        (
            S.COMPLETED,
            {"provider_invoice_id": "in_d"},
            CancelProviderDocument(DocumentKind.INVOICE, "in_d"),
        ),
        (S.DRAFT_QUOTE, {}, None),
        (S.SCHEDULED, {}, None),
    ],
)
def test_cancel_voids_open_documents_and_releases_slots(status, fields, expected):
    result = transition(_job(status, **fields), JobEvent(E.CANCEL, reason="Moved away"), NOW)

    assert result.job.status is S.CANCELLED
    assert result.billing_effects == ([expected] if expected else [])
    assert ReleaseSlots() in result.calendar_effects
    assert result.notifications[0].payload == {"reason": "Moved away"}


def test_attach_provider_document_records_ids_and_invoice_due_date():
    due = NOW + timedelta(days=30)
    job = _job(S.INVOICED)
    attached = attach_provider_document(
        job,
        ProviderDocument(
            kind=DocumentKind.INVOICE,
            provider_id="in_9",
            status="open",
            hosted_url="https://pay.example/in_9",
            due_at=due,
        ),
    )

    assert attached.provider_invoice_id == "in_9"
    assert attached.hosted_url == "https://pay.example/in_9"
    assert attached.due_at == due
    assert job_snapshot(attached)["hosted_url"] == "https://pay.example/in_9"
