"""
End-to-end lifecycle over in-memory repositories, the fake billing provider,
and the real dispatcher: draft to paid, plus the maintenance sweep.
"""

from datetime import UTC, datetime, timedelta

import pytest

from jobflow.jobs.maintenance_sweep_job import MaintenanceSweepJob
from jobflow.models.domain.billing_domain import WebhookEvent
from jobflow.models.domain.job_domain import JobStatus
from jobflow.models.domain.notification_domain import Channel
from jobflow.services.notifications.dispatcher import NotificationDispatcher
from tests.fakes import FakeNotificationRepository

SLOT_START = datetime(2026, 3, 12, 9, tzinfo=UTC)


class CollectingChannel:
    def __init__(self):
        self.sent = []

    async def send(self, recipient, message, data):
        self.sent.append((recipient.id, data["type"]))

    async def close(self):
        pass


@pytest.mark.asyncio
async def test_job_runs_from_draft_to_paid(
    lifecycle, billing, reconciliation, jobs, provider, recipients, transport
):
    job = await lifecycle.create_job("customer-1", "Deck staining")
    await billing.add_line_item(job.id, "Stain and labor", 10000)

    quoted = await lifecycle.send_quote(job.id)
    assert quoted.job.status is JobStatus.QUOTE_SENT
    assert quoted.job.provider_quote_id in provider.documents

    await lifecycle.accept_quote(job.id, owner_id="customer-1")
    await lifecycle.schedule(job.id, SLOT_START, SLOT_START + timedelta(hours=3))

    events = await jobs.calendar.events_for_job(job.id)
    assert len(events) == 1
    assert events[0].start == SLOT_START

    await lifecycle.start(job.id)
    await lifecycle.complete(job.id)
    invoiced = await lifecycle.send_invoice(job.id)
    assert invoiced.job.status is JobStatus.INVOICED
    assert invoiced.job.total_amount_cents == 10000

    # customer pays through the hosted invoice page
    provider._set(invoiced.job.provider_invoice_id, status="paid")
    result = await reconciliation.reconcile_webhook(
        _webhook("invoice.paid", invoiced.job.provider_invoice_id)
    )
    assert result.applied == ["await_payment", "record_payment"]
    assert jobs.jobs[job.id].status is JobStatus.PAID

    assert transport.types() == [
        "quote_created",
        "quote_accepted",
        "appointment_scheduled",
        "job_started",
        "job_completed",
        "invoice_sent",
        "invoice_paid",
    ]

    channel = CollectingChannel()
    dispatcher = NotificationDispatcher(
        channels={c: channel for c in Channel},
        recipients=recipients,
        attempts=FakeNotificationRepository(),
    )
    for envelope in transport.envelopes:
        await dispatcher.dispatch(envelope)

    admin_messages = [t for r, t in channel.sent if r == "admin-1"]
    assert admin_messages == ["quote_accepted"]


@pytest.mark.asyncio
async def test_sweep_expires_only_the_stale_sibling(lifecycle, jobs):
    fresh = jobs.make()
    stale = jobs.make()
    await lifecycle.send_quote(fresh.id)
    await lifecycle.send_quote(stale.id, due_at=datetime(2026, 3, 3, tzinfo=UTC))

    sweep = MaintenanceSweepJob(lifecycle=lifecycle, jobs=jobs)
    result = await sweep.run_once(now=datetime(2026, 3, 5, tzinfo=UTC))

    assert result["expired_quotes"] == 1
    assert jobs.jobs[stale.id].status is JobStatus.QUOTE_EXPIRED
    assert jobs.jobs[fresh.id].status is JobStatus.QUOTE_SENT


def _webhook(event_type, object_id):
    return WebhookEvent(id="evt_e2e", type=event_type, object_id=object_id)
