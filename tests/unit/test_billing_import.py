from datetime import UTC, datetime

import pytest

from jobflow.models.domain.billing_domain import (
    ProviderCustomer,
    ProviderLine,
    ProviderPage,
    ProviderRecord,
)
from jobflow.models.domain.job_domain import DocumentKind, JobStatus

CREATED = datetime(2025, 11, 4, 15, tzinfo=UTC)


def _record(provider_id, kind=DocumentKind.INVOICE, customer_ref="cus_new", lines=None):
    lines = [ProviderLine("Hedge trim", 12000, 1)] if lines is None else lines
    return ProviderRecord(
        kind=kind,
        provider_id=provider_id,
        customer=ProviderCustomer(customer_ref, name="Pat Guest", email="pat@example.com")
        if customer_ref
        else None,
        lines=lines,
        total_cents=sum(line.unit_amount_cents * line.quantity for line in lines),
        created_at=CREATED,
        description="Hedge trim",
    )


@pytest.mark.asyncio
async def test_import_creates_paid_jobs_for_guest_customers(billing, jobs, provider, recipients):
    provider.paid_pages = [ProviderPage(records=[_record("in_100")])]

    summary = await billing.import_paid(DocumentKind.INVOICE)

    assert summary.imported == 1
    job = jobs.jobs[summary.imported_job_ids[0]]
    assert job.status is JobStatus.PAID
    assert job.provider_invoice_id == "in_100"
    assert job.total_amount_cents == 12000
    assert recipients.users[job.customer_id].role == "guest"


@pytest.mark.asyncio
async def test_import_is_idempotent(billing, jobs, provider):
    provider.paid_pages = [ProviderPage(records=[_record("in_100")])]

    await billing.import_paid(DocumentKind.INVOICE)
    second = await billing.import_paid(DocumentKind.INVOICE)

    assert second.imported == 0
    assert second.skipped == 1
    assert len(jobs.jobs) == 1


@pytest.mark.asyncio
async def test_import_reuses_customer_linked_by_billing_ref(billing, jobs, provider, recipients):
    await recipients.link_billing_ref("customer-1", "cus_known")
    provider.paid_pages = [ProviderPage(records=[_record("in_7", customer_ref="cus_known")])]

    summary = await billing.import_paid(DocumentKind.INVOICE)

    assert jobs.jobs[summary.imported_job_ids[0]].customer_id == "customer-1"


@pytest.mark.asyncio
async def test_import_skips_records_without_lines_or_customer(billing, provider):
    provider.paid_pages = [
        ProviderPage(records=[_record("in_1", lines=[]), _record("in_2", customer_ref=None)])
    ]

    summary = await billing.import_paid(DocumentKind.INVOICE)

    assert summary.imported == 0
    assert summary.skipped == 2


@pytest.mark.asyncio
async def test_import_follows_cursor_pages(billing, provider):
    provider.paid_pages = [
        ProviderPage(records=[_record("in_1")], next_cursor="1", has_more=True),
        ProviderPage(records=[_record("in_2")]),
    ]

    summary = await billing.import_paid(DocumentKind.INVOICE)

    assert summary.imported == 2
    cursors = [call[2] for call in provider.calls if call[0] == "list_paid"]
    assert cursors == [None, "1"]


@pytest.mark.asyncio
async def test_accepted_quotes_import_as_quote_accepted(billing, jobs, provider):
    provider.paid_pages = [ProviderPage(records=[_record("qt_5", kind=DocumentKind.QUOTE)])]

    summary = await billing.import_paid(DocumentKind.QUOTE)

    job = jobs.jobs[summary.imported_job_ids[0]]
    assert job.status is JobStatus.QUOTE_ACCEPTED
    assert job.provider_quote_id == "qt_5"
