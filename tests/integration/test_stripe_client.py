import re
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio

from jobflow.models.domain.errors import ProviderOutcomeUnknown, ProviderRejected, ProviderUnavailable
from jobflow.models.domain.job_domain import DocumentKind, LineItem
from jobflow.models.domain.notification_domain import Recipient
from jobflow.services.billing import stripe_client
from jobflow.services.billing.provider import BillingProvider
from jobflow.services.billing.stripe_client import StripeBillingProvider, encode_form

API = "https://api.stripe.test/v1"

LINES = [
    LineItem(job_id="job-1", description="Labor", unit_amount_cents=10000, quantity=2, id=11),
    LineItem(job_id="job-1", description="Parts", unit_amount_cents=2500, quantity=1, id=12),
]


@pytest_asyncio.fixture
async def stripe(monkeypatch):
    monkeypatch.setattr(stripe_client, "BACKOFF_FACTOR", 0)
    provider = StripeBillingProvider(api_key="sk_test_123", api_base=API)
    yield provider
    await provider.close()


def _form(request: httpx.Request) -> dict[str, list[str]]:
    return parse_qs(request.content.decode())


def test_encode_form_flattens_nested_params():
    assert encode_form(
        {
            "customer": "cus_1",
            "metadata": {"job_id": "j1"},
            "line_items": [{"price_data": {"unit_amount": 500}, "quantity": 2}],
            "auto_advance": False,
            "skip": None,
        }
    ) == [
        ("customer", "cus_1"),
        ("metadata[job_id]", "j1"),
        ("line_items[0][price_data][unit_amount]", "500"),
        ("line_items[0][quantity]", "2"),
        ("auto_advance", "false"),
    ]


@pytest.mark.asyncio
async def test_create_quote_draft_sends_idempotency_key(stripe, httpx_mock):
    httpx_mock.add_response(
        method="POST",
        url=f"{API}/quotes",
        json={"id": "qt_1", "status": "draft", "line_items": {"data": [{"id": "li_a"}, {"id": "li_b"}]}},
    )

    draft = await stripe.create_draft(DocumentKind.QUOTE, "cus_1", LINES, "job-1")

    assert draft.provider_id == "qt_1"
    assert draft.item_ids == {11: "li_a", 12: "li_b"}

    request = httpx_mock.get_request()
    assert request.headers["Authorization"] == "Bearer sk_test_123"
    assert request.headers["Idempotency-Key"].startswith("job-1:quote:draft:")
    form = _form(request)
    assert form["metadata[job_id]"] == ["job-1"]
    assert form["line_items[0][price_data][unit_amount]"] == ["10000"]
    assert form["line_items[0][quantity]"] == ["2"]


@pytest.mark.asyncio
async def test_same_lines_reuse_the_same_idempotency_key(stripe, httpx_mock):
    for _ in range(2):
        httpx_mock.add_response(method="POST", url=f"{API}/quotes", json={"id": "qt_1", "status": "draft"})

    await stripe.create_draft(DocumentKind.QUOTE, "cus_1", LINES, "job-1")
    await stripe.create_draft(DocumentKind.QUOTE, "cus_1", LINES, "job-1")

    first, second = httpx_mock.get_requests()
    assert first.headers["Idempotency-Key"] == second.headers["Idempotency-Key"]


@pytest.mark.asyncio
async def test_server_error_on_write_is_outcome_unknown(stripe, httpx_mock):
    httpx_mock.add_response(
        method="POST",
        url=f"{API}/quotes/qt_1/finalize",
        status_code=500,
        json={"error": {"message": "Something went wrong"}},
    )

    with pytest.raises(ProviderOutcomeUnknown):
        await stripe.finalize_and_send(DocumentKind.QUOTE, "qt_1")
    assert len(httpx_mock.get_requests()) == 1


@pytest.mark.asyncio
async def test_timeout_on_write_is_outcome_unknown(stripe, httpx_mock):
    httpx_mock.add_exception(httpx.ReadTimeout("read timed out"), method="POST")

    with pytest.raises(ProviderOutcomeUnknown):
        await stripe.accept_quote("qt_1")


@pytest.mark.asyncio
async def test_connect_error_on_write_is_unavailable(stripe, httpx_mock):
    httpx_mock.add_exception(httpx.ConnectError("refused"), method="POST")

    with pytest.raises(ProviderUnavailable) as exc_info:
        await stripe.accept_quote("qt_1")
    assert not isinstance(exc_info.value, ProviderOutcomeUnknown)


@pytest.mark.asyncio
async def test_client_error_is_rejected_with_code(stripe, httpx_mock):
    httpx_mock.add_response(
        method="POST",
        url=f"{API}/quotes/qt_1/accept",
        status_code=400,
        json={"error": {"message": "Quote is not open", "code": "quote_not_open"}},
    )

    with pytest.raises(ProviderRejected) as exc_info:
        await stripe.accept_quote("qt_1")
    assert exc_info.value.provider_code == "quote_not_open"


@pytest.mark.asyncio
async def test_reads_retry_transient_failures(stripe, httpx_mock):
    httpx_mock.add_response(method="GET", url=f"{API}/invoices/in_1", status_code=503)
    httpx_mock.add_response(
        method="GET",
        url=f"{API}/invoices/in_1",
        json={
            "id": "in_1",
            "status": "open",
            "hosted_invoice_url": "https://invoice.stripe.test/in_1",
            "due_date": 1775001600,
            "metadata": {"job_id": "job-1"},
        },
    )

    document = await stripe.retrieve(DocumentKind.INVOICE, "in_1")

    assert document.status == "open"
    assert document.hosted_url == "https://invoice.stripe.test/in_1"
    assert document.job_id == "job-1"
    assert document.due_at.year == 2026


@pytest.mark.asyncio
async def test_reads_give_up_after_max_retries(stripe, httpx_mock):
    for _ in range(stripe_client.MAX_RETRIES):
        httpx_mock.add_response(method="GET", url=f"{API}/quotes/qt_1", status_code=502)

    with pytest.raises(ProviderUnavailable):
        await stripe.retrieve(DocumentKind.QUOTE, "qt_1")


@pytest.mark.asyncio
async def test_invoice_finalize_then_send(stripe, httpx_mock):
    httpx_mock.add_response(
        method="POST", url=f"{API}/invoices/in_1/finalize", json={"id": "in_1", "status": "open"}
    )
    httpx_mock.add_response(
        method="POST",
        url=f"{API}/invoices/in_1/send",
        json={"id": "in_1", "status": "open", "hosted_invoice_url": "https://invoice.stripe.test/in_1"},
    )

    document = await stripe.finalize_and_send(DocumentKind.INVOICE, "in_1")

    finalize, send = httpx_mock.get_requests()
    assert finalize.headers["Idempotency-Key"] == "in_1:finalize"
    assert send.headers["Idempotency-Key"] == "in_1:send"
    assert document.hosted_url == "https://invoice.stripe.test/in_1"


@pytest.mark.asyncio
async def test_ensure_customer_reuses_existing_by_email(stripe, httpx_mock):
    httpx_mock.add_response(
        method="GET", url=re.compile(rf"{API}/customers\?.*"), json={"data": [{"id": "cus_existing"}]}
    )
    recipient = Recipient(id="customer-1", name="Dana", email="dana@example.com")

    assert await stripe.ensure_customer(recipient) == "cus_existing"


@pytest.mark.asyncio
async def test_list_paid_maps_invoices_to_records(stripe, httpx_mock):
    httpx_mock.add_response(
        method="GET",
        url=re.compile(rf"{API}/invoices\?.*"),
        json={
            "has_more": True,
            "data": [
                {
                    "id": "in_9",
                    "amount_paid": 7500,
                    "created": 1767225600,
                    "customer": {"id": "cus_5", "name": "Pat", "email": "pat@example.com"},
                    "lines": {
                        "data": [
                            {"description": "Mowing", "amount": 7500, "quantity": 3, "id": "il_1"}
                        ]
                    },
                }
            ],
        },
    )

    page = await stripe.list_paid(DocumentKind.INVOICE)

    assert page.has_more
    assert page.next_cursor == "in_9"
    record = page.records[0]
    assert record.customer.customer_ref == "cus_5"
    assert record.total_cents == 7500
    assert record.lines[0].unit_amount_cents == 2500
    query = httpx_mock.get_request().url.params
    assert query["status"] == "paid"


def test_billing_provider_is_an_abstract_base():
    with pytest.raises(TypeError):
        BillingProvider()
    assert issubclass(StripeBillingProvider, BillingProvider)
