"""
API routes over in-memory services. Tokens are real HS256 JWTs so the auth
dependency runs end to end; only the service providers are overridden.
"""

import json
import time

import pytest
from fastapi.testclient import TestClient

from jobflow.config import settings
from jobflow.main import app
from jobflow.models.domain.job_domain import JobStatus
from jobflow.routes import dependencies
from jobflow.services.billing.webhook_verify import compute_signature
from tests.fakes import make_token

CUSTOMER_AUTH = {"Authorization": f"Bearer {make_token('customer-1')}"}
OTHER_AUTH = {"Authorization": f"Bearer {make_token('customer-2')}"}
ADMIN_AUTH = {"Authorization": f"Bearer {make_token('admin-1', role='admin')}"}

SLOT = {"start": "2026-03-10T08:00:00+00:00", "end": "2026-03-10T10:00:00+00:00"}


@pytest.fixture
def client(lifecycle, billing, reconciliation, availability, recurrence, feeds):
    app.dependency_overrides.update(
        {
            dependencies.get_lifecycle_service: lambda: lifecycle,
            dependencies.get_billing_service: lambda: billing,
            dependencies.get_reconciliation_service: lambda: reconciliation,
            dependencies.get_availability_service: lambda: availability,
            dependencies.get_recurrence_service: lambda: recurrence,
            dependencies.get_calendar_feed_service: lambda: feeds,
        }
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


def test_missing_token_is_rejected(client):
    assert client.get("/jobs").status_code in (401, 403)


def test_expired_token_is_unauthorized(client):
    expired = {"Authorization": f"Bearer {make_token('customer-1', expires_in=-60)}"}
    assert client.get("/jobs", headers=expired).status_code == 401


def test_customer_cannot_use_admin_routes(client):
    response = client.get("/admin/jobs/drafts", headers=CUSTOMER_AUTH)
    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Admin drafting and quoting
# ---------------------------------------------------------------------------


def test_admin_creates_and_quotes_job(client, jobs):
    created = client.post(
        "/admin/jobs",
        json={
            "customer_id": "customer-1",
            "title": "Gutter cleaning",
            "line_items": [{"description": "Labor", "unit_amount_cents": 10000}],
        },
        headers=ADMIN_AUTH,
    )
    assert created.status_code == 201
    job_id = created.json()["id"]
    assert created.json()["total_amount_cents"] == 10000

    quoted = client.post(f"/admin/jobs/{job_id}/quote", headers=ADMIN_AUTH)

    assert quoted.status_code == 200
    body = quoted.json()
    assert body["previous_status"] == "draft_quote"
    assert body["job"]["status"] == "quote_sent"
    assert body["job"]["provider_quote_id"]
    assert jobs.jobs[job_id].status is JobStatus.QUOTE_SENT


def test_line_item_validation_rejects_negative_amounts(client, jobs):
    job = jobs.make(lines=())
    response = client.post(
        f"/admin/jobs/{job.id}/line-items",
        json={"description": "Refund", "unit_amount_cents": -100},
        headers=ADMIN_AUTH,
    )
    assert response.status_code == 422


def test_quote_without_line_items_is_unprocessable(client, jobs):
    job = jobs.make(lines=())
    response = client.post(f"/admin/jobs/{job.id}/quote", headers=ADMIN_AUTH)

    assert response.status_code == 422
    assert response.json()["error"] == "MissingLineItems"


def test_illegal_transition_is_conflict(client, jobs):
    job = jobs.make(status=JobStatus.PAID)
    response = client.post(f"/admin/jobs/{job.id}/start", headers=ADMIN_AUTH)

    assert response.status_code == 409
    assert response.json()["context"] == {"current": "paid", "requested": "start"}


def test_provider_outage_hides_internal_detail(client, jobs, provider, provider_errors):
    job = jobs.make()
    provider.fail["finalize_and_send"] = provider_errors["unavailable"]

    response = client.post(f"/admin/jobs/{job.id}/quote", headers=ADMIN_AUTH)

    assert response.status_code == 503
    assert response.json() == {
        "error": "ProviderUnavailable",
        "detail": "The billing service is temporarily unavailable. Please try again.",
    }


def test_schedule_rejects_naive_times(client, jobs):
    job = jobs.make(status=JobStatus.QUOTE_ACCEPTED)
    response = client.post(
        f"/admin/jobs/{job.id}/schedule",
        json={"start": "2026-03-10T08:00:00", "end": "2026-03-10T10:00:00"},
        headers=ADMIN_AUTH,
    )
    assert response.status_code == 422


def test_reconcile_route_reports_applied_events(client, jobs):
    job = jobs.make(status=JobStatus.SCHEDULED)
    response = client.post(f"/admin/jobs/{job.id}/reconcile", headers=ADMIN_AUTH)

    assert response.status_code == 200
    assert response.json()["applied"] == []


def test_block_and_unblock_date(client):
    blocked = client.post(
        "/admin/blocked-dates", json={"day": "2026-03-10", "reason": "Holiday"}, headers=ADMIN_AUTH
    )
    assert blocked.status_code == 201

    availability = client.get(
        "/availability", params={"start": "2026-03-09", "end": "2026-03-11"}, headers=CUSTOMER_AUTH
    )
    assert availability.json()["blocked"] == ["2026-03-10"]

    assert client.delete("/admin/blocked-dates/2026-03-10", headers=ADMIN_AUTH).status_code == 204
    assert client.delete("/admin/blocked-dates/2026-03-10", headers=ADMIN_AUTH).status_code == 404


def test_admin_adds_and_removes_blocked_calendar_event(client):
    created = client.post(
        "/admin/calendar-events",
        json={
            "title": "Trade show",
            "start": "2026-03-10T12:00:00+00:00",
            "end": "2026-03-11T12:00:00+00:00",
        },
        headers=ADMIN_AUTH,
    )
    assert created.status_code == 201
    assert created.json()["type"] == "blocked"
    event_id = created.json()["id"]

    availability = client.get(
        "/availability", params={"start": "2026-03-09", "end": "2026-03-12"}, headers=CUSTOMER_AUTH
    )
    assert availability.json()["blocked"] == ["2026-03-10", "2026-03-11"]

    removed = client.delete(f"/admin/calendar-events/{event_id}", headers=ADMIN_AUTH)
    assert removed.status_code == 204
    assert client.delete(f"/admin/calendar-events/{event_id}", headers=ADMIN_AUTH).status_code == 404


def test_calendar_event_routes_are_admin_only(client):
    response = client.post(
        "/admin/calendar-events", json={"title": "Nap", **SLOT, "type": "personal"}, headers=CUSTOMER_AUTH
    )
    assert response.status_code == 403


def test_calendar_event_rejects_job_type(client):
    response = client.post(
        "/admin/calendar-events", json={"title": "Job", **SLOT, "type": "job"}, headers=ADMIN_AUTH
    )
    assert response.status_code == 422


def test_customer_subscribes_to_calendar_feed(client, jobs):
    job = jobs.make(status=JobStatus.QUOTE_ACCEPTED)
    scheduled = client.post(f"/admin/jobs/{job.id}/schedule", json=SLOT, headers=ADMIN_AUTH)
    assert scheduled.status_code == 200

    url = client.get("/calendar/feed-url", headers=CUSTOMER_AUTH).json()["url"]
    path = url[url.index("/calendar/feed/") :]

    feed = client.get(path)

    assert feed.status_code == 200
    assert feed.headers["content-type"].startswith("text/calendar")
    assert "SUMMARY:Gutter cleaning" in feed.text
    assert "STATUS:CONFIRMED" in feed.text


def test_rotated_feed_url_retires_the_old_one(client):
    old = client.get("/calendar/feed-url", headers=CUSTOMER_AUTH).json()["url"]
    new = client.post("/calendar/feed-url/rotate", headers=CUSTOMER_AUTH).json()["url"]

    assert new != old
    assert client.get(old[old.index("/calendar/feed/") :]).status_code == 404
    assert client.get(new[new.index("/calendar/feed/") :]).status_code == 200


def test_feed_url_requires_a_session(client):
    assert client.get("/calendar/feed-url").status_code in (401, 403)

# ---------------------------------------------------------------------------
# Customer routes
# ---------------------------------------------------------------------------


def test_customer_booking_then_full_day_is_rejected(client):
    booked = client.post("/bookings", json={"title": "Window wash", **SLOT}, headers=CUSTOMER_AUTH)
    assert booked.status_code == 201
    assert booked.json()["job"]["status"] == "draft_quote"

    long_slot = {"start": "2026-03-10T10:00:00+00:00", "end": "2026-03-10T17:00:00+00:00"}
    rejected = client.post("/bookings", json={"title": "Fence", **long_slot}, headers=CUSTOMER_AUTH)
    assert rejected.status_code == 409
    assert rejected.json()["error"] == "CapacityExceeded"


def test_customer_sees_only_own_jobs(client, jobs):
    mine = jobs.make()
    theirs = jobs.make(customer_id="customer-2")

    listed = client.get("/jobs", headers=CUSTOMER_AUTH).json()
    assert [j["id"] for j in listed["jobs"]] == [mine.id]
    assert client.get(f"/jobs/{theirs.id}", headers=CUSTOMER_AUTH).status_code == 404


def test_customer_accepts_quote(client, jobs, lifecycle):
    job = jobs.make()
    client.post(f"/admin/jobs/{job.id}/quote", headers=ADMIN_AUTH)

    accepted = client.post(f"/jobs/{job.id}/quote/accept", headers=CUSTOMER_AUTH)
    stolen = client.post(f"/jobs/{job.id}/quote/decline", headers=OTHER_AUTH)

    assert accepted.json()["job"]["status"] == "quote_accepted"
    assert stolen.status_code == 404


def test_revision_request_keeps_quote_open(client, jobs, transport):
    job = jobs.make(status=JobStatus.QUOTE_SENT)

    response = client.post(
        f"/jobs/{job.id}/quote/revision", json={"reason": "Please drop the extras"}, headers=CUSTOMER_AUTH
    )

    assert response.status_code == 200
    assert response.json()["job"]["status"] == "quote_sent"
    assert transport.types()[-1] == "quote_revision_requested"


def test_availability_range_is_bounded(client):
    inverted = client.get(
        "/availability", params={"start": "2026-03-10", "end": "2026-03-01"}, headers=CUSTOMER_AUTH
    )
    too_long = client.get(
        "/availability", params={"start": "2026-01-01", "end": "2027-06-01"}, headers=CUSTOMER_AUTH
    )
    assert inverted.status_code == 422
    assert too_long.status_code == 422


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


def test_recurrence_round_trip(client, jobs):
    job = jobs.make(status=JobStatus.SCHEDULED)

    proposed = client.post(
        f"/jobs/{job.id}/recurrence", json={"frequency": 2, "requested_day": 3}, headers=CUSTOMER_AUTH
    )
    assert proposed.status_code == 201
    request_id = proposed.json()["id"]

    duplicate = client.post(f"/jobs/{job.id}/recurrence", json={"frequency": 1}, headers=CUSTOMER_AUTH)
    assert duplicate.status_code == 409

    pending = client.get("/admin/recurrence-requests", headers=ADMIN_AUTH).json()
    assert [r["id"] for r in pending] == [request_id]

    decided = client.post(
        f"/admin/recurrence-requests/{request_id}", json={"status": "accepted"}, headers=ADMIN_AUTH
    )
    assert decided.json()["status"] == "accepted"
    assert jobs.jobs[job.id].recurrence_rule == "FREQ=WEEKLY;INTERVAL=2;BYDAY=WE"

    days = client.get("/availability/recurrence-days", headers=CUSTOMER_AUTH).json()
    assert days == {"unavailable_weekdays": [3]}


def test_counter_without_frequency_is_rejected(client):
    response = client.post(
        "/admin/recurrence-requests/1", json={"status": "countered"}, headers=ADMIN_AUTH
    )
    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Billing webhook and import
# ---------------------------------------------------------------------------


def _signed(payload: bytes, secret: str) -> dict:
    timestamp = int(time.time())
    return {"Stripe-Signature": f"t={timestamp},v1={compute_signature(payload, timestamp, secret)}"}


def test_webhook_applies_payment(client, jobs, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_route")
    job = jobs.make(status=JobStatus.PAYMENT_PENDING, provider_invoice_id="in_42")
    payload = json.dumps(
        {"id": "evt_9", "type": "invoice.paid", "data": {"object": {"id": "in_42"}}}
    ).encode()

    response = client.post("/webhooks/billing", content=payload, headers=_signed(payload, "whsec_route"))

    assert response.status_code == 200
    assert response.json()["applied"] == ["record_payment"]
    assert jobs.jobs[job.id].status is JobStatus.PAID


def test_webhook_with_bad_signature_is_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_route")
    payload = b'{"id": "evt_1", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}}'

    response = client.post("/webhooks/billing", content=payload, headers=_signed(payload, "wrong"))

    assert response.status_code == 400
    assert response.json()["error"] == "WebhookSignatureError"


def test_import_route_requires_admin_and_reports_counts(client):
    assert client.post("/admin/billing/import", headers=CUSTOMER_AUTH).status_code == 403

    response = client.post("/admin/billing/import", params={"kind": "invoice"}, headers=ADMIN_AUTH)
    assert response.json() == {"imported": 0, "skipped": 0, "imported_job_ids": []}
