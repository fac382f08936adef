import pytest

from jobflow.auth.verify import CallerContext, auth_dependency, require_admin
from jobflow.models.domain.errors import ProviderOutcomeUnknown, ProviderUnavailable
from jobflow.services.billing.reconciliation_service import BillingReconciliationService
from jobflow.services.billing.sync_service import BillingSyncService
from jobflow.services.calendar.availability_service import AvailabilityService
from jobflow.services.calendar.feed_service import CalendarFeedService
from jobflow.services.lifecycle.job_service import JobLifecycleService
from jobflow.services.recurrence.recurrence_service import RecurrenceService
from tests.fakes import (
    ADMIN,
    CAPACITY_MINUTES,
    CUSTOMER,
    NOW,
    UTC_ZONE,
    FakeBillingProvider,
    FakeJobRepository,
    FakeRecipientRepository,
    FakeRecurrenceRepository,
    FakeTransport,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def jobs():
    return FakeJobRepository()


@pytest.fixture
def recipients():
    return FakeRecipientRepository([CUSTOMER, ADMIN])


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def billing(provider, jobs, recipients):
    return BillingSyncService(provider=provider, jobs=jobs, recipients=recipients)


@pytest.fixture
def availability(jobs):
    return AvailabilityService(jobs.calendar, zone=UTC_ZONE, capacity_minutes=CAPACITY_MINUTES)


@pytest.fixture
def feeds(jobs, recipients, clock):
    return CalendarFeedService(jobs.calendar, recipients, clock=clock)


@pytest.fixture
def lifecycle(jobs, billing, transport, availability, clock):
    return JobLifecycleService(
        jobs=jobs, billing=billing, transport=transport, availability=availability, clock=clock
    )


@pytest.fixture
def reconciliation(lifecycle, jobs):
    return BillingReconciliationService(lifecycle=lifecycle, jobs=jobs)


@pytest.fixture
def recurrence(jobs, recipients, transport):
    return RecurrenceService(
        requests=FakeRecurrenceRepository(jobs),
        jobs=jobs,
        recipients=recipients,
        transport=transport,
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.fixture
def apply_auth_override():
    def _apply(app, user_id="customer-1", role="customer"):
        caller = CallerContext(user_id=user_id, role=role)
        app.dependency_overrides[auth_dependency] = lambda: caller
        if role == "admin":
            app.dependency_overrides[require_admin] = lambda: caller

    return _apply


@pytest.fixture
def provider_errors():
    return {
        "unavailable": ProviderUnavailable("Stripe is down", operation="test"),
        "unknown": ProviderOutcomeUnknown("Stripe timed out", operation="test"),
    }
