"""
Service providers for route dependencies.

Routes resolve services through these functions so tests can swap them with
``app.dependency_overrides``.
"""

from jobflow.services.billing.reconciliation_service import (
    BillingReconciliationService,
    billing_reconciliation_service,
)
from jobflow.services.billing.sync_service import BillingSyncService, billing_sync_service
from jobflow.services.calendar.availability_service import (
    AvailabilityService,
    availability_service,
)
from jobflow.services.calendar.feed_service import CalendarFeedService, calendar_feed_service
from jobflow.services.lifecycle.job_service import JobLifecycleService, job_lifecycle_service
from jobflow.services.recurrence.recurrence_service import RecurrenceService, recurrence_service


def get_lifecycle_service() -> JobLifecycleService:
    return job_lifecycle_service


def get_billing_service() -> BillingSyncService:
    return billing_sync_service


def get_reconciliation_service() -> BillingReconciliationService:
    return billing_reconciliation_service


def get_availability_service() -> AvailabilityService:
    return availability_service


def get_recurrence_service() -> RecurrenceService:
    return recurrence_service


def get_calendar_feed_service() -> CalendarFeedService:
    return calendar_feed_service
