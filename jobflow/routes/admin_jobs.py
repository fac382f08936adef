"""
Admin API Routes
Drafting, billing, and lifecycle operations on jobs. Every route requires the
admin role; the services themselves are role-agnostic.
"""

from datetime import date

from fastapi import APIRouter, Depends, status

from jobflow.auth.verify import CallerContext, require_admin
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.api.job_request import (
    BlockDateRequest,
    CalendarEventRequest,
    CancelRequest,
    CreateJobRequest,
    LineItemInput,
    ScheduleRequest,
    SendDocumentRequest,
)
from jobflow.models.api.job_response import (
    BlockedDateResponse,
    CalendarEventResponse,
    JobResponse,
    JobsListResponse,
    ReconcileResponse,
    TransitionResponse,
)
from jobflow.models.domain.errors import NotFound
from jobflow.models.domain.job_domain import CalendarEventType
from jobflow.routes.dependencies import (
    get_availability_service,
    get_billing_service,
    get_lifecycle_service,
    get_reconciliation_service,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/jobs", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    body: CreateJobRequest,
    caller: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    job = await lifecycle.create_job(
        customer_id=body.customer_id,
        title=body.title,
        description=body.description,
        line_items=[(i.description, i.unit_amount_cents, i.quantity) for i in body.line_items],
    )
    logger.info("Job created by admin", job_id=job.id, admin_id=caller.user_id)
    return JobResponse.from_domain(job)


@router.get("/jobs/drafts", response_model=JobsListResponse)
async def list_drafts(
    _: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    jobs = await lifecycle.list_drafts()
    return JobsListResponse(jobs=[JobResponse.from_domain(j) for j in jobs], total_count=len(jobs))


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    _: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    return JobResponse.from_domain(await lifecycle.get_job(job_id))


# ----------------------------------------------------------------------
# Line items and billing drafts
# ----------------------------------------------------------------------


@router.post("/jobs/{job_id}/line-items", response_model=JobResponse)
async def add_line_item(
    job_id: str,
    body: LineItemInput,
    _: CallerContext = Depends(require_admin),
    billing=Depends(get_billing_service),
):
    job = await billing.add_line_item(
        job_id, body.description, body.unit_amount_cents, body.quantity
    )
    return JobResponse.from_domain(job)


@router.delete("/jobs/{job_id}/line-items/{item_id}", response_model=JobResponse)
async def delete_line_item(
    job_id: str,
    item_id: int,
    _: CallerContext = Depends(require_admin),
    billing=Depends(get_billing_service),
):
    return JobResponse.from_domain(await billing.delete_line_item(job_id, item_id))


@router.post("/jobs/{job_id}/billing-draft", response_model=JobResponse)
async def create_billing_draft(
    job_id: str,
    _: CallerContext = Depends(require_admin),
    billing=Depends(get_billing_service),
):
    return JobResponse.from_domain(await billing.create_draft(job_id))


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------


@router.post("/jobs/{job_id}/quote", response_model=TransitionResponse)
async def send_quote(
    job_id: str,
    body: SendDocumentRequest | None = None,
    _: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    outcome = await lifecycle.send_quote(job_id, due_at=body.due_at if body else None)
    return TransitionResponse.from_outcome(outcome)


@router.post("/jobs/{job_id}/schedule", response_model=TransitionResponse)
async def schedule_job(
    job_id: str,
    body: ScheduleRequest,
    _: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    outcome = await lifecycle.schedule(job_id, body.start, body.end)
    return TransitionResponse.from_outcome(outcome)


@router.post("/jobs/{job_id}/start", response_model=TransitionResponse)
async def start_job(
    job_id: str,
    _: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    return TransitionResponse.from_outcome(await lifecycle.start(job_id))


@router.post("/jobs/{job_id}/complete", response_model=TransitionResponse)
async def complete_job(
    job_id: str,
    _: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    return TransitionResponse.from_outcome(await lifecycle.complete(job_id))


@router.post("/jobs/{job_id}/invoice", response_model=TransitionResponse)
async def send_invoice(
    job_id: str,
    body: SendDocumentRequest | None = None,
    _: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    outcome = await lifecycle.send_invoice(job_id, due_at=body.due_at if body else None)
    return TransitionResponse.from_outcome(outcome)


@router.post("/jobs/{job_id}/cancel", response_model=TransitionResponse)
async def cancel_job(
    job_id: str,
    body: CancelRequest | None = None,
    _: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    outcome = await lifecycle.cancel(job_id, reason=body.reason if body else None)
    return TransitionResponse.from_outcome(outcome)


@router.post("/jobs/{job_id}/mark-paid", response_model=TransitionResponse)
async def mark_job_paid(
    job_id: str,
    _: CallerContext = Depends(require_admin),
    lifecycle=Depends(get_lifecycle_service),
):
    return TransitionResponse.from_outcome(await lifecycle.mark_paid(job_id))


@router.post("/jobs/{job_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_job(
    job_id: str,
    _: CallerContext = Depends(require_admin),
    reconciliation=Depends(get_reconciliation_service),
):
    result = await reconciliation.reconcile_job(job_id)
    return ReconcileResponse(
        handled=result.handled, job_id=result.job_id, applied=result.applied, detail=result.detail
    )


# ----------------------------------------------------------------------
# Blocked dates
# ----------------------------------------------------------------------


@router.post(
    "/blocked-dates", response_model=BlockedDateResponse, status_code=status.HTTP_201_CREATED
)
async def block_date(
    body: BlockDateRequest,
    _: CallerContext = Depends(require_admin),
    availability=Depends(get_availability_service),
):
    blocked = await availability.repository.block_date(body.day, body.reason)
    return BlockedDateResponse.from_domain(blocked)


@router.delete("/blocked-dates/{day}", status_code=status.HTTP_204_NO_CONTENT)
async def unblock_date(
    day: date,
    _: CallerContext = Depends(require_admin),
    availability=Depends(get_availability_service),
):
    if not await availability.repository.unblock_date(day):
        raise NotFound("BlockedDate", day.isoformat())


# ----------------------------------------------------------------------
# Blocked and personal calendar events
# ----------------------------------------------------------------------


@router.post(
    "/calendar-events", response_model=CalendarEventResponse, status_code=status.HTTP_201_CREATED
)
async def add_calendar_event(
    body: CalendarEventRequest,
    caller: CallerContext = Depends(require_admin),
    availability=Depends(get_availability_service),
):
    event = await availability.add_calendar_event(
        title=body.title,
        start=body.start,
        end=body.end,
        type=CalendarEventType(body.type),
        customer_id=body.customer_id,
    )
    logger.info("Calendar event added by admin", event_id=event.id, admin_id=caller.user_id)
    return CalendarEventResponse.from_domain(event)


@router.delete("/calendar-events/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_calendar_event(
    event_id: int,
    _: CallerContext = Depends(require_admin),
    availability=Depends(get_availability_service),
):
    await availability.remove_calendar_event(event_id)
