"""
Recurrence API Routes
Customers propose a repeat schedule for their job; admins decide.
"""

from fastapi import APIRouter, Depends, status

from jobflow.auth.verify import CallerContext, auth_dependency, require_admin
from jobflow.models.api.recurrence_request import (
    DecideRecurrenceRequest,
    ProposeRecurrenceRequest,
    RecurrenceRequestResponse,
)
from jobflow.models.domain.recurrence_domain import RecurrenceRequestStatus
from jobflow.routes.dependencies import get_recurrence_service

router = APIRouter(tags=["recurrence"])


@router.post(
    "/jobs/{job_id}/recurrence",
    response_model=RecurrenceRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def propose_recurrence(
    job_id: str,
    body: ProposeRecurrenceRequest,
    caller: CallerContext = Depends(auth_dependency),
    recurrence=Depends(get_recurrence_service),
):
    request = await recurrence.propose(job_id, caller.user_id, body.frequency, body.requested_day)
    return RecurrenceRequestResponse.from_domain(request)


@router.get("/admin/recurrence-requests", response_model=list[RecurrenceRequestResponse])
async def list_recurrence_requests(
    _: CallerContext = Depends(require_admin),
    recurrence=Depends(get_recurrence_service),
):
    return [RecurrenceRequestResponse.from_domain(r) for r in await recurrence.list_pending()]


@router.post("/admin/recurrence-requests/{request_id}", response_model=RecurrenceRequestResponse)
async def decide_recurrence_request(
    request_id: int,
    body: DecideRecurrenceRequest,
    _: CallerContext = Depends(require_admin),
    recurrence=Depends(get_recurrence_service),
):
    request = await recurrence.decide(
        request_id,
        RecurrenceRequestStatus(body.status),
        frequency=body.frequency,
        requested_day=body.requested_day,
    )
    return RecurrenceRequestResponse.from_domain(request)
