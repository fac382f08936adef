"""
Customer API Routes
Booking requests and quote responses. Jobs owned by other customers are
reported as not found.
"""

from fastapi import APIRouter, Depends, status

from jobflow.auth.verify import CallerContext, auth_dependency
from jobflow.models.api.job_request import BookingRequest, RevisionRequest
from jobflow.models.api.job_response import JobResponse, JobsListResponse, TransitionResponse
from jobflow.routes.dependencies import get_lifecycle_service

router = APIRouter(tags=["jobs"])


@router.post("/bookings", response_model=TransitionResponse, status_code=status.HTTP_201_CREATED)
async def request_booking(
    body: BookingRequest,
    caller: CallerContext = Depends(auth_dependency),
    lifecycle=Depends(get_lifecycle_service),
):
    outcome = await lifecycle.request_booking(
        caller.user_id, body.title, body.start, body.end, body.description
    )
    return TransitionResponse.from_outcome(outcome)


@router.get("/jobs", response_model=JobsListResponse)
async def list_my_jobs(
    caller: CallerContext = Depends(auth_dependency),
    lifecycle=Depends(get_lifecycle_service),
):
    jobs = await lifecycle.list_jobs(caller.user_id)
    return JobsListResponse(jobs=[JobResponse.from_domain(j) for j in jobs], total_count=len(jobs))


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_my_job(
    job_id: str,
    caller: CallerContext = Depends(auth_dependency),
    lifecycle=Depends(get_lifecycle_service),
):
    return JobResponse.from_domain(await lifecycle.get_job(job_id, owner_id=caller.user_id))


@router.post("/jobs/{job_id}/quote/accept", response_model=TransitionResponse)
async def accept_quote(
    job_id: str,
    caller: CallerContext = Depends(auth_dependency),
    lifecycle=Depends(get_lifecycle_service),
):
    outcome = await lifecycle.accept_quote(job_id, owner_id=caller.user_id)
    return TransitionResponse.from_outcome(outcome)


@router.post("/jobs/{job_id}/quote/decline", response_model=TransitionResponse)
async def decline_quote(
    job_id: str,
    caller: CallerContext = Depends(auth_dependency),
    lifecycle=Depends(get_lifecycle_service),
):
    outcome = await lifecycle.decline_quote(job_id, owner_id=caller.user_id)
    return TransitionResponse.from_outcome(outcome)


@router.post("/jobs/{job_id}/quote/revision", response_model=TransitionResponse)
async def request_revision(
    job_id: str,
    body: RevisionRequest,
    caller: CallerContext = Depends(auth_dependency),
    lifecycle=Depends(get_lifecycle_service),
):
    outcome = await lifecycle.request_revision(job_id, body.reason, owner_id=caller.user_id)
    return TransitionResponse.from_outcome(outcome)
