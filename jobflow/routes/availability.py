"""
Availability API Routes
Booked, pending, and blocked days for the booking calendar.
"""

from datetime import date, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from jobflow.auth.verify import CallerContext, auth_dependency
from jobflow.models.api.job_response import AvailabilityResponse, RecurrenceDaysResponse
from jobflow.routes.dependencies import get_availability_service

router = APIRouter(prefix="/availability", tags=["availability"])

MAX_RANGE_DAYS = 366


@router.get("", response_model=AvailabilityResponse)
async def get_availability(
    start: date = Query(..., description="First day (YYYY-MM-DD)"),
    end: date = Query(..., description="Last day, inclusive"),
    _: CallerContext = Depends(auth_dependency),
    availability=Depends(get_availability_service),
):
    if end < start:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="end before start")
    if end - start > timedelta(days=MAX_RANGE_DAYS):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Range is limited to {MAX_RANGE_DAYS} days",
        )

    result = await availability.get_availability(start, end)
    return AvailabilityResponse(start_day=start.isoformat(), end_day=end.isoformat(), **result.to_dict())


@router.get("/recurrence-days", response_model=RecurrenceDaysResponse)
async def get_recurrence_days(
    _: CallerContext = Depends(auth_dependency),
    availability=Depends(get_availability_service),
):
    return RecurrenceDaysResponse(unavailable_weekdays=await availability.unavailable_recurrence_days())
