# jobflow/models/api/job_request.py
"""
Job API request models.
Used by admin and customer routes for input validation.
"""

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class LineItemInput(BaseModel):
    description: str = Field(..., min_length=1, max_length=500, description="What is billed")
    unit_amount_cents: int = Field(..., ge=0, description="Unit price in cents")
    quantity: int = Field(default=1, ge=1, description="Units billed")


class CreateJobRequest(BaseModel):
    """Admin-created draft quote."""

    customer_id: str = Field(..., description="Customer the job belongs to")
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)
    line_items: list[LineItemInput] = Field(default_factory=list)


class _SlotRequest(BaseModel):
    start: datetime = Field(..., description="Slot start (timezone aware)")
    end: datetime = Field(..., description="Slot end (timezone aware)")

    @model_validator(mode="after")
    def _check_slot(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("start and end must include a timezone offset")
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class BookingRequest(_SlotRequest):
    """Customer booking request for a slot."""

    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)


class ScheduleRequest(_SlotRequest):
    pass


class SendDocumentRequest(BaseModel):
    due_at: datetime | None = Field(None, description="Override the default due date")


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=1000)


class RevisionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class BlockDateRequest(BaseModel):
    day: date
    reason: str | None = Field(None, max_length=500)


class CalendarEventRequest(_SlotRequest):
    """Admin-managed time off the booking calendar."""

    title: str = Field(..., min_length=1, max_length=200)
    type: Literal["blocked", "personal"] = Field(
        "blocked", description="Blocked events close every day they touch"
    )
    customer_id: str | None = None
