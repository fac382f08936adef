# jobflow/models/api/recurrence_request.py
"""
Recurrence API request and response models.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from jobflow.models.domain.recurrence_domain import RecurrenceRequest


class ProposeRecurrenceRequest(BaseModel):
    frequency: int = Field(..., ge=1, le=52, description="Repeat every N weeks")
    requested_day: int | None = Field(None, ge=0, le=6, description="Weekday, Sunday is 0")


class DecideRecurrenceRequest(BaseModel):
    status: Literal["accepted", "declined", "countered"]
    frequency: int | None = Field(None, ge=1, le=52)
    requested_day: int | None = Field(None, ge=0, le=6)

    @model_validator(mode="after")
    def _counter_needs_frequency(self):
        if self.status == "countered" and self.frequency is None:
            raise ValueError("A counter proposal needs a frequency")
        return self


class RecurrenceRequestResponse(BaseModel):
    id: int
    job_id: str
    customer_id: str
    frequency: int
    requested_day: int | None = None
    status: str
    job_title: str | None = None
    customer_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_domain(cls, request: RecurrenceRequest) -> "RecurrenceRequestResponse":
        return cls(
            id=request.id,
            job_id=request.job_id,
            customer_id=request.customer_id,
            frequency=request.frequency,
            requested_day=request.requested_day,
            status=request.status.value,
            job_title=request.job_title,
            customer_name=request.customer_name,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )
