"""
Error taxonomy for the lifecycle engine.

Validation errors carry enough context for the caller to correct input.
Provider errors keep the job id for logs; end users only see a generic
"try again" message (see the exception handlers in jobflow.main).
"""


class JobflowError(Exception):
    """Base class for all engine errors."""

    status_code = 400
    public_message: str | None = None

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "detail": self.public_message or str(self),
            **({"context": self.context} if self.context and not self.public_message else {}),
        }


class InvalidTransition(JobflowError):
    """The job's current state does not permit the requested event."""

    status_code = 409

    def __init__(self, current: str, requested: str, message: str | None = None):
        super().__init__(
            message or f"Cannot apply '{requested}' to a job in status '{current}'",
            current=current,
            requested=requested,
        )
        self.current = current
        self.requested = requested


class MissingLineItems(InvalidTransition):
    status_code = 422

    def __init__(self, current: str, requested: str):
        super().__init__(
            current, requested, f"Job needs at least one line item before '{requested}'"
        )


class CapacityExceeded(JobflowError):
    status_code = 409

    def __init__(self, day: str, committed_minutes: int, capacity_minutes: int):
        super().__init__(
            f"{day} is fully booked",
            day=day,
            committed_minutes=committed_minutes,
            capacity_minutes=capacity_minutes,
        )


class DateBlocked(JobflowError):
    status_code = 409

    def __init__(self, day: str):
        super().__init__(f"{day} is not available for booking", day=day)


class RequestAlreadyPending(JobflowError):
    status_code = 409

    def __init__(self, job_id: str):
        super().__init__(
            "A recurrence request for this job is already awaiting a decision", job_id=job_id
        )


class AlreadyFinalized(JobflowError):
    status_code = 409

    def __init__(self, job_id: str, detail: str = "Billing document is already finalized"):
        super().__init__(detail, job_id=job_id)


class NotFound(JobflowError):
    status_code = 404

    def __init__(self, resource: str, resource_id):
        super().__init__(f"{resource} not found", resource=resource, resource_id=str(resource_id))


class ProviderUnavailable(JobflowError):
    """The billing provider failed; no local state was changed."""

    status_code = 503
    public_message = "The billing service is temporarily unavailable. Please try again."

    def __init__(self, message: str, operation: str, job_id: str | None = None):
        super().__init__(message, operation=operation, job_id=job_id)
        self.operation = operation
        self.job_id = job_id


class ProviderOutcomeUnknown(ProviderUnavailable):
    """
    A mutating provider call timed out. It may have succeeded provider-side,
    so it must be recovered through reconciliation, not repeated.
    """


class ProviderRejected(JobflowError):
    """The provider refused the request (4xx); repeating it will not help."""

    status_code = 502

    def __init__(self, message: str, operation: str, provider_code: str | None = None):
        super().__init__(message, operation=operation, provider_code=provider_code)
        self.provider_code = provider_code


class WebhookSignatureError(JobflowError):
    status_code = 400
