"""
Recurrence proposals: a customer asks for a job to repeat, an admin accepts,
declines, or counters. Accepting is the only path that writes a job's
recurrence rule.
"""

from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.errors import InvalidTransition, NotFound
from jobflow.models.domain.notification_domain import ADMINS, Channel, NotificationType
from jobflow.models.domain.recurrence_domain import (
    RecurrenceRequest,
    RecurrenceRequestStatus,
    compile_recurrence_rule,
    validate_proposal,
)
from jobflow.repositories.job_repository import JobRepository
from jobflow.repositories.recipient_repository import RecipientRepository
from jobflow.repositories.recurrence_repository import RecurrenceRepository
from jobflow.services.notifications.transport import (
    RedisNotificationTransport,
    notification_transport,
)

logger = get_logger(__name__)

_DECISIONS = (
    RecurrenceRequestStatus.ACCEPTED,
    RecurrenceRequestStatus.DECLINED,
    RecurrenceRequestStatus.COUNTERED,
)


class RecurrenceService:
    def __init__(
        self,
        requests=RecurrenceRepository,
        jobs=JobRepository,
        recipients=RecipientRepository,
        transport: RedisNotificationTransport | None = None,
    ):
        self.requests = requests
        self.jobs = jobs
        self.recipients = recipients
        self.transport = transport or notification_transport

    async def propose(
        self, job_id: str, customer_id: str, frequency: int, requested_day: int | None = None
    ) -> RecurrenceRequest:
        validate_proposal(frequency, requested_day)

        job = await self.jobs.get(job_id)
        if not job or job.customer_id != customer_id:
            raise NotFound("Job", job_id)

        request = await self.requests.create(job.id, customer_id, frequency, requested_day)

        customer = await self.recipients.get(customer_id)
        await self._notify(
            NotificationType.RECURRENCE_REQUEST_NEW,
            ADMINS,
            request,
            job_title=job.title,
            customer_name=customer.name if customer else "A customer",
        )
        return request

    async def decide(
        self,
        request_id: int,
        status: RecurrenceRequestStatus,
        frequency: int | None = None,
        requested_day: int | None = None,
    ) -> RecurrenceRequest:
        """
        Accept, decline, or counter an open request.

        A counter replaces the proposal's values on the same record. An
        acceptance compiles the rule from the request's current values, or
        from the values given alongside it.
        """
        if status not in _DECISIONS:
            raise ValueError(f"'{status.value}' is not a decision")

        current = await self.requests.get(request_id)
        if not current:
            raise NotFound("RecurrenceRequest", request_id)
        if not current.is_open:
            raise InvalidTransition(current.status.value, status.value)

        rule = None
        if status is RecurrenceRequestStatus.COUNTERED:
            if frequency is None:
                raise ValueError("A counter proposal needs a frequency")
            validate_proposal(frequency, requested_day)
        elif status is RecurrenceRequestStatus.ACCEPTED:
            final_frequency = frequency if frequency is not None else current.frequency
            final_day = requested_day if requested_day is not None else current.requested_day
            rule = compile_recurrence_rule(final_frequency, final_day)

        decided = await self.requests.decide(
            request_id,
            status,
            frequency=frequency if status is not RecurrenceRequestStatus.DECLINED else None,
            requested_day=requested_day,
            recurrence_rule=rule,
        )

        job = await self.jobs.get(decided.job_id)
        await self._notify(
            NotificationType.RECURRENCE_REQUEST_RESPONSE,
            decided.customer_id,
            decided,
            job_title=job.title if job else "",
            decision=decided.status.value,
            recurrence_rule=rule,
        )
        return decided

    async def list_pending(self) -> list[RecurrenceRequest]:
        return await self.requests.list_open()

    async def _notify(
        self,
        notification_type: NotificationType,
        recipient_id: str,
        request: RecurrenceRequest,
        **payload,
    ) -> None:
        try:
            await self.transport.enqueue(
                notification_type,
                recipient_id,
                [Channel.EMAIL, Channel.PUSH],
                {
                    "job_id": request.job_id,
                    "request_id": request.id,
                    "frequency": request.frequency,
                    "requested_day": request.requested_day,
                    **payload,
                },
            )
        except Exception as e:
            logger.error(
                "Recurrence notification enqueue failed",
                request_id=request.id,
                notification_type=notification_type.value,
                error=str(e),
            )


recurrence_service = RecurrenceService()
