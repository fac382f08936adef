"""
Job lifecycle service: the effect runner around the pure state machine.

For every event:
1. load the job and compute the transition (raises before any I/O),
2. run billing effects against the provider and attach returned ids,
3. commit the status compare-and-swap plus calendar effects in one
   transaction,
4. enqueue notifications. An enqueue failure is logged and reported on the
   outcome; the committed transition stands.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from jobflow.config import settings
from jobflow.db.helpers import DatabaseError
from jobflow.infrastructure.observability.logging import get_logger, log_transition
from jobflow.models.domain.billing_domain import ProviderDocument
from jobflow.models.domain.errors import (
    InvalidTransition,
    JobflowError,
    NotFound,
)
from jobflow.models.domain.job_domain import Job, JobStatus
from jobflow.models.domain.notification_domain import ADMINS, Channel, NotificationType
from jobflow.repositories.job_repository import JobRepository
from jobflow.services.billing.sync_service import BillingSyncService, billing_sync_service
from jobflow.services.calendar.availability_service import (
    AvailabilityService,
    availability_service,
)
from jobflow.services.lifecycle.state_machine import (
    AcceptProviderQuote,
    CancelProviderDocument,
    CreateProviderDocument,
    EventSource,
    JobEvent,
    JobEventType,
    Notify,
    Transition,
    attach_provider_document,
    ensure_allowed,
    job_snapshot,
    transition,
)
from jobflow.services.notifications.transport import (
    RedisNotificationTransport,
    notification_transport,
)

logger = get_logger(__name__)


@dataclass(slots=True)
class TransitionOutcome:
    job: Job
    previous_status: JobStatus
    event: JobEventType | None
    notifications_enqueued: int = 0
    notification_errors: list[str] = field(default_factory=list)


class JobLifecycleService:
    def __init__(
        self,
        jobs=JobRepository,
        billing: BillingSyncService | None = None,
        transport: RedisNotificationTransport | None = None,
        availability: AvailabilityService | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.jobs = jobs
        self.billing = billing or billing_sync_service
        self.transport = transport or notification_transport
        self.availability = availability or availability_service
        self.clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str, owner_id: str | None = None) -> Job:
        """Load a job; when ``owner_id`` is given, other customers' jobs are NotFound."""
        job = await self.jobs.get(job_id)
        if not job or (owner_id is not None and job.customer_id != owner_id):
            raise NotFound("Job", job_id)
        return job

    async def list_jobs(self, customer_id: str) -> list[Job]:
        return await self.jobs.list_for_customer(customer_id)

    async def list_drafts(self) -> list[Job]:
        return await self.jobs.list_by_status([JobStatus.DRAFT_QUOTE])

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_job(
        self,
        customer_id: str,
        title: str,
        description: str | None = None,
        line_items: list[tuple[str, int, int]] | None = None,
    ) -> Job:
        """Admin-created draft quote."""
        return await self.jobs.create(
            customer_id=customer_id,
            title=title,
            description=description,
            line_items=line_items,
        )

    async def request_booking(
        self,
        customer_id: str,
        title: str,
        start: datetime,
        end: datetime,
        description: str | None = None,
    ) -> TransitionOutcome:
        """
        Customer booking request: a draft_quote job holding a pending slot.
        The availability check rejects early; the reservation re-checks
        capacity under a lock so concurrent requests cannot overbook.
        """
        await self.availability.check_slot(start, end)
        job = await self.jobs.create(
            customer_id=customer_id,
            title=title,
            description=description,
            slot=(start, end),
        )
        outcome = TransitionOutcome(job=job, previous_status=job.status, event=None)
        await self._enqueue(
            outcome,
            [
                Notify(
                    NotificationType.BOOKING_REQUESTED,
                    ADMINS,
                    (Channel.EMAIL, Channel.PUSH),
                    {"start": start.isoformat(), "end": end.isoformat()},
                )
            ],
        )
        return outcome

    # ------------------------------------------------------------------
    # Effect runner
    # ------------------------------------------------------------------

    async def apply(
        self,
        job_id: str,
        event: JobEvent,
        *,
        owner_id: str | None = None,
        document: ProviderDocument | None = None,
    ) -> TransitionOutcome:
        """
        Apply one lifecycle event. ``document`` supplies an already finalized
        provider document (reconciliation) instead of calling the provider.
        """
        job = await self.get_job(job_id, owner_id)
        result = transition(
            job,
            event,
            self.clock(),
            quote_validity=timedelta(days=settings.QUOTE_VALIDITY_DAYS),
            invoice_terms=timedelta(days=settings.INVOICE_DUE_DAYS),
        )

        next_job = await self._run_billing_effects(result, document)
        result = replace(result, job=next_job)

        try:
            committed = await self.jobs.commit_transition(result)
        except (DatabaseError, JobflowError):
            if result.billing_effects:
                logger.error(
                    "Local commit failed after provider call; reconcile the job",
                    job_id=job.id,
                    job_event=event.type.value,
                    provider_quote_id=next_job.provider_quote_id,
                    provider_invoice_id=next_job.provider_invoice_id,
                )
            raise

        if not committed:
            current = await self.get_job(job.id)
            if result.billing_effects:
                logger.error(
                    "Transition lost a race after provider call; reconcile the job",
                    job_id=job.id,
                    job_event=event.type.value,
                    current_status=current.status.value,
                )
            raise InvalidTransition(current.status.value, event.type.value)

        log_transition(
            job.id,
            event.type.value,
            job.status.value,
            next_job.status.value,
            source=event.source.value,
        )

        outcome = TransitionOutcome(job=next_job, previous_status=job.status, event=event.type)
        await self._enqueue(outcome, result.notifications)
        return outcome

    async def _run_billing_effects(
        self, result: Transition, document: ProviderDocument | None
    ) -> Job:
        job = result.job
        for effect in result.billing_effects:
            try:
                if isinstance(effect, CreateProviderDocument):
                    finalized = document or await self.billing.finalize_document(
                        result.previous, effect.kind
                    )
                    job = attach_provider_document(job, finalized)
                elif isinstance(effect, AcceptProviderQuote):
                    await self.billing.accept_quote(effect.provider_id)
                elif isinstance(effect, CancelProviderDocument):
                    await self.billing.cancel(effect.kind, effect.provider_id)
            except JobflowError as e:
                logger.error(
                    "Billing effect failed; job left unchanged",
                    job_id=job.id,
                    job_event=result.event.type.value,
                    effect=type(effect).__name__,
                    error=str(e),
                )
                raise
        return job

    async def _enqueue(self, outcome: TransitionOutcome, notifications: list[Notify]) -> None:
        for notification in notifications:
            payload = {**job_snapshot(outcome.job), **notification.payload}
            try:
                await self.transport.enqueue(
                    notification.type,
                    notification.recipient,
                    list(notification.channels),
                    payload,
                )
                outcome.notifications_enqueued += 1
            except Exception as e:
                logger.error(
                    "Notification enqueue failed after commit",
                    job_id=outcome.job.id,
                    notification_type=notification.type.value,
                    error=str(e),
                )
                outcome.notification_errors.append(f"{notification.type.value}: {e}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def send_quote(self, job_id: str, due_at: datetime | None = None) -> TransitionOutcome:
        return await self.apply(job_id, JobEvent(JobEventType.SEND_QUOTE, due_at=due_at))

    async def accept_quote(self, job_id: str, owner_id: str | None = None) -> TransitionOutcome:
        return await self.apply(
            job_id,
            JobEvent(JobEventType.ACCEPT_QUOTE, source=EventSource.CUSTOMER),
            owner_id=owner_id,
        )

    async def decline_quote(self, job_id: str, owner_id: str | None = None) -> TransitionOutcome:
        return await self.apply(
            job_id,
            JobEvent(JobEventType.DECLINE_QUOTE, source=EventSource.CUSTOMER),
            owner_id=owner_id,
        )

    async def request_revision(
        self, job_id: str, reason: str, owner_id: str | None = None
    ) -> TransitionOutcome:
        return await self.apply(
            job_id,
            JobEvent(JobEventType.REQUEST_REVISION, source=EventSource.CUSTOMER, reason=reason),
            owner_id=owner_id,
        )

    async def schedule(self, job_id: str, start: datetime, end: datetime) -> TransitionOutcome:
        return await self.apply(
            job_id, JobEvent(JobEventType.SCHEDULE, slot_start=start, slot_end=end)
        )

    async def start(self, job_id: str) -> TransitionOutcome:
        return await self.apply(job_id, JobEvent(JobEventType.START))

    async def complete(self, job_id: str) -> TransitionOutcome:
        return await self.apply(job_id, JobEvent(JobEventType.COMPLETE))

    async def send_invoice(self, job_id: str, due_at: datetime | None = None) -> TransitionOutcome:
        return await self.apply(job_id, JobEvent(JobEventType.SEND_INVOICE, due_at=due_at))

    async def cancel(
        self, job_id: str, reason: str | None = None, owner_id: str | None = None
    ) -> TransitionOutcome:
        source = EventSource.CUSTOMER if owner_id else EventSource.ADMIN
        return await self.apply(
            job_id, JobEvent(JobEventType.CANCEL, source=source, reason=reason), owner_id=owner_id
        )

    async def mark_paid(self, job_id: str) -> TransitionOutcome:
        """
        Record an out-of-band payment: the provider invoice is marked paid
        first, then the job moves to paid (via payment_pending if needed).
        """
        job = await self.get_job(job_id)
        if job.status is JobStatus.INVOICED:
            steps = [JobEventType.AWAIT_PAYMENT, JobEventType.RECORD_PAYMENT]
        else:
            steps = [JobEventType.RECORD_PAYMENT]
        ensure_allowed(job, steps[0])

        if job.provider_invoice_id:
            await self.billing.mark_paid(job.provider_invoice_id)
        else:
            logger.warning("Marking job paid without a provider invoice", job_id=job.id)

        for step in steps:
            outcome = await self.apply(job_id, JobEvent(step))
        return outcome

    async def apply_if_allowed(
        self, job: Job, event: JobEvent, document: ProviderDocument | None = None
    ) -> TransitionOutcome | None:
        """Apply ``event`` unless the job already moved on; used by reconciliation."""
        try:
            ensure_allowed(job, event.type)
        except InvalidTransition:
            return None
        try:
            return await self.apply(job.id, event, document=document)
        except InvalidTransition as e:
            logger.info(
                "Reconciliation event superseded",
                job_id=job.id,
                job_event=event.type.value,
                error=str(e),
            )
            return None


job_lifecycle_service = JobLifecycleService()
