"""
Reconciliation of provider-side state into local job status.

Two entry points share the lifecycle service's effect runner:
- ``reconcile_webhook``: a verified provider event advances the matching job.
  Unknown provider ids and jobs already past the target are acknowledged
  as no-ops so the provider stops retrying.
- ``reconcile_job``: recovery for unknown-outcome provider calls and for
  local commits that failed after the provider succeeded.
"""

from dataclasses import dataclass, field

from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.billing_domain import WebhookEvent
from jobflow.models.domain.job_domain import (
    LINE_ITEM_EDITABLE_STATUSES,
    DocumentKind,
    Job,
    JobStatus,
)
from jobflow.repositories.job_repository import JobRepository
from jobflow.services.billing.webhook_verify import parse_event, verify_signature
from jobflow.services.lifecycle.job_service import JobLifecycleService, job_lifecycle_service
from jobflow.services.lifecycle.state_machine import EventSource, JobEvent, JobEventType

logger = get_logger(__name__)

E = JobEventType

# Webhook type -> (document the object id refers to, lifecycle events to try in order)
WEBHOOK_EVENTS: dict[str, tuple[DocumentKind, tuple[JobEventType, ...]]] = {
    "invoice.paid": (DocumentKind.INVOICE, (E.AWAIT_PAYMENT, E.RECORD_PAYMENT)),
    "invoice.sent": (DocumentKind.INVOICE, (E.AWAIT_PAYMENT,)),
    "invoice.finalized": (DocumentKind.INVOICE, (E.AWAIT_PAYMENT,)),
    "invoice.payment_failed": (DocumentKind.INVOICE, (E.AWAIT_PAYMENT,)),
    "invoice.overdue": (DocumentKind.INVOICE, (E.MARK_PAST_DUE,)),
    "quote.accepted": (DocumentKind.QUOTE, (E.ACCEPT_QUOTE,)),
    "quote.canceled": (DocumentKind.QUOTE, (E.DECLINE_QUOTE,)),
}

# Provider status of a finalized document -> the event that status implies
_QUOTE_STATUS_EVENTS = {"accepted": E.ACCEPT_QUOTE, "canceled": E.DECLINE_QUOTE}


@dataclass(slots=True)
class ReconcileResult:
    handled: bool
    job_id: str | None = None
    applied: list[str] = field(default_factory=list)
    detail: str | None = None


class BillingReconciliationService:
    def __init__(self, lifecycle: JobLifecycleService | None = None, jobs=JobRepository):
        self.lifecycle = lifecycle or job_lifecycle_service
        self.jobs = jobs

    @property
    def billing(self):
        return self.lifecycle.billing

    async def handle_webhook(self, payload: bytes, signature: str | None) -> ReconcileResult:
        verify_signature(payload, signature)
        return await self.reconcile_webhook(parse_event(payload))

    async def reconcile_webhook(self, event: WebhookEvent) -> ReconcileResult:
        if event.type == "invoice.created":
            return await self._link_quote_invoice(event)

        mapping = WEBHOOK_EVENTS.get(event.type)
        if mapping is None:
            return ReconcileResult(handled=False, detail=f"Ignored event type {event.type}")

        kind, lifecycle_events = mapping
        job = await self.jobs.find_by_provider_id(kind, event.object_id)
        if not job:
            logger.info(
                "Webhook for unknown provider document",
                webhook_id=event.id,
                webhook_type=event.type,
                provider_id=event.object_id,
            )
            return ReconcileResult(handled=False, detail="No job references this document")

        result = ReconcileResult(handled=True, job_id=job.id)
        for event_type in lifecycle_events:
            outcome = await self.lifecycle.apply_if_allowed(
                job, JobEvent(event_type, source=EventSource.PROVIDER)
            )
            if outcome:
                job = outcome.job
                result.applied.append(event_type.value)

        logger.info(
            "Webhook reconciled",
            webhook_id=event.id,
            webhook_type=event.type,
            job_id=job.id,
            applied=result.applied,
            status=job.status.value,
        )
        return result

    async def _link_quote_invoice(self, event: WebhookEvent) -> ReconcileResult:
        if not event.quote_id:
            return ReconcileResult(handled=False, detail="Invoice not created from a quote")

        job = await self.jobs.find_by_provider_id(DocumentKind.QUOTE, event.quote_id)
        if not job:
            return ReconcileResult(handled=False, detail="No job references this quote")

        linked = await self.jobs.link_invoice(job.id, event.object_id)
        logger.info(
            "Quote invoice linked",
            job_id=job.id,
            provider_invoice_id=event.object_id,
            linked=linked,
        )
        return ReconcileResult(
            handled=True, job_id=job.id, applied=["link_invoice"] if linked else []
        )

    async def reconcile_job(self, job_id: str) -> ReconcileResult:
        """
        Bring a job in line with what the provider already did: attach a
        document finalized by a call whose outcome was unknown, or apply a
        quote decision or payment the job missed.
        """
        job = await self.lifecycle.get_job(job_id)
        result = ReconcileResult(handled=True, job_id=job.id)

        kind = LINE_ITEM_EDITABLE_STATUSES.get(job.status)
        if kind is not None:
            await self._recover_finalized(job, kind, result)
        elif job.status is JobStatus.QUOTE_SENT and job.provider_quote_id:
            document = await self.billing.find_for_job(job, DocumentKind.QUOTE)
            event_type = _QUOTE_STATUS_EVENTS.get(document.status) if document else None
            if event_type:
                await self._apply(job, event_type, result)
        elif job.status in (JobStatus.INVOICED, JobStatus.PAYMENT_PENDING, JobStatus.PAST_DUE):
            document = await self.billing.find_for_job(job, DocumentKind.INVOICE)
            if document and document.status == "paid":
                if job.status is JobStatus.INVOICED:
                    job = await self._apply(job, E.AWAIT_PAYMENT, result)
                await self._apply(job, E.RECORD_PAYMENT, result)

        if not result.applied:
            result.detail = "Job already matches the billing provider"
        logger.info("Job reconciled", job_id=job_id, applied=result.applied)
        return result

    async def _recover_finalized(self, job: Job, kind: DocumentKind, result: ReconcileResult) -> None:
        document = await self.billing.find_for_job(job, kind)
        if not document:
            return

        if document.is_draft:
            if not job.provider_id_for(kind):
                await self.jobs.set_provider_draft(job.id, kind, document.provider_id)
                result.applied.append("attach_draft")
            return

        if document.status in ("void", "canceled"):
            return

        event_type = E.SEND_QUOTE if kind is DocumentKind.QUOTE else E.SEND_INVOICE
        outcome = await self.lifecycle.apply_if_allowed(
            job, JobEvent(event_type, source=EventSource.PROVIDER), document=document
        )
        if outcome:
            result.applied.append(event_type.value)

    async def _apply(self, job: Job, event_type: JobEventType, result: ReconcileResult) -> Job:
        outcome = await self.lifecycle.apply_if_allowed(
            job, JobEvent(event_type, source=EventSource.PROVIDER)
        )
        if not outcome:
            return job
        result.applied.append(event_type.value)
        return outcome.job


billing_reconciliation_service = BillingReconciliationService()
