"""
Billing synchronization: provider first, local second.

Every provider-mutating operation calls the provider, obtains its durable
identifier, and only then writes the local row that references it. When the
provider call fails nothing local changes. When the local write fails after a
provider success, the provider record is found again later by reconciliation
or import, keyed by provider id or job metadata.
"""

from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.billing_domain import ImportSummary, ProviderDocument
from jobflow.models.domain.errors import AlreadyFinalized, InvalidTransition, NotFound
from jobflow.models.domain.job_domain import (
    LINE_ITEM_EDITABLE_STATUSES,
    DocumentKind,
    Job,
    JobStatus,
    LineItem,
)
from jobflow.repositories.job_repository import JobRepository
from jobflow.repositories.recipient_repository import RecipientRepository
from jobflow.services.billing.provider import BillingProvider
from jobflow.services.billing.stripe_client import StripeBillingProvider

logger = get_logger(__name__)

# Status an imported provider record lands in
IMPORT_STATUS = {
    DocumentKind.INVOICE: JobStatus.PAID,
    DocumentKind.QUOTE: JobStatus.QUOTE_ACCEPTED,
}

MAX_IMPORT_PAGES = 50


class BillingSyncService:
    def __init__(
        self,
        provider: BillingProvider | None = None,
        jobs=JobRepository,
        recipients=RecipientRepository,
    ):
        self.provider = provider or StripeBillingProvider()
        self.jobs = jobs
        self.recipients = recipients

    async def _load(self, job_id: str) -> Job:
        job = await self.jobs.get(job_id)
        if not job:
            raise NotFound("Job", job_id)
        return job

    async def customer_ref(self, job: Job) -> str:
        recipient = await self.recipients.get(job.customer_id)
        if not recipient:
            raise NotFound("Customer", job.customer_id)

        ref = await self.provider.ensure_customer(recipient)
        if ref != recipient.billing_customer_ref:
            await self.recipients.link_billing_ref(recipient.id, ref)
        return ref

    async def _editable_kind(self, job: Job) -> DocumentKind:
        """
        Document kind whose lines may change now. Raises AlreadyFinalized
        when the job is past drafting or its provider draft was finalized.
        """
        kind = LINE_ITEM_EDITABLE_STATUSES.get(job.status)
        if kind is None:
            raise AlreadyFinalized(
                job.id, detail=f"Line items cannot change while the job is {job.status.value}"
            )

        provider_id = job.provider_id_for(kind)
        if provider_id:
            document = await self.provider.retrieve(kind, provider_id)
            if not document.is_draft:
                raise AlreadyFinalized(job.id)
        return kind

    # ------------------------------------------------------------------
    # Drafts and line items
    # ------------------------------------------------------------------

    async def create_draft(self, job_id: str) -> Job:
        """Create the provider draft for a job without changing its status."""
        job = await self._load(job_id)
        kind = LINE_ITEM_EDITABLE_STATUSES.get(job.status)
        if kind is None:
            raise InvalidTransition(job.status.value, "create_draft")

        if job.provider_id_for(kind):
            document = await self.provider.retrieve(kind, job.provider_id_for(kind))
            if document.is_draft:
                return job
            raise AlreadyFinalized(job.id)

        ref = await self.customer_ref(job)
        draft = await self.provider.create_draft(kind, ref, list(job.line_items), job.id)
        await self.jobs.set_provider_draft(job.id, kind, draft.provider_id, draft.item_ids)

        logger.info("Billing draft created", job_id=job.id, kind=kind.value, provider_id=draft.provider_id)
        return await self._load(job.id)

    async def add_line_item(
        self, job_id: str, description: str, unit_amount_cents: int, quantity: int = 1
    ) -> Job:
        if unit_amount_cents < 0:
            raise ValueError("unit_amount_cents must not be negative")
        if quantity < 1:
            raise ValueError("quantity must be at least 1")

        job = await self._load(job_id)
        kind = await self._editable_kind(job)

        provider_item_id = None
        draft_id = job.provider_id_for(kind)
        if draft_id:
            provider_item_id = await self.provider.add_line_item(
                kind,
                draft_id,
                LineItem(
                    job_id=job.id,
                    description=description,
                    unit_amount_cents=unit_amount_cents,
                    quantity=quantity,
                ),
            )

        try:
            return await self.jobs.add_line_item(
                job.id,
                description=description,
                unit_amount_cents=unit_amount_cents,
                quantity=quantity,
                expected_status=job.status,
                provider_item_id=provider_item_id,
            )
        except Exception:
            if provider_item_id:
                logger.error(
                    "Line item mirrored to provider but not stored locally",
                    job_id=job.id,
                    provider_id=draft_id,
                    provider_item_id=provider_item_id,
                )
            raise

    async def delete_line_item(self, job_id: str, item_id: int) -> Job:
        job = await self._load(job_id)
        item = await self.jobs.get_line_item(job.id, item_id)
        if not item:
            raise NotFound("LineItem", item_id)

        kind = await self._editable_kind(job)
        draft_id = job.provider_id_for(kind)
        if draft_id and item.provider_item_id:
            await self.provider.delete_line_item(kind, draft_id, item.provider_item_id)

        return await self.jobs.delete_line_item(job.id, item_id, expected_status=job.status)

    # ------------------------------------------------------------------
    # Effects used by the lifecycle service
    # ------------------------------------------------------------------

    async def finalize_document(self, job: Job, kind: DocumentKind) -> ProviderDocument:
        """
        Finalize and send the job's document, reusing its draft when there is
        one. A document that is already finalized (an earlier attempt whose
        local commit failed) is returned as-is so the transition can complete.
        """
        draft_id = job.provider_id_for(kind)
        if draft_id:
            document = await self.provider.retrieve(kind, draft_id)
            if not document.is_draft:
                logger.info(
                    "Reusing already finalized provider document",
                    job_id=job.id,
                    kind=kind.value,
                    provider_id=draft_id,
                )
                return document
        else:
            ref = await self.customer_ref(job)
            draft = await self.provider.create_draft(kind, ref, list(job.line_items), job.id)
            draft_id = draft.provider_id
            # The draft id is kept even if finalizing fails, so a retry reuses it
            await self.jobs.set_provider_draft(job.id, kind, draft_id, draft.item_ids)

        document = await self.provider.finalize_and_send(kind, draft_id)
        logger.info(
            "Provider document finalized",
            job_id=job.id,
            kind=kind.value,
            provider_id=document.provider_id,
        )
        return document

    async def accept_quote(self, provider_id: str) -> ProviderDocument:
        return await self.provider.accept_quote(provider_id)

    async def cancel(self, kind: DocumentKind, provider_id: str) -> None:
        await self.provider.cancel(kind, provider_id)

    async def mark_paid(self, provider_id: str) -> ProviderDocument:
        return await self.provider.mark_paid_out_of_band(provider_id)

    async def find_for_job(self, job: Job, kind: DocumentKind) -> ProviderDocument | None:
        provider_id = job.provider_id_for(kind)
        if provider_id:
            return await self.provider.retrieve(kind, provider_id)

        recipient = await self.recipients.get(job.customer_id)
        return await self.provider.find_by_job(
            kind, job.id, recipient.billing_customer_ref if recipient else None
        )

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    async def import_paid(
        self, kind: DocumentKind, customer_ref: str | None = None
    ) -> ImportSummary:
        """
        Import provider-paid invoices or accepted quotes as historical jobs.
        Re-running is safe: provider ids are unique locally.
        """
        summary = ImportSummary()
        cursor = None

        for _ in range(MAX_IMPORT_PAGES):
            page = await self.provider.list_paid(kind, cursor, customer_ref)

            for record in page.records:
                if not record.lines or not record.customer:
                    summary.skipped += 1
                    continue

                customer = await self.recipients.ensure_guest(record.customer)
                job_id = await self.jobs.insert_imported(record, customer.id, IMPORT_STATUS[kind])
                if job_id:
                    summary.imported += 1
                    summary.imported_job_ids.append(job_id)
                else:
                    summary.skipped += 1

            if not page.has_more or not page.next_cursor:
                break
            cursor = page.next_cursor
        else:
            logger.warning("Import stopped at page limit", kind=kind.value, pages=MAX_IMPORT_PAGES)

        logger.info(
            "Provider import completed",
            kind=kind.value,
            imported=summary.imported,
            skipped=summary.skipped,
        )
        return summary


billing_sync_service = BillingSyncService()
