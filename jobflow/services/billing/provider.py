"""
Billing provider interface.

The lifecycle engine talks to the billing provider only through this
interface and only sees the value objects in billing_domain. Mutating calls
raise ProviderOutcomeUnknown when the provider may or may not have applied
them; callers must reconcile rather than repeat.
"""

from abc import ABC, abstractmethod

from jobflow.models.domain.billing_domain import (
    ProviderDocument,
    ProviderDraft,
    ProviderPage,
)
from jobflow.models.domain.job_domain import DocumentKind, LineItem
from jobflow.models.domain.notification_domain import Recipient


class BillingProvider(ABC):
    @abstractmethod
    async def ensure_customer(self, recipient: Recipient) -> str:
        """Provider customer reference for a portal user, creating one if needed."""

    @abstractmethod
    async def create_draft(
        self, kind: DocumentKind, customer_ref: str, line_items: list[LineItem], job_id: str
    ) -> ProviderDraft: ...

    @abstractmethod
    async def add_line_item(self, kind: DocumentKind, draft_id: str, item: LineItem) -> str | None:
        """Mirror a line onto a draft; returns the provider's line id."""

    @abstractmethod
    async def delete_line_item(
        self, kind: DocumentKind, draft_id: str, provider_item_id: str
    ) -> None: ...

    @abstractmethod
    async def retrieve(self, kind: DocumentKind, provider_id: str) -> ProviderDocument: ...

    @abstractmethod
    async def finalize_and_send(self, kind: DocumentKind, draft_id: str) -> ProviderDocument: ...

    @abstractmethod
    async def list_paid(
        self,
        kind: DocumentKind,
        since_cursor: str | None = None,
        customer_ref: str | None = None,
    ) -> ProviderPage:
        """Paid invoices or accepted quotes, one page at a time."""

    @abstractmethod
    async def mark_paid_out_of_band(self, provider_id: str) -> ProviderDocument: ...

    @abstractmethod
    async def accept_quote(self, provider_id: str) -> ProviderDocument: ...

    @abstractmethod
    async def cancel(self, kind: DocumentKind, provider_id: str) -> None: ...

    @abstractmethod
    async def find_by_job(
        self, kind: DocumentKind, job_id: str, customer_ref: str | None = None
    ) -> ProviderDocument | None:
        """Most recent document tagged with ``job_id`` in its metadata."""

    async def close(self) -> None:
        return None
