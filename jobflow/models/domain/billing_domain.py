"""
Billing Domain Models
Provider-neutral shapes the engine sees from the billing provider. Provider
response payloads never leave the adapter.
"""

from dataclasses import dataclass, field
from datetime import datetime

from jobflow.models.domain.job_domain import DocumentKind


@dataclass(frozen=True, slots=True)
class ProviderDocument:
    """A quote or invoice as known to the provider."""

    kind: DocumentKind
    provider_id: str
    status: str
    hosted_url: str | None = None
    due_at: datetime | None = None
    job_id: str | None = None

    @property
    def is_draft(self) -> bool:
        return self.status == "draft"


@dataclass(frozen=True, slots=True)
class ProviderDraft:
    """A freshly created draft and the provider ids of its lines, by local id."""

    provider_id: str
    item_ids: dict[int, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ProviderLine:
    description: str
    unit_amount_cents: int
    quantity: int = 1
    provider_item_id: str | None = None


@dataclass(frozen=True, slots=True)
class ProviderCustomer:
    customer_ref: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True, slots=True)
class ProviderRecord:
    """A provider-originated paid invoice or accepted quote, used for import."""

    kind: DocumentKind
    provider_id: str
    customer: ProviderCustomer | None
    lines: list[ProviderLine]
    total_cents: int
    created_at: datetime
    number: str | None = None
    description: str | None = None
    due_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ProviderPage:
    records: list[ProviderRecord]
    next_cursor: str | None = None
    has_more: bool = False


@dataclass(slots=True)
class ImportSummary:
    imported: int = 0
    skipped: int = 0
    imported_job_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class WebhookEvent:
    """A verified provider webhook, reduced to what reconciliation needs."""

    id: str
    type: str
    object_id: str
    quote_id: str | None = None
    customer_ref: str | None = None
