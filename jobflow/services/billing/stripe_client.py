"""
Stripe billing provider over the REST API.

Low-level client: form-encoded requests, Idempotency-Key on every mutating
request, retry with backoff for reads only. Stripe payloads are converted to
billing_domain value objects before leaving this module.
"""

import asyncio
import hashlib
import uuid
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

import httpx

from jobflow.config import settings
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.billing_domain import (
    ProviderCustomer,
    ProviderDocument,
    ProviderDraft,
    ProviderLine,
    ProviderPage,
    ProviderRecord,
)
from jobflow.models.domain.errors import (
    ProviderOutcomeUnknown,
    ProviderRejected,
    ProviderUnavailable,
)
from jobflow.models.domain.job_domain import DocumentKind, LineItem
from jobflow.models.domain.notification_domain import Recipient
from jobflow.services.billing.provider import BillingProvider

logger = get_logger(__name__)

# Request retry configuration (reads only)
MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
PAGE_SIZE = 100

_RESOURCE = {DocumentKind.QUOTE: "quotes", DocumentKind.INVOICE: "invoices"}


def encode_form(params: dict[str, Any], prefix: str | None = None) -> list[tuple[str, str]]:
    """
    Flatten nested params into Stripe's bracketed form encoding.

    >>> encode_form({"metadata": {"job_id": "j1"}, "expand": ["lines"]})
    [('metadata[job_id]', 'j1'), ('expand[0]', 'lines')]
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, list | tuple):
            for index, element in enumerate(value):
                if isinstance(element, dict):
                    pairs.extend(encode_form(element, f"{name}[{index}]"))
                else:
                    pairs.append((f"{name}[{index}]", _scalar(element)))
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _from_epoch(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=UTC) if value else None


def _lines_fingerprint(line_items: list[LineItem]) -> str:
    digest = hashlib.sha256()
    for item in line_items:
        digest.update(f"{item.id}|{item.description}|{item.unit_amount_cents}|{item.quantity};".encode())
    return digest.hexdigest()[:16]


class StripeBillingProvider(BillingProvider):
    """BillingProvider backed by Stripe quotes, invoices and invoice items."""

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY or ""
        self.api_base = (api_base or settings.STRIPE_API_BASE).rstrip("/")
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(settings.BILLING_REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        return headers

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _read(self, path: str, params: dict | None = None, *, operation: str) -> dict:
        """GET with retry and exponential backoff."""
        url = f"{self.api_base}{path}"
        query = encode_form(params or {})

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.get(url, params=query, headers=self._headers())
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    logger.error("Stripe read failed", operation=operation, error=str(e))
                    raise ProviderUnavailable(f"Stripe {operation} failed: {e}", operation) from e
                await self._backoff(operation, attempt, error=str(e))
                continue

            if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                await self._backoff(operation, attempt, status_code=response.status_code)
                continue
            return self._handle_response(response, operation, mutating=False)

        raise RuntimeError("Stripe retry loop exhausted")

    async def _backoff(self, operation: str, attempt: int, **context) -> None:
        delay = BACKOFF_FACTOR * (2 ** (attempt - 1))
        logger.debug("Stripe read retrying", operation=operation, attempt=attempt, delay=delay, **context)
        await asyncio.sleep(delay)

    async def _write(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        *,
        operation: str,
        idempotency_key: str,
    ) -> dict:
        """
        Single-shot mutating request. A request that never left the client is
        ProviderUnavailable; anything that may have reached Stripe without a
        response is ProviderOutcomeUnknown.
        """
        url = f"{self.api_base}{path}"
        body = urlencode(encode_form(params or {}))
        try:
            response = await self._client.request(
                method, url, content=body, headers=self._headers(idempotency_key)
            )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            logger.error("Stripe unreachable", operation=operation, error=str(e))
            raise ProviderUnavailable(f"Stripe {operation} failed: {e}", operation) from e
        except httpx.RequestError as e:
            logger.error(
                "Stripe write outcome unknown",
                operation=operation,
                idempotency_key=idempotency_key,
                error=str(e),
            )
            raise ProviderOutcomeUnknown(
                f"Stripe {operation} did not answer: {e}", operation
            ) from e

        return self._handle_response(response, operation, mutating=True)

    def _handle_response(self, response: httpx.Response, operation: str, *, mutating: bool) -> dict:
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                raise ProviderUnavailable(f"Invalid Stripe response: {e}", operation) from e

        try:
            error = (response.json() or {}).get("error") or {}
        except ValueError:
            error = {}
        message = error.get("message") or f"Stripe HTTP {response.status_code}"
        code = error.get("code") or error.get("type")

        logger.error(
            f"Stripe {operation} failed",
            status_code=response.status_code,
            error_code=code,
            error_message=message,
        )

        if response.status_code == 429:
            raise ProviderUnavailable(message, operation)
        if response.status_code >= 500:
            if mutating:
                raise ProviderOutcomeUnknown(message, operation)
            raise ProviderUnavailable(message, operation)
        raise ProviderRejected(message, operation, provider_code=code)

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _to_document(self, kind: DocumentKind, obj: dict) -> ProviderDocument:
        job_id = (obj.get("metadata") or {}).get("job_id")
        if kind is DocumentKind.INVOICE:
            hosted_url = obj.get("hosted_invoice_url")
            due_at = _from_epoch(obj.get("due_date"))
        else:
            hosted_url = settings.quote_url(job_id) if job_id else None
            due_at = _from_epoch(obj.get("expires_at"))
        return ProviderDocument(
            kind=kind,
            provider_id=obj["id"],
            status=obj.get("status") or "unknown",
            hosted_url=hosted_url,
            due_at=due_at,
            job_id=job_id,
        )

    @staticmethod
    def _to_customer(value: Any) -> ProviderCustomer | None:
        if not value:
            return None
        if isinstance(value, str):
            return ProviderCustomer(customer_ref=value)
        return ProviderCustomer(
            customer_ref=value["id"],
            name=value.get("name"),
            email=value.get("email"),
            phone=value.get("phone"),
        )

    @staticmethod
    def _to_lines(raw_lines: list[dict]) -> list[ProviderLine]:
        lines = []
        for line in raw_lines:
            quantity = line.get("quantity") or 1
            amount = line.get("amount_total", line.get("amount")) or 0
            unit_amount = (line.get("price") or {}).get("unit_amount")
            lines.append(
                ProviderLine(
                    description=line.get("description") or "Service",
                    unit_amount_cents=unit_amount if unit_amount is not None else amount // quantity,
                    quantity=quantity,
                    provider_item_id=line.get("invoice_item") or line.get("id"),
                )
            )
        return lines

    def _to_record(self, kind: DocumentKind, obj: dict) -> ProviderRecord:
        if kind is DocumentKind.INVOICE:
            raw_lines = (obj.get("lines") or {}).get("data") or []
            total = obj.get("amount_paid") or obj.get("total") or 0
        else:
            raw_lines = (obj.get("line_items") or {}).get("data") or []
            total = obj.get("amount_total") or 0
        return ProviderRecord(
            kind=kind,
            provider_id=obj["id"],
            customer=self._to_customer(obj.get("customer")),
            lines=self._to_lines(raw_lines),
            total_cents=total,
            created_at=_from_epoch(obj.get("created")) or datetime.now(UTC),
            number=obj.get("number"),
            description=obj.get("description"),
            due_at=_from_epoch(obj.get("due_date")),
        )

    def _quote_line(self, item: LineItem) -> dict:
        return {
            "price_data": {
                "currency": settings.BILLING_CURRENCY,
                "product_data": {"name": item.description},
                "unit_amount": item.unit_amount_cents,
            },
            "quantity": item.quantity,
        }

    # ------------------------------------------------------------------
    # BillingProvider
    # ------------------------------------------------------------------

    async def ensure_customer(self, recipient: Recipient) -> str:
        if recipient.billing_customer_ref:
            return recipient.billing_customer_ref

        if recipient.email:
            existing = await self._read(
                "/customers", {"email": recipient.email, "limit": 1}, operation="find_customer"
            )
            if existing.get("data"):
                return existing["data"][0]["id"]

        customer = await self._write(
            "POST",
            "/customers",
            {
                "name": recipient.name,
                "email": recipient.email,
                "phone": recipient.phone,
                "metadata": {"user_id": recipient.id},
            },
            operation="create_customer",
            idempotency_key=f"customer-{recipient.id}",
        )
        logger.info("Stripe customer created", user_id=recipient.id, customer_ref=customer["id"])
        return customer["id"]

    async def create_draft(
        self, kind: DocumentKind, customer_ref: str, line_items: list[LineItem], job_id: str
    ) -> ProviderDraft:
        key_base = f"{job_id}:{kind.value}:draft:{_lines_fingerprint(line_items)}"

        if kind is DocumentKind.QUOTE:
            quote = await self._write(
                "POST",
                "/quotes",
                {
                    "customer": customer_ref,
                    "collection_method": "send_invoice",
                    "invoice_settings": {"days_until_due": settings.INVOICE_DUE_DAYS},
                    "metadata": {"job_id": job_id},
                    "line_items": [self._quote_line(item) for item in line_items],
                    "expand": ["line_items"],
                },
                operation="create_quote",
                idempotency_key=key_base,
            )
            provider_lines = (quote.get("line_items") or {}).get("data") or []
            item_ids = {
                item.id: line["id"]
                for item, line in zip(line_items, provider_lines, strict=False)
                if item.id is not None
            }
            logger.info("Stripe draft quote created", job_id=job_id, provider_id=quote["id"])
            return ProviderDraft(provider_id=quote["id"], item_ids=item_ids)

        invoice = await self._write(
            "POST",
            "/invoices",
            {
                "customer": customer_ref,
                "collection_method": "send_invoice",
                "days_until_due": settings.INVOICE_DUE_DAYS,
                "auto_advance": False,
                "currency": settings.BILLING_CURRENCY,
                "pending_invoice_items_behavior": "exclude",
                "metadata": {"job_id": job_id},
            },
            operation="create_invoice",
            idempotency_key=key_base,
        )
        item_ids = {}
        for item in line_items:
            created = await self._create_invoice_item(
                invoice["id"], customer_ref, item, idempotency_key=f"{invoice['id']}:item:{item.id}"
            )
            if item.id is not None:
                item_ids[item.id] = created

        logger.info("Stripe draft invoice created", job_id=job_id, provider_id=invoice["id"])
        return ProviderDraft(provider_id=invoice["id"], item_ids=item_ids)

    async def _create_invoice_item(
        self, invoice_id: str, customer_ref: str, item: LineItem, *, idempotency_key: str
    ) -> str:
        created = await self._write(
            "POST",
            "/invoiceitems",
            {
                "customer": customer_ref,
                "invoice": invoice_id,
                "currency": settings.BILLING_CURRENCY,
                "description": item.description,
                "quantity": item.quantity,
                "unit_amount_decimal": item.unit_amount_cents,
            },
            operation="create_invoice_item",
            idempotency_key=idempotency_key,
        )
        return created["id"]

    async def _quote_line_ids(self, quote_id: str) -> list[str]:
        lines = await self._read(
            f"/quotes/{quote_id}/line_items", {"limit": PAGE_SIZE}, operation="list_quote_lines"
        )
        return [line["id"] for line in lines.get("data") or []]

    async def add_line_item(self, kind: DocumentKind, draft_id: str, item: LineItem) -> str | None:
        if kind is DocumentKind.INVOICE:
            invoice = await self._read(f"/invoices/{draft_id}", operation="retrieve_invoice")
            customer = invoice.get("customer")
            customer_ref = customer["id"] if isinstance(customer, dict) else customer
            return await self._create_invoice_item(
                draft_id, customer_ref, item, idempotency_key=f"{draft_id}:item:{uuid.uuid4().hex}"
            )

        existing = await self._quote_line_ids(draft_id)
        quote = await self._write(
            "POST",
            f"/quotes/{draft_id}",
            {
                "line_items": [{"id": line_id} for line_id in existing] + [self._quote_line(item)],
                "expand": ["line_items"],
            },
            operation="update_quote_lines",
            idempotency_key=f"{draft_id}:lines:{uuid.uuid4().hex}",
        )
        updated = [line["id"] for line in (quote.get("line_items") or {}).get("data") or []]
        added = [line_id for line_id in updated if line_id not in existing]
        return added[0] if added else None

    async def delete_line_item(
        self, kind: DocumentKind, draft_id: str, provider_item_id: str
    ) -> None:
        if kind is DocumentKind.INVOICE:
            await self._write(
                "DELETE",
                f"/invoiceitems/{provider_item_id}",
                operation="delete_invoice_item",
                idempotency_key=f"{provider_item_id}:delete",
            )
            return

        remaining = [line_id for line_id in await self._quote_line_ids(draft_id) if line_id != provider_item_id]
        await self._write(
            "POST",
            f"/quotes/{draft_id}",
            {"line_items": [{"id": line_id} for line_id in remaining]},
            operation="update_quote_lines",
            idempotency_key=f"{draft_id}:remove:{provider_item_id}",
        )

    async def retrieve(self, kind: DocumentKind, provider_id: str) -> ProviderDocument:
        obj = await self._read(f"/{_RESOURCE[kind]}/{provider_id}", operation=f"retrieve_{kind.value}")
        return self._to_document(kind, obj)

    async def finalize_and_send(self, kind: DocumentKind, draft_id: str) -> ProviderDocument:
        if kind is DocumentKind.QUOTE:
            quote = await self._write(
                "POST",
                f"/quotes/{draft_id}/finalize",
                operation="finalize_quote",
                idempotency_key=f"{draft_id}:finalize",
            )
            return self._to_document(kind, quote)

        await self._write(
            "POST",
            f"/invoices/{draft_id}/finalize",
            {"auto_advance": False},
            operation="finalize_invoice",
            idempotency_key=f"{draft_id}:finalize",
        )
        sent = await self._write(
            "POST",
            f"/invoices/{draft_id}/send",
            operation="send_invoice",
            idempotency_key=f"{draft_id}:send",
        )
        return self._to_document(kind, sent)

    async def list_paid(
        self,
        kind: DocumentKind,
        since_cursor: str | None = None,
        customer_ref: str | None = None,
    ) -> ProviderPage:
        params: dict[str, Any] = {
            "limit": PAGE_SIZE,
            "starting_after": since_cursor,
            "customer": customer_ref,
        }
        if kind is DocumentKind.INVOICE:
            params.update({"status": "paid", "expand": ["data.customer"]})
        else:
            params.update({"status": "accepted", "expand": ["data.customer", "data.line_items"]})

        page = await self._read(f"/{_RESOURCE[kind]}", params, operation=f"list_paid_{kind.value}")
        data = page.get("data") or []
        has_more = bool(page.get("has_more"))
        return ProviderPage(
            records=[self._to_record(kind, obj) for obj in data],
            next_cursor=data[-1]["id"] if data and has_more else None,
            has_more=has_more,
        )

    async def mark_paid_out_of_band(self, provider_id: str) -> ProviderDocument:
        invoice = await self._write(
            "POST",
            f"/invoices/{provider_id}/pay",
            {"paid_out_of_band": True},
            operation="pay_invoice",
            idempotency_key=f"{provider_id}:pay-out-of-band",
        )
        return self._to_document(DocumentKind.INVOICE, invoice)

    async def accept_quote(self, provider_id: str) -> ProviderDocument:
        quote = await self._write(
            "POST",
            f"/quotes/{provider_id}/accept",
            operation="accept_quote",
            idempotency_key=f"{provider_id}:accept",
        )
        return self._to_document(DocumentKind.QUOTE, quote)

    async def cancel(self, kind: DocumentKind, provider_id: str) -> None:
        if kind is DocumentKind.QUOTE:
            await self._write(
                "POST",
                f"/quotes/{provider_id}/cancel",
                operation="cancel_quote",
                idempotency_key=f"{provider_id}:cancel",
            )
            return

        document = await self.retrieve(kind, provider_id)
        if document.status == "void":
            return
        if document.status == "draft":
            await self._write(
                "DELETE",
                f"/invoices/{provider_id}",
                operation="delete_invoice",
                idempotency_key=f"{provider_id}:delete",
            )
            return
        await self._write(
            "POST",
            f"/invoices/{provider_id}/void",
            operation="void_invoice",
            idempotency_key=f"{provider_id}:void",
        )

    async def find_by_job(
        self, kind: DocumentKind, job_id: str, customer_ref: str | None = None
    ) -> ProviderDocument | None:
        if kind is DocumentKind.INVOICE:
            result = await self._read(
                "/invoices/search",
                {"query": f"metadata['job_id']:'{job_id}'", "limit": 10},
                operation="search_invoices",
            )
            candidates = result.get("data") or []
        else:
            # Quotes have no search endpoint; scan the customer's quotes
            result = await self._read(
                "/quotes", {"customer": customer_ref, "limit": PAGE_SIZE}, operation="list_quotes"
            )
            candidates = [
                obj for obj in result.get("data") or [] if (obj.get("metadata") or {}).get("job_id") == job_id
            ]

        if not candidates:
            return None
        latest = max(candidates, key=lambda obj: obj.get("created") or 0)
        return self._to_document(kind, latest)
