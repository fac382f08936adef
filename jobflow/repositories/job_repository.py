"""
Persistence for the Job aggregate and its line items.

Status changes only happen through ``commit_transition``, a compare-and-swap
on the previous status that also applies the transition's calendar effects
in the same transaction. Line-item writes recompute the job total inside
the transaction that changes the items.
"""

from datetime import datetime
from zoneinfo import ZoneInfo

import psycopg

from jobflow.config import settings
from jobflow.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from jobflow.db.pool import get_db_transaction
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.billing_domain import ProviderRecord
from jobflow.models.domain.errors import AlreadyFinalized, NotFound
from jobflow.models.domain.job_domain import (
    DocumentKind,
    Job,
    JobStatus,
    LineItem,
    Recurrence,
)
from jobflow.repositories.calendar_repository import CalendarRepository
from jobflow.services.lifecycle.state_machine import ReleaseSlots, ReserveSlot, Transition

logger = get_logger(__name__)

_PROVIDER_COLUMN = {
    DocumentKind.QUOTE: "provider_quote_id",
    DocumentKind.INVOICE: "provider_invoice_id",
}

_RECOMPUTE_TOTAL = """
    UPDATE jobs
    SET total_amount_cents = (
            SELECT COALESCE(SUM(unit_amount_cents * quantity), 0)
            FROM line_items
            WHERE job_id = %s
        ),
        updated_at = NOW()
    WHERE id = %s
"""


class JobRepository:
    """Job rows, line items and the status compare-and-swap."""

    JOB_SELECT_COLUMNS = """
        id, customer_id, title, description, status, recurrence, recurrence_rule,
        total_amount_cents, due_at, provider_quote_id, provider_invoice_id,
        hosted_url, created_at, updated_at
    """

    LINE_ITEM_COLUMNS = "id, job_id, description, unit_amount_cents, quantity, provider_item_id"

    @classmethod
    def _row_to_line_item(cls, row: dict) -> LineItem:
        return LineItem(
            id=row["id"],
            job_id=str(row["job_id"]),
            description=row["description"],
            unit_amount_cents=row["unit_amount_cents"],
            quantity=row["quantity"],
            provider_item_id=row.get("provider_item_id"),
        )

    @classmethod
    def _row_to_job(cls, row: dict | None, line_items: list[LineItem] | None = None) -> Job | None:
        if not row:
            return None

        return Job(
            id=str(row["id"]),
            customer_id=str(row["customer_id"]),
            title=row["title"],
            description=row.get("description"),
            status=JobStatus(row["status"]),
            recurrence=Recurrence(row.get("recurrence") or "none"),
            recurrence_rule=row.get("recurrence_rule"),
            total_amount_cents=row.get("total_amount_cents") or 0,
            due_at=row.get("due_at"),
            provider_quote_id=row.get("provider_quote_id"),
            provider_invoice_id=row.get("provider_invoice_id"),
            hosted_url=row.get("hosted_url"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            line_items=tuple(line_items or ()),
        )

    @classmethod
    async def _load_line_items(
        cls, job_ids: list[str], connection: psycopg.AsyncConnection | None = None
    ) -> dict[str, list[LineItem]]:
        if not job_ids:
            return {}
        query = f"""
            SELECT {cls.LINE_ITEM_COLUMNS}
            FROM line_items
            WHERE job_id = ANY(%s::uuid[])
            ORDER BY id
        """
        rows = await fetch_all(query, (job_ids,), connection=connection)
        grouped: dict[str, list[LineItem]] = {}
        for row in rows:
            item = cls._row_to_line_item(row)
            grouped.setdefault(item.job_id, []).append(item)
        return grouped

    @classmethod
    async def _hydrate(
        cls, rows: list[dict], connection: psycopg.AsyncConnection | None = None
    ) -> list[Job]:
        items = await cls._load_line_items([str(row["id"]) for row in rows], connection)
        return [cls._row_to_job(row, items.get(str(row["id"]))) for row in rows]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @classmethod
    async def get(
        cls, job_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> Job | None:
        query = f"SELECT {cls.JOB_SELECT_COLUMNS} FROM jobs WHERE id = %s"
        row = await fetch_one(query, (job_id,), connection=connection)
        if not row:
            return None
        jobs = await cls._hydrate([row], connection)
        return jobs[0]

    @classmethod
    async def list_for_customer(cls, customer_id: str) -> list[Job]:
        query = f"""
            SELECT {cls.JOB_SELECT_COLUMNS}
            FROM jobs
            WHERE customer_id = %s
            ORDER BY created_at DESC
        """
        return await cls._hydrate(await fetch_all(query, (customer_id,)))

    @classmethod
    async def list_by_status(cls, statuses: list[JobStatus]) -> list[Job]:
        query = f"""
            SELECT {cls.JOB_SELECT_COLUMNS}
            FROM jobs
            WHERE status = ANY(%s)
            ORDER BY created_at DESC
        """
        return await cls._hydrate(await fetch_all(query, ([s.value for s in statuses],)))

    @classmethod
    async def find_by_provider_id(cls, kind: DocumentKind, provider_id: str) -> Job | None:
        column = _PROVIDER_COLUMN[kind]
        query = f"SELECT {cls.JOB_SELECT_COLUMNS} FROM jobs WHERE {column} = %s"
        row = await fetch_one(query, (provider_id,))
        if not row:
            return None
        return (await cls._hydrate([row]))[0]

    @classmethod
    @with_db_retry()
    async def ids_due(
        cls,
        statuses: list[JobStatus],
        now: datetime,
        *,
        limit: int,
        after_id: str | None = None,
    ) -> list[str]:
        """Ids of jobs in ``statuses`` whose due date passed, keyset-paginated by id."""
        query = """
            SELECT id
            FROM jobs
            WHERE status = ANY(%s)
              AND due_at IS NOT NULL
              AND due_at < %s
              AND (%s::uuid IS NULL OR id > %s::uuid)
            ORDER BY id
            LIMIT %s
        """
        rows = await fetch_all(
            query, ([s.value for s in statuses], now, after_id, after_id, limit)
        )
        return [str(row["id"]) for row in rows]

    @classmethod
    async def get_line_item(cls, job_id: str, item_id: int) -> LineItem | None:
        query = f"SELECT {cls.LINE_ITEM_COLUMNS} FROM line_items WHERE id = %s AND job_id = %s"
        row = await fetch_one(query, (item_id, job_id))
        return cls._row_to_line_item(row) if row else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        *,
        customer_id: str,
        title: str,
        description: str | None = None,
        line_items: list[tuple[str, int, int]] | None = None,
        slot: tuple[datetime, datetime] | None = None,
    ) -> Job:
        """
        Insert a draft_quote job with its line items and, for booking
        requests, the requested slot. One transaction; the slot goes through
        the capacity-checked reservation.
        """
        insert_job = f"""
            INSERT INTO jobs (customer_id, title, description, status)
            VALUES (%s, %s, %s, %s)
            RETURNING {cls.JOB_SELECT_COLUMNS}
        """
        async with await get_db_transaction() as conn:
            row = await fetch_one(
                insert_job,
                (customer_id, title, description, JobStatus.DRAFT_QUOTE.value),
                connection=conn,
            )
            if not row:
                raise DatabaseError("Failed to create job", operation="create_job")
            job_id = str(row["id"])

            for description_, unit_amount_cents, quantity in line_items or []:
                await execute_query(
                    """
                    INSERT INTO line_items (job_id, description, unit_amount_cents, quantity)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (job_id, description_, unit_amount_cents, quantity),
                    connection=conn,
                )
            if line_items:
                await execute_query(_RECOMPUTE_TOTAL, (job_id, job_id), connection=conn)

            if slot:
                await CalendarRepository.reserve_slot(
                    job_id=job_id,
                    customer_id=customer_id,
                    title=title,
                    start=slot[0],
                    end=slot[1],
                    capacity_minutes=settings.daily_capacity_minutes(),
                    zone=ZoneInfo(settings.BUSINESS_TIMEZONE),
                    connection=conn,
                )

            job = await cls.get(job_id, connection=conn)

        logger.info("Job created", job_id=job_id, customer_id=customer_id, has_slot=bool(slot))
        return job

    @classmethod
    async def _lock_editable(
        cls, conn: psycopg.AsyncConnection, job_id: str, expected_status: JobStatus
    ) -> None:
        status = await fetch_one(
            "SELECT status FROM jobs WHERE id = %s FOR UPDATE", (job_id,), connection=conn
        )
        if not status:
            raise NotFound("Job", job_id)
        if status["status"] != expected_status.value:
            raise AlreadyFinalized(job_id, detail="Job changed status while editing line items")

    @classmethod
    async def add_line_item(
        cls,
        job_id: str,
        *,
        description: str,
        unit_amount_cents: int,
        quantity: int,
        expected_status: JobStatus,
        provider_item_id: str | None = None,
    ) -> Job:
        async with await get_db_transaction() as conn:
            await cls._lock_editable(conn, job_id, expected_status)
            await execute_query(
                """
                INSERT INTO line_items
                    (job_id, description, unit_amount_cents, quantity, provider_item_id)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (job_id, description, unit_amount_cents, quantity, provider_item_id),
                connection=conn,
            )
            await execute_query(_RECOMPUTE_TOTAL, (job_id, job_id), connection=conn)
            job = await cls.get(job_id, connection=conn)

        logger.info("Line item added", job_id=job_id, total_amount_cents=job.total_amount_cents)
        return job

    @classmethod
    async def delete_line_item(
        cls, job_id: str, item_id: int, *, expected_status: JobStatus
    ) -> Job:
        async with await get_db_transaction() as conn:
            await cls._lock_editable(conn, job_id, expected_status)
            deleted = await execute_query(
                "DELETE FROM line_items WHERE id = %s AND job_id = %s",
                (item_id, job_id),
                connection=conn,
            )
            if not deleted:
                raise NotFound("LineItem", item_id)
            await execute_query(_RECOMPUTE_TOTAL, (job_id, job_id), connection=conn)
            job = await cls.get(job_id, connection=conn)

        logger.info("Line item deleted", job_id=job_id, total_amount_cents=job.total_amount_cents)
        return job

    @classmethod
    async def set_provider_draft(
        cls,
        job_id: str,
        kind: DocumentKind,
        provider_id: str,
        item_ids: dict[int, str] | None = None,
    ) -> None:
        """Remember a provider draft and its mirrored line ids; status is untouched."""
        column = _PROVIDER_COLUMN[kind]
        async with await get_db_transaction() as conn:
            await execute_query(
                f"UPDATE jobs SET {column} = %s, updated_at = NOW() WHERE id = %s",
                (provider_id, job_id),
                connection=conn,
            )
            for item_id, provider_item_id in (item_ids or {}).items():
                await execute_query(
                    "UPDATE line_items SET provider_item_id = %s WHERE id = %s AND job_id = %s",
                    (provider_item_id, item_id, job_id),
                    connection=conn,
                )
        logger.info("Provider draft recorded", job_id=job_id, kind=kind.value, provider_id=provider_id)

    @classmethod
    async def commit_transition(cls, transition: Transition) -> bool:
        """
        Persist a transition if the job is still in its previous status.

        Returns False when another writer moved the job first; nothing is
        written in that case. Calendar effects commit or roll back with the
        status change.
        """
        job = transition.job
        update = """
            UPDATE jobs
            SET status = %s,
                due_at = %s,
                provider_quote_id = %s,
                provider_invoice_id = %s,
                hosted_url = %s,
                updated_at = %s
            WHERE id = %s AND status = %s
        """
        params = (
            job.status.value,
            job.due_at,
            job.provider_quote_id,
            job.provider_invoice_id,
            job.hosted_url,
            job.updated_at,
            job.id,
            transition.previous.status.value,
        )

        async with await get_db_transaction() as conn:
            updated = await execute_query(update, params, connection=conn)
            if not updated:
                logger.warning(
                    "Status compare-and-swap lost",
                    job_id=job.id,
                    expected_status=transition.previous.status.value,
                    job_event=transition.event.type.value,
                )
                return False

            for effect in transition.calendar_effects:
                if isinstance(effect, ReleaseSlots):
                    await CalendarRepository.release_for_job(job.id, connection=conn)
                elif isinstance(effect, ReserveSlot):
                    await CalendarRepository.reserve_slot(
                        job_id=job.id,
                        customer_id=job.customer_id,
                        title=job.title,
                        start=effect.start,
                        end=effect.end,
                        capacity_minutes=settings.daily_capacity_minutes(),
                        zone=ZoneInfo(settings.BUSINESS_TIMEZONE),
                        connection=conn,
                    )

        return True

    @classmethod
    async def link_invoice(cls, job_id: str, provider_invoice_id: str) -> bool:
        """Attach a provider invoice created from an accepted quote, once."""
        updated = await execute_query(
            """
            UPDATE jobs
            SET provider_invoice_id = %s, updated_at = NOW()
            WHERE id = %s AND provider_invoice_id IS NULL
            """,
            (provider_invoice_id, job_id),
        )
        return updated > 0

    @classmethod
    async def insert_imported(
        cls, record: ProviderRecord, customer_id: str, status: JobStatus
    ) -> str | None:
        """
        Insert a historical job for a provider record unless one already
        references the same provider id. Returns the new job id or None.
        """
        column = _PROVIDER_COLUMN[record.kind]
        title = record.description or (
            f"Imported {record.kind.value} {record.number}"
            if record.number
            else f"Imported {record.kind.value}"
        )
        insert_job = f"""
            INSERT INTO jobs (
                customer_id, title, description, status, total_amount_cents,
                due_at, {column}, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT ({column}) WHERE {column} IS NOT NULL DO NOTHING
            RETURNING id
        """

        async with await get_db_transaction() as conn:
            row = await fetch_one(
                insert_job,
                (
                    customer_id,
                    title,
                    record.description,
                    status.value,
                    record.total_cents,
                    record.due_at,
                    record.provider_id,
                    record.created_at,
                ),
                connection=conn,
            )
            if not row:
                return None

            job_id = str(row["id"])
            for line in record.lines:
                await execute_query(
                    """
                    INSERT INTO line_items
                        (job_id, description, unit_amount_cents, quantity, provider_item_id)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        job_id,
                        line.description,
                        line.unit_amount_cents,
                        line.quantity,
                        line.provider_item_id,
                    ),
                    connection=conn,
                )
            await execute_query(_RECOMPUTE_TOTAL, (job_id, job_id), connection=conn)

        logger.info(
            "Provider record imported",
            job_id=job_id,
            kind=record.kind.value,
            provider_id=record.provider_id,
        )
        return job_id
