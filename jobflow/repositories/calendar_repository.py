"""
Persistence for calendar events and blocked dates.

Slot reservation is the one place where check-then-act must be atomic:
``reserve_slot`` serializes writers per business day with a transaction
scoped advisory lock and re-checks capacity before inserting.
"""

from datetime import date, datetime
from zoneinfo import ZoneInfo

import psycopg

from jobflow.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val
from jobflow.db.pool import get_db_transaction
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.calendar_domain import day_bounds
from jobflow.models.domain.errors import CapacityExceeded, DateBlocked
from jobflow.models.domain.job_domain import (
    BOOKED_STATUSES,
    PENDING_STATUSES,
    BlockedDate,
    BookedSlot,
    CalendarEvent,
    CalendarEventType,
    JobStatus,
)

logger = get_logger(__name__)

OCCUPYING_STATUSES = sorted(status.value for status in PENDING_STATUSES | BOOKED_STATUSES)


class CalendarRepository:
    """Calendar events, blocked dates and recurrence rules in use."""

    EVENT_SELECT_COLUMNS = """
        ce.id, ce.job_id, ce.customer_id, ce.title, ce.start_at, ce.end_at, ce.type
    """

    @classmethod
    def _row_to_event(cls, row: dict) -> CalendarEvent:
        return CalendarEvent(
            id=row["id"],
            job_id=str(row["job_id"]) if row.get("job_id") else None,
            customer_id=str(row["customer_id"]) if row.get("customer_id") else None,
            title=row["title"],
            start=row["start_at"],
            end=row["end_at"],
            type=CalendarEventType(row["type"]),
        )

    @classmethod
    async def slots_in_range(cls, start: datetime, end: datetime) -> list[BookedSlot]:
        """Events overlapping [start, end), each with its job's current status."""
        query = f"""
            SELECT {cls.EVENT_SELECT_COLUMNS}, j.status AS job_status
            FROM calendar_events ce
            LEFT JOIN jobs j ON j.id = ce.job_id
            WHERE ce.start_at < %s AND ce.end_at > %s
            ORDER BY ce.start_at
        """
        rows = await fetch_all(query, (end, start))
        return [
            BookedSlot(
                event=cls._row_to_event(row),
                job_status=JobStatus(row["job_status"]) if row.get("job_status") else None,
            )
            for row in rows
        ]

    @classmethod
    async def events_for_job(
        cls, job_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> list[CalendarEvent]:
        query = f"""
            SELECT {cls.EVENT_SELECT_COLUMNS}
            FROM calendar_events ce
            WHERE ce.job_id = %s
            ORDER BY ce.start_at
        """
        rows = await fetch_all(query, (job_id,), connection=connection)
        return [cls._row_to_event(row) for row in rows]

    @classmethod
    async def blocked_dates(cls, start_day: date, end_day: date) -> list[BlockedDate]:
        query = """
            SELECT day, reason, created_at
            FROM blocked_dates
            WHERE day BETWEEN %s AND %s
            ORDER BY day
        """
        rows = await fetch_all(query, (start_day, end_day))
        return [
            BlockedDate(day=row["day"], reason=row.get("reason"), created_at=row.get("created_at"))
            for row in rows
        ]

    @classmethod
    async def committed_minutes(
        cls,
        day_start: datetime,
        day_end: datetime,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> int:
        """Minutes of occupying job events that start inside the day."""
        query = """
            SELECT COALESCE(
                SUM(EXTRACT(EPOCH FROM (ce.end_at - ce.start_at)) / 60), 0
            )::int AS minutes
            FROM calendar_events ce
            JOIN jobs j ON j.id = ce.job_id
            WHERE ce.type = 'job'
              AND ce.start_at >= %s
              AND ce.start_at < %s
              AND j.status = ANY(%s)
        """
        minutes = await fetch_val(
            query, (day_start, day_end, OCCUPYING_STATUSES), connection=connection
        )
        return int(minutes or 0)

    @classmethod
    async def is_blocked(
        cls,
        day: date,
        zone: ZoneInfo,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        day_start, day_end = day_bounds(day, zone)
        query = """
            SELECT EXISTS (SELECT 1 FROM blocked_dates WHERE day = %s)
                OR EXISTS (
                    SELECT 1 FROM calendar_events
                    WHERE type = 'blocked' AND start_at < %s AND end_at > %s
                ) AS blocked
        """
        return bool(await fetch_val(query, (day, day_end, day_start), connection=connection))

    @classmethod
    async def reserve_slot(
        cls,
        *,
        job_id: str,
        customer_id: str,
        title: str,
        start: datetime,
        end: datetime,
        capacity_minutes: int,
        zone: ZoneInfo,
        connection: psycopg.AsyncConnection | None = None,
    ) -> CalendarEvent:
        """
        Insert a job event if its day is not blocked and still has capacity.

        Must run inside a transaction; when no connection is given a new one
        is opened. Raises DateBlocked or CapacityExceeded.
        """
        if connection is None:
            async with await get_db_transaction() as conn:
                return await cls.reserve_slot(
                    job_id=job_id,
                    customer_id=customer_id,
                    title=title,
                    start=start,
                    end=end,
                    capacity_minutes=capacity_minutes,
                    zone=zone,
                    connection=conn,
                )

        day = start.astimezone(zone).date()
        key = day.isoformat()
        day_start, day_end = day_bounds(day, zone)

        # Serializes concurrent reservations for the same day until commit
        await execute_query(
            "SELECT pg_advisory_xact_lock(hashtext(%s))", (f"calendar:{key}",), connection=connection
        )

        if await cls.is_blocked(day, zone, connection=connection):
            raise DateBlocked(key)

        committed = await cls.committed_minutes(day_start, day_end, connection=connection)
        requested = int((end - start).total_seconds() // 60)
        if committed + requested > capacity_minutes:
            raise CapacityExceeded(key, committed, capacity_minutes)

        query = f"""
            INSERT INTO calendar_events AS ce (job_id, customer_id, title, start_at, end_at, type)
            VALUES (%s, %s, %s, %s, %s, 'job')
            RETURNING {cls.EVENT_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (job_id, customer_id, title, start, end), connection=connection)
        if not row:
            raise DatabaseError("Failed to insert calendar event", operation="reserve_slot")

        logger.info(
            "Calendar slot reserved",
            job_id=job_id,
            day=key,
            committed_minutes=committed + requested,
            capacity_minutes=capacity_minutes,
        )
        return cls._row_to_event(row)

    @classmethod
    async def release_for_job(
        cls, job_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> int:
        released = await execute_query(
            "DELETE FROM calendar_events WHERE job_id = %s AND type = 'job'",
            (job_id,),
            connection=connection,
        )
        if released:
            logger.info("Calendar slots released", job_id=job_id, released=released)
        return released

    @classmethod
    async def block_date(cls, day: date, reason: str | None = None) -> BlockedDate:
        query = """
            INSERT INTO blocked_dates (day, reason)
            VALUES (%s, %s)
            ON CONFLICT (day) DO UPDATE SET reason = EXCLUDED.reason
            RETURNING day, reason, created_at
        """
        row = await fetch_one(query, (day, reason))
        if not row:
            raise DatabaseError("Failed to block date", operation="block_date")
        logger.info("Date blocked", day=day.isoformat())
        return BlockedDate(day=row["day"], reason=row.get("reason"), created_at=row.get("created_at"))

    @classmethod
    async def unblock_date(cls, day: date) -> bool:
        deleted = await execute_query("DELETE FROM blocked_dates WHERE day = %s", (day,))
        if deleted:
            logger.info("Date unblocked", day=day.isoformat())
        return deleted > 0

    @classmethod
    async def add_event(
        cls,
        *,
        title: str,
        start: datetime,
        end: datetime,
        type: CalendarEventType,
        customer_id: str | None = None,
    ) -> CalendarEvent:
        """Insert an admin-managed blocked or personal event."""
        if type is CalendarEventType.JOB:
            raise ValueError("Job events are only created by scheduling a job")

        query = f"""
            INSERT INTO calendar_events AS ce (customer_id, title, start_at, end_at, type)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {cls.EVENT_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (customer_id, title, start, end, type.value))
        if not row:
            raise DatabaseError("Failed to insert calendar event", operation="add_event")
        logger.info("Calendar event added", event_id=row["id"], type=type.value)
        return cls._row_to_event(row)

    @classmethod
    async def remove_event(cls, event_id: int) -> bool:
        """Delete a blocked or personal event. Job events are left alone."""
        deleted = await execute_query(
            "DELETE FROM calendar_events WHERE id = %s AND type <> 'job'", (event_id,)
        )
        if deleted:
            logger.info("Calendar event removed", event_id=event_id)
        return deleted > 0

    @classmethod
    async def job_events_for_customer(cls, customer_id: str) -> list[BookedSlot]:
        query = f"""
            SELECT {cls.EVENT_SELECT_COLUMNS}, j.status AS job_status
            FROM calendar_events ce
            JOIN jobs j ON j.id = ce.job_id
            WHERE ce.type = 'job' AND j.customer_id = %s
            ORDER BY ce.start_at
        """
        rows = await fetch_all(query, (customer_id,))
        return [
            BookedSlot(event=cls._row_to_event(row), job_status=JobStatus(row["job_status"]))
            for row in rows
        ]

    @classmethod
    async def feed_token(cls, customer_id: str) -> str | None:
        return await fetch_val(
            "SELECT token FROM calendar_feed_tokens WHERE customer_id = %s", (customer_id,)
        )

    @classmethod
    async def store_feed_token(cls, customer_id: str, token: str) -> str:
        """Set the customer's feed token, replacing any previous one."""
        query = """
            INSERT INTO calendar_feed_tokens (customer_id, token)
            VALUES (%s, %s)
            ON CONFLICT (customer_id) DO UPDATE
                SET token = EXCLUDED.token, created_at = NOW()
            RETURNING token
        """
        stored = await fetch_val(query, (customer_id, token))
        if not stored:
            raise DatabaseError("Failed to store feed token", operation="store_feed_token")
        return stored

    @classmethod
    async def customer_for_feed_token(cls, token: str) -> str | None:
        customer_id = await fetch_val(
            "SELECT customer_id FROM calendar_feed_tokens WHERE token = %s", (token,)
        )
        return str(customer_id) if customer_id else None

    @classmethod
    async def active_recurrence_rules(cls) -> list[str]:
        """Rules of jobs that still hold a recurring slot."""
        query = """
            SELECT recurrence_rule
            FROM jobs
            WHERE recurrence_rule IS NOT NULL
              AND status = ANY(%s)
        """
        rows = await fetch_all(query, (OCCUPYING_STATUSES,))
        return [row["recurrence_rule"] for row in rows]
