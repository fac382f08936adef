"""
Persistence for recurrence requests.

The partial unique index ``recurrence_requests_one_open_per_job`` is what
guarantees a single undecided request per job; a violation surfaces as
RequestAlreadyPending.
"""

from psycopg import errors as pg_errors

from jobflow.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from jobflow.db.pool import get_db_transaction
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.errors import InvalidTransition, NotFound, RequestAlreadyPending
from jobflow.models.domain.job_domain import Recurrence
from jobflow.models.domain.recurrence_domain import (
    OPEN_REQUEST_STATUSES,
    RecurrenceRequest,
    RecurrenceRequestStatus,
)

logger = get_logger(__name__)

_OPEN = sorted(status.value for status in OPEN_REQUEST_STATUSES)


class RecurrenceRepository:
    REQUEST_SELECT_COLUMNS = """
        r.id, r.job_id, r.customer_id, r.frequency, r.requested_day, r.status,
        r.created_at, r.updated_at
    """

    @classmethod
    def _row_to_request(cls, row: dict | None) -> RecurrenceRequest | None:
        if not row:
            return None

        return RecurrenceRequest(
            id=row["id"],
            job_id=str(row["job_id"]),
            customer_id=str(row["customer_id"]),
            frequency=row["frequency"],
            requested_day=row.get("requested_day"),
            status=RecurrenceRequestStatus(row["status"]),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            job_title=row.get("job_title"),
            customer_name=row.get("customer_name"),
        )

    @classmethod
    async def create(
        cls, job_id: str, customer_id: str, frequency: int, requested_day: int | None
    ) -> RecurrenceRequest:
        query = f"""
            INSERT INTO recurrence_requests AS r (job_id, customer_id, frequency, requested_day)
            VALUES (%s, %s, %s, %s)
            RETURNING {cls.REQUEST_SELECT_COLUMNS}
        """
        try:
            row = await fetch_one(query, (job_id, customer_id, frequency, requested_day))
        except DatabaseError as e:
            if isinstance(e.__cause__, pg_errors.UniqueViolation):
                raise RequestAlreadyPending(job_id) from e
            raise

        if not row:
            raise DatabaseError("Failed to create recurrence request", operation="create")

        logger.info("Recurrence request created", job_id=job_id, request_id=row["id"])
        return cls._row_to_request(row)

    @classmethod
    async def get(cls, request_id: int) -> RecurrenceRequest | None:
        query = f"SELECT {cls.REQUEST_SELECT_COLUMNS} FROM recurrence_requests r WHERE r.id = %s"
        return cls._row_to_request(await fetch_one(query, (request_id,)))

    @classmethod
    async def list_open(cls) -> list[RecurrenceRequest]:
        """Admin worklist: undecided requests with job and customer names."""
        query = f"""
            SELECT {cls.REQUEST_SELECT_COLUMNS},
                   j.title AS job_title,
                   u.name AS customer_name
            FROM recurrence_requests r
            JOIN jobs j ON j.id = r.job_id
            LEFT JOIN users u ON u.id = r.customer_id
            WHERE r.status = ANY(%s)
            ORDER BY r.created_at
        """
        rows = await fetch_all(query, (_OPEN,))
        return [cls._row_to_request(row) for row in rows]

    @classmethod
    async def decide(
        cls,
        request_id: int,
        status: RecurrenceRequestStatus,
        *,
        frequency: int | None = None,
        requested_day: int | None = None,
        recurrence_rule: str | None = None,
    ) -> RecurrenceRequest:
        """
        Record an admin decision on an open request.

        Counter values overwrite the proposal in place, as do values given
        with an acceptance. An accepted decision writes the compiled rule to the job in the same transaction.
        """
        query = f"""
            UPDATE recurrence_requests AS r
            SET status = %s,
                frequency = COALESCE(%s, r.frequency),
                requested_day = CASE WHEN %s THEN %s ELSE r.requested_day END,
                updated_at = NOW()
            WHERE r.id = %s AND r.status = ANY(%s)
            RETURNING {cls.REQUEST_SELECT_COLUMNS}
        """
        # a counter may clear the day; an accept only overrides it when given
        replace_day = status is RecurrenceRequestStatus.COUNTERED or (
            status is RecurrenceRequestStatus.ACCEPTED and requested_day is not None
        )

        async with await get_db_transaction() as conn:
            row = await fetch_one(
                query,
                (status.value, frequency, replace_day, requested_day, request_id, _OPEN),
                connection=conn,
            )
            if not row:
                existing = await fetch_one(
                    "SELECT status FROM recurrence_requests WHERE id = %s",
                    (request_id,),
                    connection=conn,
                )
                if not existing:
                    raise NotFound("RecurrenceRequest", request_id)
                raise InvalidTransition(existing["status"], status.value)

            if status is RecurrenceRequestStatus.ACCEPTED:
                if not recurrence_rule:
                    raise ValueError("An accepted request needs a compiled rule")
                await execute_query(
                    """
                    UPDATE jobs
                    SET recurrence = %s, recurrence_rule = %s, updated_at = NOW()
                    WHERE id = %s
                    """,
                    (Recurrence.CUSTOM.value, recurrence_rule, row["job_id"]),
                    connection=conn,
                )

        logger.info(
            "Recurrence request decided",
            request_id=request_id,
            job_id=str(row["job_id"]),
            status=status.value,
        )
        return cls._row_to_request(row)
