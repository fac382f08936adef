from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import psycopg
import pytest

from jobflow.db.helpers import DatabaseError, with_db_retry
from jobflow.models.domain.job_domain import JobStatus
from jobflow.repositories import job_repository
from jobflow.repositories.job_repository import JobRepository


def _operational(message="server closed the connection unexpectedly") -> DatabaseError:
    try:
        raise psycopg.OperationalError(message)
    except psycopg.OperationalError as e:
        error = DatabaseError(f"Query failed: {e}", operation="fetch_all")
        error.__cause__ = e
        return error


@pytest.mark.asyncio
async def test_retry_recovers_from_operational_error():
    calls = AsyncMock(side_effect=[_operational(), ["ok"]])

    @with_db_retry(max_retries=2, base_delay=0)
    async def read():
        return await calls()

    assert await read() == ["ok"]
    assert calls.await_count == 2


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_retries():
    calls = AsyncMock(side_effect=[_operational() for _ in range(3)])

    @with_db_retry(max_retries=2, base_delay=0)
    async def read():
        return await calls()

    with pytest.raises(DatabaseError):
        await read()
    assert calls.await_count == 3


@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried():
    calls = AsyncMock(side_effect=DatabaseError("syntax error", operation="fetch_all"))

    @with_db_retry(max_retries=3, base_delay=0)
    async def read():
        return await calls()

    with pytest.raises(DatabaseError):
        await read()
    assert calls.await_count == 1


@pytest.mark.asyncio
async def test_sweep_batch_read_retries_dropped_connection():
    fetch_all = AsyncMock(side_effect=[_operational(), [{"id": "job-1"}, {"id": "job-2"}]])

    with patch.object(job_repository, "fetch_all", fetch_all):
        ids = await JobRepository.ids_due(
            [JobStatus.QUOTE_SENT], datetime(2026, 3, 5, tzinfo=UTC), limit=100
        )

    assert ids == ["job-1", "job-2"]
    assert fetch_all.await_count == 2
