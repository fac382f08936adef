from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from jobflow.models.domain.errors import InvalidTransition, NotFound, RequestAlreadyPending
from jobflow.models.domain.job_domain import JobStatus, Recurrence
from jobflow.models.domain.notification_domain import ADMINS
from jobflow.models.domain.recurrence_domain import (
    RecurrenceRequestStatus,
    compile_recurrence_rule,
    rule_weekday,
)
from jobflow.repositories import recurrence_repository
from jobflow.repositories.recurrence_repository import RecurrenceRepository

Status = RecurrenceRequestStatus


def test_compile_rule_with_requested_day():
    assert compile_recurrence_rule(2, 3) == "FREQ=WEEKLY;INTERVAL=2;BYDAY=WE"


def test_compile_rule_without_day():
    assert compile_recurrence_rule(1) == "FREQ=WEEKLY;INTERVAL=1"


@pytest.mark.parametrize("frequency, day", [(0, None), (1, 7), (1, -1)])
def test_compile_rule_rejects_out_of_range(frequency, day):
    with pytest.raises(ValueError):
        compile_recurrence_rule(frequency, day)


def test_rule_weekday_round_trips_byday():
    assert rule_weekday("FREQ=WEEKLY;INTERVAL=2;BYDAY=SA") == 6
    assert rule_weekday("FREQ=WEEKLY;INTERVAL=2") is None


@pytest.mark.asyncio
async def test_propose_notifies_admins(recurrence, jobs, transport):
    job = jobs.make(status=JobStatus.SCHEDULED)

    request = await recurrence.propose(job.id, "customer-1", 2, 3)

    assert request.status is Status.PENDING
    envelope = transport.envelopes[-1]
    assert envelope.type == "recurrence_request_new"
    assert envelope.recipient_id == ADMINS
    assert envelope.payload["customer_name"] == "Dana Customer"


@pytest.mark.asyncio
async def test_second_pending_proposal_is_rejected(recurrence, jobs):
    job = jobs.make(status=JobStatus.SCHEDULED)
    await recurrence.propose(job.id, "customer-1", 1)

    with pytest.raises(RequestAlreadyPending):
        await recurrence.propose(job.id, "customer-1", 2)


@pytest.mark.asyncio
async def test_propose_on_someone_elses_job_is_not_found(recurrence, jobs):
    job = jobs.make(customer_id="customer-2")

    with pytest.raises(NotFound):
        await recurrence.propose(job.id, "customer-1", 1)


@pytest.mark.asyncio
async def test_accept_writes_rule_to_job(recurrence, jobs, transport):
    job = jobs.make(status=JobStatus.SCHEDULED)
    request = await recurrence.propose(job.id, "customer-1", 2, 3)

    decided = await recurrence.decide(request.id, Status.ACCEPTED)

    stored = jobs.jobs[job.id]
    assert decided.status is Status.ACCEPTED
    assert stored.recurrence is Recurrence.CUSTOM
    assert stored.recurrence_rule == "FREQ=WEEKLY;INTERVAL=2;BYDAY=WE"

    response = transport.envelopes[-1]
    assert response.type == "recurrence_request_response"
    assert response.recipient_id == "customer-1"
    assert response.payload["decision"] == "accepted"


@pytest.mark.asyncio
async def test_counter_updates_in_place_and_accept_uses_counter_values(recurrence, jobs):
    job = jobs.make(status=JobStatus.SCHEDULED)
    request = await recurrence.propose(job.id, "customer-1", 1, 1)

    countered = await recurrence.decide(request.id, Status.COUNTERED, frequency=3, requested_day=5)
    assert countered.id == request.id
    assert (countered.frequency, countered.requested_day) == (3, 5)
    assert [r.id for r in await recurrence.list_pending()] == [request.id]

    await recurrence.decide(request.id, Status.ACCEPTED)
    assert jobs.jobs[job.id].recurrence_rule == "FREQ=WEEKLY;INTERVAL=3;BYDAY=FR"


@pytest.mark.asyncio
async def test_accept_with_day_override_stores_the_day(recurrence, jobs):
    job = jobs.make(status=JobStatus.SCHEDULED)
    request = await recurrence.propose(job.id, "customer-1", 2, 3)

    decided = await recurrence.decide(request.id, Status.ACCEPTED, requested_day=5)

    assert decided.requested_day == 5
    assert jobs.jobs[job.id].recurrence_rule == "FREQ=WEEKLY;INTERVAL=2;BYDAY=FR"
    assert rule_weekday(jobs.jobs[job.id].recurrence_rule) == decided.requested_day


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, requested_day, replaces",
    [
        (Status.ACCEPTED, 5, True),
        (Status.ACCEPTED, None, False),
        (Status.COUNTERED, None, True),
        (Status.DECLINED, 4, False),
    ],
)
async def test_repository_decide_replaces_day_only_when_given(status, requested_day, replaces):
    row = {
        "id": 7,
        "job_id": "job-1",
        "customer_id": "customer-1",
        "frequency": 2,
        "requested_day": requested_day,
        "status": status.value,
    }
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value="conn")
    transaction.__aexit__ = AsyncMock(return_value=False)

    with (
        patch.object(recurrence_repository, "get_db_transaction", AsyncMock(return_value=transaction)),
        patch.object(recurrence_repository, "fetch_one", AsyncMock(return_value=row)) as fetch_one,
        patch.object(recurrence_repository, "execute_query", AsyncMock(return_value=1)),
    ):
        await RecurrenceRepository.decide(
            7, status, requested_day=requested_day, recurrence_rule="FREQ=WEEKLY;INTERVAL=2"
        )

    params = fetch_one.await_args.args[1]
    assert params[2:4] == (replaces, requested_day)


@pytest.mark.asyncio
async def test_decline_leaves_job_rule_alone(recurrence, jobs):
    job = jobs.make(status=JobStatus.SCHEDULED)
    request = await recurrence.propose(job.id, "customer-1", 2)

    await recurrence.decide(request.id, Status.DECLINED)

    assert jobs.jobs[job.id].recurrence_rule is None
    assert await recurrence.list_pending() == []


@pytest.mark.asyncio
async def test_deciding_closed_request_is_invalid(recurrence, jobs):
    job = jobs.make(status=JobStatus.SCHEDULED)
    request = await recurrence.propose(job.id, "customer-1", 2)
    await recurrence.decide(request.id, Status.DECLINED)

    with pytest.raises(InvalidTransition):
        await recurrence.decide(request.id, Status.ACCEPTED)


@pytest.mark.asyncio
async def test_new_proposal_allowed_after_decision(recurrence, jobs):
    job = jobs.make(status=JobStatus.SCHEDULED)
    first = await recurrence.propose(job.id, "customer-1", 2)
    await recurrence.decide(first.id, Status.DECLINED)

    second = await recurrence.propose(job.id, "customer-1", 4)
    assert second.id != first.id


@pytest.mark.asyncio
async def test_unknown_request_is_not_found(recurrence):
    with pytest.raises(NotFound):
        await recurrence.decide(999, Status.ACCEPTED)


@pytest.mark.asyncio
async def test_pending_is_not_a_decision(recurrence, jobs):
    job = jobs.make(status=JobStatus.SCHEDULED)
    request = await recurrence.propose(job.id, "customer-1", 2)

    with pytest.raises(ValueError):
        await recurrence.decide(request.id, Status.PENDING)
