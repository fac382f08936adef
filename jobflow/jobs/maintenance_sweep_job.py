"""
Maintenance sweep: expires overdue quotes and marks overdue invoices past due.

Runs on a fixed interval. Each pass walks bounded id batches and applies the
same lifecycle transitions the API uses, so every status change goes through
the compare-and-swap and enqueues its notifications. A rerun finds nothing to
do for rows already moved.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

from jobflow.config import settings
from jobflow.db.helpers import DatabaseError
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.errors import JobflowError
from jobflow.models.domain.job_domain import JobStatus
from jobflow.repositories.job_repository import JobRepository
from jobflow.services.lifecycle.job_service import JobLifecycleService, job_lifecycle_service
from jobflow.services.lifecycle.state_machine import EventSource, JobEvent, JobEventType

logger = get_logger(__name__)

# (sweep name, statuses it scans, event applied to each overdue job)
SWEEPS: tuple[tuple[str, tuple[JobStatus, ...], JobEventType], ...] = (
    ("expired_quotes", (JobStatus.QUOTE_SENT,), JobEventType.EXPIRE_QUOTE),
    (
        "past_due_invoices",
        (JobStatus.INVOICED, JobStatus.PAYMENT_PENDING),
        JobEventType.MARK_PAST_DUE,
    ),
)


@dataclass
class SweepMetrics:
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    counts: dict[str, int] = field(default_factory=dict)
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)

    def record(self, sweep: str) -> None:
        self.counts[sweep] = self.counts.get(sweep, 0) + 1

    def record_error(self, sweep: str, job_id: str | None, error: str) -> None:
        self.errors.append({"sweep": sweep, "job_id": job_id, "error": error})
        logger.warning("Maintenance sweep item failed", sweep=sweep, job_id=job_id, error=error)

    def to_dict(self) -> dict:
        return {
            "job_run": "maintenance_sweep",
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round((datetime.now(UTC) - self.started_at).total_seconds(), 2),
            **{sweep: self.counts.get(sweep, 0) for sweep, _, _ in SWEEPS},
            "skipped": self.skipped,
            "errors_count": len(self.errors),
            "errors": self.errors,
        }


class MaintenanceSweepJob:
    def __init__(
        self,
        lifecycle: JobLifecycleService | None = None,
        jobs=JobRepository,
        batch_size: int | None = None,
    ):
        self.lifecycle = lifecycle or job_lifecycle_service
        self.jobs = jobs
        self.batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        self.is_running = False

    async def run_once(self, now: datetime | None = None) -> dict:
        if self.is_running:
            logger.warning("Maintenance sweep already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        self.is_running = True
        try:
            now = now or datetime.now(UTC)
            metrics = SweepMetrics()
            for name, statuses, event_type in SWEEPS:
                await self._sweep(name, statuses, event_type, now, metrics)

            result = metrics.to_dict()
            logger.info("Maintenance sweep completed", **{k: v for k, v in result.items() if k != "errors"})
            return result
        finally:
            self.is_running = False

    async def _sweep(
        self,
        name: str,
        statuses: tuple[JobStatus, ...],
        event_type: JobEventType,
        now: datetime,
        metrics: SweepMetrics,
    ) -> None:
        after_id = None
        while True:
            try:
                batch = await self.jobs.ids_due(
                    list(statuses), now, limit=self.batch_size, after_id=after_id
                )
            except DatabaseError as e:
                metrics.record_error(name, None, str(e))
                return

            for job_id in batch:
                await self._apply(name, job_id, event_type, metrics)

            if len(batch) < self.batch_size:
                return
            after_id = batch[-1]

    async def _apply(
        self, name: str, job_id: str, event_type: JobEventType, metrics: SweepMetrics
    ) -> None:
        try:
            job = await self.jobs.get(job_id)
            if not job:
                metrics.skipped += 1
                return
            outcome = await self.lifecycle.apply_if_allowed(
                job, JobEvent(event_type, source=EventSource.SWEEP)
            )
        except (JobflowError, DatabaseError) as e:
            metrics.record_error(name, job_id, str(e))
            return

        if outcome:
            metrics.record(name)
        else:
            metrics.skipped += 1


maintenance_sweep_job = MaintenanceSweepJob()


async def run_maintenance_sweep(now: datetime | None = None) -> dict:
    return await maintenance_sweep_job.run_once(now)


async def start_maintenance_sweep_scheduler() -> None:
    """Run the sweep forever on ``SWEEP_INTERVAL_MINUTES``."""
    interval_seconds = settings.SWEEP_INTERVAL_MINUTES * 60
    logger.info("Maintenance sweep scheduler started", interval_minutes=settings.SWEEP_INTERVAL_MINUTES)

    while True:
        try:
            await run_maintenance_sweep()
        except Exception as e:
            logger.error("Maintenance sweep scheduler error", error=str(e), error_type=type(e).__name__)
        await asyncio.sleep(interval_seconds)


async def run_maintenance_sweep_once() -> None:
    await run_maintenance_sweep()
