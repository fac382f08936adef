"""
Availability read model.

Derives booked / pending / blocked day sets from calendar events joined with
their job's status, plus admin-blocked dates. Nothing here writes; the
capacity re-check that makes booking atomic lives in
CalendarRepository.reserve_slot.
"""

from collections import defaultdict
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from jobflow.config import settings
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.calendar_domain import (
    Availability,
    day_bounds,
    day_key,
    iter_days,
)
from jobflow.models.domain.errors import CapacityExceeded, DateBlocked, NotFound
from jobflow.models.domain.job_domain import (
    BOOKED_STATUSES,
    PENDING_STATUSES,
    BlockedDate,
    BookedSlot,
    CalendarEvent,
    CalendarEventType,
)
from jobflow.models.domain.recurrence_domain import rule_weekday
from jobflow.repositories.calendar_repository import CalendarRepository

logger = get_logger(__name__)


def _event_days(event: CalendarEvent, zone: ZoneInfo) -> set[str]:
    """Every business day a (possibly multi-day) event touches."""
    first = event.start.astimezone(zone).date()
    last = (event.end - timedelta(microseconds=1)).astimezone(zone).date()
    return {day.isoformat() for day in iter_days(first, max(first, last))}


def compute_availability(
    slots: Iterable[BookedSlot],
    blocked_dates: Iterable[BlockedDate],
    *,
    zone: ZoneInfo,
    capacity_minutes: int,
    start_day: date | None = None,
    end_day: date | None = None,
) -> Availability:
    """
    Classify days. Priority is blocked > booked > pending so the three sets
    never overlap. A job's duration counts toward the day it starts on.
    """
    blocked = {blocked_date.day.isoformat() for blocked_date in blocked_dates}
    booked: set[str] = set()
    pending: set[str] = set()
    committed: dict[str, int] = defaultdict(int)

    for slot in slots:
        event = slot.event
        if event.type is CalendarEventType.BLOCKED:
            blocked |= _event_days(event, zone)
            continue
        if event.type is not CalendarEventType.JOB or slot.job_status is None:
            continue

        if slot.job_status in BOOKED_STATUSES:
            booked |= _event_days(event, zone)
        elif slot.job_status in PENDING_STATUSES:
            pending |= _event_days(event, zone)
        else:
            # cancelled, declined and expired jobs occupy nothing
            continue
        committed[day_key(event.start, zone)] += event.duration_minutes()

    booked |= {key for key, minutes in committed.items() if minutes >= capacity_minutes}
    booked -= blocked
    pending -= blocked | booked

    if start_day or end_day:
        low = start_day.isoformat() if start_day else ""
        high = end_day.isoformat() if end_day else "9999-12-31"

        def in_range(keys: set[str]) -> set[str]:
            return {key for key in keys if low <= key <= high}

        booked, pending, blocked = in_range(booked), in_range(pending), in_range(blocked)
        committed = {key: value for key, value in committed.items() if low <= key <= high}

    return Availability(
        booked=booked, pending=pending, blocked=blocked, committed_minutes=dict(committed)
    )


def unavailable_weekdays(rules: Iterable[str | None]) -> list[int]:
    """Weekdays (SU=0) already claimed by a recurrence rule's BYDAY."""
    return sorted({day for day in (rule_weekday(rule) for rule in rules) if day is not None})


class AvailabilityService:
    """Availability queries over the calendar repository."""

    def __init__(
        self,
        repository=CalendarRepository,
        *,
        zone: ZoneInfo | None = None,
        capacity_minutes: int | None = None,
    ):
        self.repository = repository
        self.zone = zone or ZoneInfo(settings.BUSINESS_TIMEZONE)
        self.capacity_minutes = capacity_minutes or settings.daily_capacity_minutes()

    async def get_availability(self, start_day: date, end_day: date) -> Availability:
        if end_day < start_day:
            raise ValueError("end must not be before start")

        range_start, _ = day_bounds(start_day, self.zone)
        _, range_end = day_bounds(end_day, self.zone)

        slots = await self.repository.slots_in_range(range_start, range_end)
        blocked_dates = await self.repository.blocked_dates(start_day, end_day)

        return compute_availability(
            slots,
            blocked_dates,
            zone=self.zone,
            capacity_minutes=self.capacity_minutes,
            start_day=start_day,
            end_day=end_day,
        )

    async def check_bookable(self, day: date, duration_minutes: int) -> None:
        """
        Raise DateBlocked or CapacityExceeded if ``day`` cannot take another
        job of ``duration_minutes``. Advisory only: the reservation re-checks.
        """
        availability = await self.get_availability(day, day)
        key = day.isoformat()
        if key in availability.blocked:
            raise DateBlocked(key)

        committed = availability.committed_minutes.get(key, 0)
        if committed + duration_minutes > self.capacity_minutes:
            logger.info(
                "Booking rejected for capacity",
                day=key,
                committed_minutes=committed,
                requested_minutes=duration_minutes,
            )
            raise CapacityExceeded(key, committed, self.capacity_minutes)

    async def check_slot(self, start: datetime, end: datetime) -> None:
        if end <= start:
            raise ValueError("Slot end must be after its start")
        day = start.astimezone(self.zone).date()
        await self.check_bookable(day, int((end - start).total_seconds() // 60))

    async def unavailable_recurrence_days(self) -> list[int]:
        rules = await self.repository.active_recurrence_rules()
        return unavailable_weekdays(rules)

    async def add_calendar_event(
        self,
        *,
        title: str,
        start: datetime,
        end: datetime,
        type: CalendarEventType,
        customer_id: str | None = None,
    ) -> CalendarEvent:
        """Admin-managed blocked or personal time. Blocked events close every day they touch."""
        if end <= start:
            raise ValueError("Event end must be after its start")
        return await self.repository.add_event(
            title=title, start=start, end=end, type=type, customer_id=customer_id
        )

    async def remove_calendar_event(self, event_id: int) -> None:
        if not await self.repository.remove_event(event_id):
            raise NotFound("CalendarEvent", event_id)


availability_service = AvailabilityService()
