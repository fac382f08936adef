# jobflow/models/domain/calendar_domain.py
"""
Calendar Domain Models
Day-key arithmetic in the business timezone and the availability read model.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo


@dataclass(frozen=True, slots=True)
class Availability:
    """Disjoint day-key sets for a date range (YYYY-MM-DD)."""

    booked: set[str] = field(default_factory=set)
    pending: set[str] = field(default_factory=set)
    blocked: set[str] = field(default_factory=set)
    committed_minutes: dict[str, int] = field(default_factory=dict)

    def is_available(self, day: str) -> bool:
        return day not in self.booked and day not in self.blocked

    def to_dict(self) -> dict:
        return {
            "booked": sorted(self.booked),
            "pending": sorted(self.pending),
            "blocked": sorted(self.blocked),
        }


def day_key(moment: datetime | date, zone: ZoneInfo) -> str:
    """Calendar day a moment falls on, in the business timezone."""
    if isinstance(moment, datetime):
        if moment.tzinfo is None:
            raise ValueError("day_key requires a timezone-aware datetime")
        return moment.astimezone(zone).date().isoformat()
    return moment.isoformat()


def day_bounds(day: date, zone: ZoneInfo) -> tuple[datetime, datetime]:
    """[start, end) of a business day as aware datetimes."""
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start, end


def iter_days(start: date, end: date):
    """Days from ``start`` to ``end`` inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
