"""
Recurrence Domain Models
A customer's proposal to make a job repeat, and the rule it compiles to.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

# Day-of-week codes indexed SU=0 .. SA=6
WEEKDAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")

_BYDAY_PATTERN = re.compile(r"BYDAY=([A-Z]{2})")


class RecurrenceRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COUNTERED = "countered"


# Requests an administrator may still decide on
OPEN_REQUEST_STATUSES = frozenset(
    {RecurrenceRequestStatus.PENDING, RecurrenceRequestStatus.COUNTERED}
)


@dataclass(frozen=True, slots=True)
class RecurrenceRequest:
    id: int
    job_id: str
    customer_id: str
    frequency: int
    status: RecurrenceRequestStatus
    requested_day: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    job_title: str | None = None
    customer_name: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_REQUEST_STATUSES


def validate_proposal(frequency: int, requested_day: int | None) -> None:
    if frequency < 1:
        raise ValueError("frequency must be at least 1")
    if requested_day is not None and not 0 <= requested_day <= 6:
        raise ValueError("requested_day must be between 0 (Sunday) and 6 (Saturday)")


def compile_recurrence_rule(frequency: int, requested_day: int | None = None) -> str:
    """
    Compile an accepted proposal into an RFC 5545 style rule.

    >>> compile_recurrence_rule(2, 3)
    'FREQ=WEEKLY;INTERVAL=2;BYDAY=WE'
    """
    validate_proposal(frequency, requested_day)
    rule = f"FREQ=WEEKLY;INTERVAL={frequency}"
    if requested_day is not None:
        rule += f";BYDAY={WEEKDAY_CODES[requested_day]}"
    return rule


def rule_weekday(rule: str | None) -> int | None:
    """Weekday index (SU=0) named by a rule's BYDAY part, if any."""
    if not rule:
        return None
    match = _BYDAY_PATTERN.search(rule)
    if not match or match.group(1) not in WEEKDAY_CODES:
        return None
    return WEEKDAY_CODES.index(match.group(1))
