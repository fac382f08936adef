"""
Customer calendar feed.

Each customer can fetch an iCalendar (.ics) view of their scheduled jobs from
a secret URL, so calendar apps can subscribe without a session token. The URL
carries a random token that the customer can rotate at any time.
"""

import secrets
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from jobflow.config import settings
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.errors import NotFound
from jobflow.models.domain.job_domain import BOOKED_STATUSES, PENDING_STATUSES, BookedSlot
from jobflow.repositories.calendar_repository import CalendarRepository
from jobflow.repositories.recipient_repository import RecipientRepository

logger = get_logger(__name__)

PRODUCT_ID = "-//jobflow//Job Calendar//EN"
FOLD_WIDTH = 75


def _escape(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def _fold(line: str) -> list[str]:
    """Split a content line into continuation lines of at most 75 characters."""
    if len(line) <= FOLD_WIDTH:
        return [line]
    parts = [line[:FOLD_WIDTH]]
    rest = line[FOLD_WIDTH:]
    while rest:
        parts.append(" " + rest[: FOLD_WIDTH - 1])
        rest = rest[FOLD_WIDTH - 1 :]
    return parts


def _stamp(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def render_calendar_feed(
    slots: Iterable[BookedSlot], *, calendar_name: str, generated_at: datetime
) -> str:
    """
    Render job slots as an iCalendar document (CRLF line endings).

    Booked jobs are CONFIRMED and jobs still awaiting a quote decision are
    TENTATIVE; slots of any other status are left out.
    """
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODUCT_ID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        f"X-WR-CALNAME:{_escape(calendar_name)}",
    ]

    for slot in slots:
        if slot.job_status in BOOKED_STATUSES:
            event_status = "CONFIRMED"
        elif slot.job_status in PENDING_STATUSES:
            event_status = "TENTATIVE"
        else:
            continue

        event = slot.event
        job_url = settings.job_url(event.job_id)
        description = f"Status: {slot.job_status.value}\nView job: {job_url}"
        lines += [
            "BEGIN:VEVENT",
            f"UID:job-{event.job_id}-{event.id}@jobflow",
            f"DTSTAMP:{_stamp(generated_at)}",
            f"DTSTART:{_stamp(event.start)}",
            f"DTEND:{_stamp(event.end)}",
            f"SUMMARY:{_escape(event.title)}",
            f"DESCRIPTION:{_escape(description)}",
            f"URL;VALUE=URI:{job_url}",
            f"STATUS:{event_status}",
            "TRANSP:OPAQUE",
            "END:VEVENT",
        ]

    lines.append("END:VCALENDAR")
    return "\r\n".join(part for line in lines for part in _fold(line)) + "\r\n"


class CalendarFeedService:
    def __init__(
        self,
        repository=CalendarRepository,
        recipients=RecipientRepository,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.recipients = recipients
        self.clock = clock or (lambda: datetime.now(UTC))

    @staticmethod
    def feed_url(token: str) -> str:
        return f"{settings.API_BASE_URL.rstrip('/')}/calendar/feed/{token}.ics"

    async def get_feed_token(self, customer_id: str) -> str:
        """The customer's current feed token, created on first use."""
        token = await self.repository.feed_token(customer_id)
        if token:
            return token
        return await self.repository.store_feed_token(customer_id, secrets.token_urlsafe(32))

    async def rotate_feed_token(self, customer_id: str) -> str:
        """Issue a new token; the previous feed URL stops working."""
        token = await self.repository.store_feed_token(customer_id, secrets.token_urlsafe(32))
        logger.info("Calendar feed token rotated", customer_id=customer_id)
        return token

    async def render_feed(self, token: str) -> str:
        customer_id = await self.repository.customer_for_feed_token(token)
        if not customer_id:
            raise NotFound("CalendarFeed", "token")

        customer = await self.recipients.get(customer_id)
        name = settings.CALENDAR_NAME
        if customer and customer.name:
            name = f"{name} for {customer.name}"

        slots = await self.repository.job_events_for_customer(customer_id)
        return render_calendar_feed(slots, calendar_name=name, generated_at=self.clock())


calendar_feed_service = CalendarFeedService()
