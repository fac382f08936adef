"""
Message templates per notification type.

Each type has a subject and a plain-text body; email additionally gets a
minimal HTML rendering of the same text. SMS and push use a short form.
Missing payload keys render as empty strings rather than failing delivery.
"""

import html
from datetime import datetime

from jobflow.config import settings
from jobflow.models.domain.notification_domain import (
    Channel,
    NotificationType,
    Recipient,
    RenderedMessage,
)

T = NotificationType

# type -> (subject, body, short body for sms/push)
TEMPLATES: dict[NotificationType, tuple[str, str, str]] = {
    T.QUOTE_CREATED: (
        "Your quote for {job_title}",
        "Hello {name},\n\nYour quote for {job_title} is ready. Total: {total}.\n"
        "It is valid until {due_date}.\n\nReview and respond: {link}",
        "Your quote for {job_title} ({total}) is ready: {link}",
    ),
    T.QUOTE_ACCEPTED: (
        "Quote accepted: {job_title}",
        "The quote for {job_title} ({total}) was accepted. It is ready to schedule.",
        "Quote accepted: {job_title} ({total})",
    ),
    T.QUOTE_DECLINED: (
        "Quote declined: {job_title}",
        "The quote for {job_title} ({total}) was declined.",
        "Quote declined: {job_title}",
    ),
    T.QUOTE_EXPIRED: (
        "Your quote for {job_title} has expired",
        "Hello {name},\n\nThe quote for {job_title} expired without a response. "
        "Contact us if you would still like the work done.",
        "Your quote for {job_title} has expired.",
    ),
    T.QUOTE_REVISION_REQUESTED: (
        "Revision requested: {job_title}",
        "A revision was requested for the quote on {job_title}.\n\nReason: {reason}",
        "Revision requested for {job_title}: {reason}",
    ),
    T.APPOINTMENT_SCHEDULED: (
        "Appointment confirmed: {job_title}",
        "Hello {name},\n\nYour appointment for {job_title} is confirmed for {start}.\n\n"
        "Manage your appointments: {portal}",
        "Confirmed: {job_title} on {start}",
    ),
    T.APPOINTMENT_CANCELLED: (
        "Appointment cancelled: {job_title}",
        "Hello {name},\n\nYour appointment for {job_title} has been cancelled. {reason}",
        "Cancelled: {job_title}",
    ),
    T.BOOKING_REQUESTED: (
        "New booking request: {job_title}",
        "A booking request for {job_title} was submitted for {start}.",
        "New booking request: {job_title} on {start}",
    ),
    T.JOB_STARTED: (
        "Work started: {job_title}",
        "Hello {name},\n\nWork on {job_title} has started.",
        "Work on {job_title} has started.",
    ),
    T.JOB_COMPLETED: (
        "Work completed: {job_title}",
        "Hello {name},\n\nWork on {job_title} is complete. Your invoice will follow.",
        "Work on {job_title} is complete.",
    ),
    T.INVOICE_SENT: (
        "Invoice for {job_title}",
        "Hello {name},\n\nYour invoice for {job_title} is ready. Amount: {total}.\n"
        "Due date: {due_date}.\n\nView and pay: {link}",
        "Invoice for {job_title}: {total}, due {due_date}. Pay: {link}",
    ),
    T.INVOICE_PAID: (
        "Payment received for {job_title}",
        "Hello {name},\n\nThank you. We received your payment of {total} for {job_title}.",
        "Payment of {total} received. Thank you!",
    ),
    T.INVOICE_PAST_DUE: (
        "Past due: invoice for {job_title}",
        "Hello {name},\n\nYour invoice for {job_title} ({total}) was due on {due_date} "
        "and is now past due.\n\nPay now: {link}",
        "Your invoice for {job_title} ({total}) is past due. Pay: {link}",
    ),
    T.RECURRENCE_REQUEST_NEW: (
        "New recurrence request: {job_title}",
        "{customer_name} asked for {job_title} to repeat every {frequency} week(s){day_text}.",
        "Recurrence request for {job_title}",
    ),
    T.RECURRENCE_REQUEST_RESPONSE: (
        "Your recurring service request was {decision}",
        "Hello {name},\n\nYour request to repeat {job_title} every {frequency} week(s)"
        "{day_text} was {decision}.",
        "Your recurrence request for {job_title} was {decision}.",
    ),
}

_DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return ""


def format_cents(cents) -> str:
    if cents is None:
        return ""
    return f"${int(cents) / 100:,.2f}"


def _format_date(value) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(str(value)).strftime("%B %d, %Y")
    except ValueError:
        return str(value)


def _format_moment(value) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(str(value)).strftime("%A, %B %d at %I:%M %p")
    except ValueError:
        return str(value)


def template_context(payload: dict, recipient: Recipient) -> dict:
    requested_day = payload.get("requested_day")
    return _Defaulting(
        {
            **{key: value for key, value in payload.items() if value is not None},
            "name": recipient.name or "there",
            "total": format_cents(payload.get("total_amount_cents")),
            "due_date": _format_date(payload.get("due_at")),
            "start": _format_moment(payload.get("start")),
            "link": payload.get("hosted_url") or settings.PORTAL_BASE_URL,
            "portal": settings.PORTAL_BASE_URL,
            "day_text": f" on {_DAY_NAMES[requested_day]}" if requested_day is not None else "",
        }
    )


def render(
    notification_type: NotificationType | str,
    payload: dict,
    recipient: Recipient,
    channel: Channel,
) -> RenderedMessage:
    """Render one message for one channel."""
    subject_template, body_template, short_template = TEMPLATES[NotificationType(notification_type)]
    context = template_context(payload, recipient)

    subject = subject_template.format_map(context)
    if channel is Channel.EMAIL:
        text = body_template.format_map(context)
        body_html = "".join(
            f"<p>{html.escape(paragraph).replace(chr(10), '<br>')}</p>"
            for paragraph in text.split("\n\n")
        )
        return RenderedMessage(subject=subject, text=text, html=body_html)

    return RenderedMessage(subject=subject, text=short_template.format_map(context))
