"""
Notification Domain Models
Lifecycle events queued for delivery, recipients, and per-channel outcomes.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class NotificationType(str, Enum):
    QUOTE_CREATED = "quote_created"
    QUOTE_ACCEPTED = "quote_accepted"
    QUOTE_DECLINED = "quote_declined"
    QUOTE_EXPIRED = "quote_expired"
    QUOTE_REVISION_REQUESTED = "quote_revision_requested"
    APPOINTMENT_SCHEDULED = "appointment_scheduled"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    BOOKING_REQUESTED = "booking_requested"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    INVOICE_SENT = "invoice_sent"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAST_DUE = "invoice_past_due"
    RECURRENCE_REQUEST_NEW = "recurrence_request_new"
    RECURRENCE_REQUEST_RESPONSE = "recurrence_request_response"


ALL_CHANNELS = (Channel.EMAIL, Channel.SMS, Channel.PUSH)

# Sentinel recipient that fans out to every administrator
ADMINS = "admins"


@dataclass(frozen=True, slots=True)
class NotificationEnvelope:
    """What travels over the queue. One envelope per (event, recipient)."""

    type: str
    recipient_id: str
    channels: list[str]
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    delivery_attempts: int = 0
    enqueued_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationEnvelope":
        return cls(
            type=data["type"],
            recipient_id=str(data["recipient_id"]),
            channels=list(data.get("channels") or []),
            payload=dict(data.get("payload") or {}),
            id=data.get("id") or uuid.uuid4().hex,
            delivery_attempts=int(data.get("delivery_attempts", 0)),
            enqueued_at=data.get("enqueued_at") or datetime.now(UTC).isoformat(),
        )


@dataclass(frozen=True, slots=True)
class Recipient:
    id: str
    name: str
    role: str = "customer"
    email: str | None = None
    phone: str | None = None
    email_enabled: bool = True
    sms_enabled: bool = True
    push_enabled: bool = True
    push_token: str | None = None
    billing_customer_ref: str | None = None

    def enabled_channels(self) -> set[Channel]:
        """Channels the recipient both enabled and can be reached on."""
        enabled = set()
        if self.email_enabled and self.email:
            enabled.add(Channel.EMAIL)
        if self.sms_enabled and self.phone:
            enabled.add(Channel.SMS)
        if self.push_enabled and self.push_token:
            enabled.add(Channel.PUSH)
        return enabled


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    subject: str
    text: str
    html: str | None = None


@dataclass(frozen=True, slots=True)
class NotificationAttempt:
    notification_id: str
    recipient_id: str
    channel: Channel
    event_type: str
    success: bool
    error: str | None = None
    attempted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
