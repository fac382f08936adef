"""
Notification dispatcher.

Resolves an envelope's recipient (or every admin for the ADMINS sentinel),
narrows the requested channels to the ones the recipient has enabled and can
be reached on, and sends each channel independently. Every channel attempt
is recorded; a failing channel never stops the others and never raises.
"""

from jobflow.db.helpers import DatabaseError
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.notification_domain import (
    ADMINS,
    Channel,
    NotificationAttempt,
    NotificationEnvelope,
    Recipient,
)
from jobflow.repositories.notification_repository import NotificationRepository
from jobflow.repositories.recipient_repository import RecipientRepository
from jobflow.services.notifications import templates
from jobflow.services.notifications.channels import NotificationChannel, default_channels

logger = get_logger(__name__)


class NotificationDispatcher:
    def __init__(
        self,
        channels: dict[Channel, NotificationChannel] | None = None,
        recipients=RecipientRepository,
        attempts=NotificationRepository,
    ):
        self.channels = channels if channels is not None else default_channels()
        self.recipients = recipients
        self.attempts = attempts

    async def close(self) -> None:
        for channel in self.channels.values():
            await channel.close()

    async def dispatch(
        self, envelope: NotificationEnvelope
    ) -> dict[str, dict[Channel, NotificationAttempt]]:
        """Deliver one envelope. Returns attempts keyed by recipient id."""
        if envelope.recipient_id == ADMINS:
            recipients = await self.recipients.list_admins()
        else:
            recipient = await self.recipients.get(envelope.recipient_id)
            recipients = [recipient] if recipient else []

        if not recipients:
            logger.warning(
                "Notification recipient not found",
                notification_id=envelope.id,
                recipient_id=envelope.recipient_id,
                notification_type=envelope.type,
            )
            return {}

        return {
            recipient.id: await self.dispatch_to(recipient, envelope) for recipient in recipients
        }

    async def dispatch_to(
        self, recipient: Recipient, envelope: NotificationEnvelope
    ) -> dict[Channel, NotificationAttempt]:
        requested = {Channel(channel) for channel in envelope.channels}
        targets = requested & recipient.enabled_channels()

        results: dict[Channel, NotificationAttempt] = {}
        for channel in sorted(targets, key=lambda c: c.value):
            error = await self._send(channel, recipient, envelope)
            attempt = NotificationAttempt(
                notification_id=envelope.id,
                recipient_id=recipient.id,
                channel=channel,
                event_type=envelope.type,
                success=error is None,
                error=error,
            )
            await self._record(attempt)
            results[channel] = attempt

        logger.info(
            "Notification dispatched",
            notification_id=envelope.id,
            notification_type=envelope.type,
            recipient_id=recipient.id,
            delivered=[c.value for c, a in results.items() if a.success],
            failed=[c.value for c, a in results.items() if not a.success],
            skipped=sorted(c.value for c in requested - targets),
        )
        return results

    async def _send(
        self, channel: Channel, recipient: Recipient, envelope: NotificationEnvelope
    ) -> str | None:
        sender = self.channels.get(channel)
        if sender is None:
            return f"No sender configured for {channel.value}"

        try:
            message = templates.render(envelope.type, envelope.payload, recipient, channel)
            await sender.send(recipient, message, {"type": envelope.type, **envelope.payload})
        except Exception as e:
            logger.warning(
                "Notification channel failed",
                notification_id=envelope.id,
                channel=channel.value,
                recipient_id=recipient.id,
                error=str(e),
            )
            return str(e) or type(e).__name__
        return None

    async def _record(self, attempt: NotificationAttempt) -> None:
        try:
            await self.attempts.record_attempt(attempt)
        except DatabaseError as e:
            logger.error(
                "Failed to record notification attempt",
                notification_id=attempt.notification_id,
                channel=attempt.channel.value,
                error=str(e),
            )
