"""Audit log of per-channel notification delivery attempts."""

from jobflow.db.helpers import execute_query
from jobflow.models.domain.notification_domain import NotificationAttempt


class NotificationRepository:
    @classmethod
    async def record_attempt(cls, attempt: NotificationAttempt) -> None:
        query = """
            INSERT INTO notification_attempts (
                notification_id, recipient_id, channel, event_type,
                success, error, attempted_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        await execute_query(
            query,
            (
                attempt.notification_id,
                attempt.recipient_id,
                attempt.channel.value,
                attempt.event_type,
                attempt.success,
                (attempt.error or "")[:500] or None,
                attempt.attempted_at,
            ),
        )
