"""
Redis list transport for notification envelopes.

Producers LPUSH JSON envelopes onto the queue. The dispatch worker BLMOVEs
each one onto a processing list, hands it to the dispatcher, and removes it
when dispatch returns. Envelopes whose dispatch raised are pushed back with
an incremented attempt count until the limit, then parked on a dead-letter
list. Delivery is at-least-once.
"""

import json
from collections.abc import Awaitable, Callable

from jobflow.config import settings
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.notification_domain import Channel, NotificationEnvelope
from jobflow.services.infrastructure.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

EnvelopeHandler = Callable[[NotificationEnvelope], Awaitable[object]]


class NotificationTransportError(Exception):
    """An envelope could not be handed to the queue."""


class RedisNotificationTransport:
    def __init__(
        self,
        redis_client: FastRedisClient = fast_redis,
        queue_key: str | None = None,
        max_delivery_attempts: int | None = None,
    ):
        self.redis = redis_client
        self.queue_key = queue_key or settings.NOTIFICATION_QUEUE_KEY
        self.processing_key = f"{self.queue_key}:processing"
        self.dead_letter_key = f"{self.queue_key}:dead"
        self.max_delivery_attempts = (
            max_delivery_attempts or settings.NOTIFICATION_MAX_DELIVERY_ATTEMPTS
        )

    async def enqueue(
        self,
        notification_type: str,
        recipient_id: str,
        channels: list[Channel] | list[str],
        payload: dict | None = None,
    ) -> NotificationEnvelope:
        envelope = NotificationEnvelope(
            type=str(getattr(notification_type, "value", notification_type)),
            recipient_id=recipient_id,
            channels=[str(getattr(channel, "value", channel)) for channel in channels],
            payload=payload or {},
        )
        pushed = await self.redis.push_to_list(
            self.queue_key, json.dumps(envelope.to_dict(), default=str)
        )
        if not pushed:
            raise NotificationTransportError(
                f"Failed to enqueue {envelope.type} notification for {recipient_id}"
            )

        logger.debug(
            "Notification enqueued",
            notification_id=envelope.id,
            notification_type=envelope.type,
            recipient_id=recipient_id,
        )
        return envelope

    async def process_next(self, handler: EnvelopeHandler, timeout: int = 5) -> bool:
        """
        Take one envelope and run ``handler`` on it.

        Returns False when the queue stayed empty for ``timeout`` seconds.
        """
        raw = await self.redis.pop_to_inflight(self.queue_key, self.processing_key, timeout)
        if raw is None:
            return False

        try:
            envelope = NotificationEnvelope.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Malformed notification envelope", error=str(e), raw_preview=raw[:100])
            await self.redis.move_from_inflight(self.processing_key, self.dead_letter_key, raw)
            return True

        try:
            await handler(envelope)
        except Exception as e:
            await self._retry_or_dead_letter(raw, envelope, e)
            return True

        await self.redis.ack_from_inflight(self.processing_key, raw)
        return True

    async def _retry_or_dead_letter(
        self, raw: str, envelope: NotificationEnvelope, error: Exception
    ) -> None:
        attempts = envelope.delivery_attempts + 1
        updated = json.dumps(
            {**envelope.to_dict(), "delivery_attempts": attempts}, default=str
        )

        if attempts >= self.max_delivery_attempts:
            logger.error(
                "Notification dead-lettered",
                notification_id=envelope.id,
                notification_type=envelope.type,
                attempts=attempts,
                error=str(error),
            )
            await self.redis.move_from_inflight(
                self.processing_key, self.dead_letter_key, raw, replacement=updated
            )
            return

        logger.warning(
            "Notification dispatch failed, requeueing",
            notification_id=envelope.id,
            notification_type=envelope.type,
            attempts=attempts,
            error=str(error),
        )
        await self.redis.move_from_inflight(
            self.processing_key, self.queue_key, raw, replacement=updated
        )

    async def recover_inflight(self) -> int:
        """Return envelopes left on the processing list by a crashed worker."""
        stranded = await self.redis.list_range(self.processing_key)
        for raw in stranded:
            await self.redis.move_from_inflight(self.processing_key, self.queue_key, raw)
        if stranded:
            logger.warning("Recovered in-flight notifications", count=len(stranded))
        return len(stranded)


notification_transport = RedisNotificationTransport()
