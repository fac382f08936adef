"""
Notification dispatch worker: drains the Redis queue through the dispatcher.
"""

import asyncio

from jobflow.infrastructure.observability.logging import get_logger
from jobflow.services.notifications.dispatcher import NotificationDispatcher
from jobflow.services.notifications.transport import (
    RedisNotificationTransport,
    notification_transport,
)

logger = get_logger(__name__)

POLL_TIMEOUT_SECONDS = 5
ERROR_BACKOFF_SECONDS = 5


async def drain_queue(
    transport: RedisNotificationTransport,
    dispatcher: NotificationDispatcher,
    max_envelopes: int | None = None,
) -> int:
    """Dispatch envelopes until the queue is empty or ``max_envelopes`` were taken."""
    processed = 0
    while max_envelopes is None or processed < max_envelopes:
        took = await transport.process_next(dispatcher.dispatch, timeout=POLL_TIMEOUT_SECONDS)
        if not took:
            break
        processed += 1
    return processed


async def start_notification_dispatcher(
    transport: RedisNotificationTransport | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> None:
    transport = transport or notification_transport
    dispatcher = dispatcher or NotificationDispatcher()

    recovered = await transport.recover_inflight()
    logger.info("Notification dispatcher started", recovered=recovered, queue=transport.queue_key)

    try:
        while True:
            try:
                await transport.process_next(dispatcher.dispatch, timeout=POLL_TIMEOUT_SECONDS)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Notification dispatcher loop error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
    finally:
        await dispatcher.close()
        logger.info("Notification dispatcher stopped")
