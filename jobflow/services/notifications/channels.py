"""
Delivery channels: email through Resend, SMS through Twilio, push through
Expo. Each ``send`` either returns normally or raises ChannelError; the
dispatcher records the outcome.
"""

from abc import ABC, abstractmethod

import httpx

from jobflow.config import settings
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.notification_domain import Channel, Recipient, RenderedMessage

logger = get_logger(__name__)

REQUEST_TIMEOUT = 15  # seconds


class ChannelError(Exception):
    """A channel failed to hand a message to its provider."""

    def __init__(self, message: str, channel: Channel, status_code: int | None = None):
        super().__init__(message)
        self.channel = channel
        self.status_code = status_code


def create_http_client() -> httpx.AsyncClient:
    timeout = httpx.Timeout(REQUEST_TIMEOUT)
    limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
    return httpx.AsyncClient(timeout=timeout, limits=limits)


class NotificationChannel(ABC):
    channel: Channel

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or create_http_client()

    async def close(self) -> None:
        await self._client.aclose()

    @abstractmethod
    async def send(self, recipient: Recipient, message: RenderedMessage, data: dict) -> None:
        """Deliver ``message`` or raise ChannelError."""

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.post(url, **kwargs)
        except httpx.RequestError as e:
            raise ChannelError(f"{self.channel.value} request failed: {e}", self.channel) from e

        if not response.is_success:
            logger.warning(
                "Notification provider rejected message",
                channel=self.channel.value,
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise ChannelError(
                f"{self.channel.value} provider returned HTTP {response.status_code}",
                self.channel,
                status_code=response.status_code,
            )
        return response


class ResendEmailChannel(NotificationChannel):
    channel = Channel.EMAIL

    async def send(self, recipient: Recipient, message: RenderedMessage, data: dict) -> None:
        if not settings.RESEND_API_KEY:
            raise ChannelError("Email delivery is not configured", self.channel)
        if not recipient.email:
            raise ChannelError("Recipient has no email address", self.channel)

        body = {
            "from": settings.EMAIL_FROM_ADDRESS,
            "to": [recipient.email],
            "subject": message.subject,
            "text": message.text,
        }
        if message.html:
            body["html"] = message.html

        await self._post(
            settings.RESEND_API_URL,
            json=body,
            headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
        )


class TwilioSmsChannel(NotificationChannel):
    channel = Channel.SMS

    async def send(self, recipient: Recipient, message: RenderedMessage, data: dict) -> None:
        if not (
            settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER
        ):
            raise ChannelError("SMS delivery is not configured", self.channel)
        if not recipient.phone:
            raise ChannelError("Recipient has no phone number", self.channel)

        url = f"{settings.TWILIO_API_BASE}/Accounts/{settings.TWILIO_ACCOUNT_SID}/Messages.json"
        await self._post(
            url,
            data={"To": recipient.phone, "From": settings.TWILIO_FROM_NUMBER, "Body": message.text},
            auth=(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN),
        )


class ExpoPushChannel(NotificationChannel):
    channel = Channel.PUSH

    async def send(self, recipient: Recipient, message: RenderedMessage, data: dict) -> None:
        if not recipient.push_token:
            raise ChannelError("Recipient has no push token", self.channel)

        response = await self._post(
            settings.EXPO_PUSH_URL,
            json={
                "to": recipient.push_token,
                "title": message.subject,
                "body": message.text,
                "data": data,
            },
            headers={"Accept": "application/json"},
        )

        # Expo answers 200 with a per-message ticket that may still be an error
        ticket = (response.json() or {}).get("data") or {}
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if ticket.get("status") == "error":
            raise ChannelError(ticket.get("message") or "Push ticket error", self.channel)


def default_channels() -> dict[Channel, NotificationChannel]:
    return {
        Channel.EMAIL: ResendEmailChannel(),
        Channel.SMS: TwilioSmsChannel(),
        Channel.PUSH: ExpoPushChannel(),
    }
