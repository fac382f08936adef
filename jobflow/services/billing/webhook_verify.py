"""
Stripe webhook signature verification and event parsing.

Header format: ``Stripe-Signature: t=<unix>,v1=<hex>[,v1=<hex>...]``. The
signed payload is ``f"{t}.{raw_body}"`` under HMAC-SHA256 with the endpoint
secret. Timestamps outside the tolerance window are rejected to stop replays.
"""

import hashlib
import hmac
import json
import time

from jobflow.config import settings
from jobflow.models.domain.billing_domain import WebhookEvent
from jobflow.models.domain.errors import WebhookSignatureError


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as e:
                raise WebhookSignatureError("Malformed signature timestamp") from e
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Signature header is missing t or v1")
    return timestamp, signatures


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str | None = None,
    tolerance_seconds: int | None = None,
    now: float | None = None,
) -> None:
    """Raise WebhookSignatureError unless ``header`` signs ``payload``."""
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing signature header")

    tolerance = (
        tolerance_seconds
        if tolerance_seconds is not None
        else settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
    )
    timestamp, signatures = _parse_header(header)

    current = now if now is not None else time.time()
    if abs(current - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Signature mismatch")


def parse_event(payload: bytes) -> WebhookEvent:
    try:
        body = json.loads(payload)
        obj = body["data"]["object"]
        customer = obj.get("customer")
        return WebhookEvent(
            id=body["id"],
            type=body["type"],
            object_id=obj["id"],
            quote_id=obj.get("quote") if isinstance(obj.get("quote"), str) else None,
            customer_ref=customer if isinstance(customer, str) else (customer or {}).get("id"),
        )
    except (ValueError, KeyError, TypeError) as e:
        raise WebhookSignatureError(f"Malformed webhook payload: {e}") from e
