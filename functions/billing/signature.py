"""
Webhook signature verification.

The header follows the provider scheme `t=<timestamp>,v1=<hex digest>[,v1=...]`
where each digest is HMAC-SHA256 over `"<timestamp>.<raw body>"`. Verification
must run on the raw request bytes: re-serialising parsed JSON changes
whitespace and key order and breaks the digest.
"""

import json
import logging
from typing import Optional, Union

import stripe

from billing.errors import MalformedEvent, SignatureInvalid

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def verify(
    raw_payload: Union[bytes, str],
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> None:
    """Verify a webhook signature or raise SignatureInvalid.

    Digest comparison is constant time and payloads whose timestamp is older
    than `tolerance_seconds` are rejected (replay mitigation).
    """
    if not signature_header:
        raise SignatureInvalid("Missing signature header")
    if not secret:
        raise SignatureInvalid("Webhook secret not configured")

    if isinstance(raw_payload, bytes):
        try:
            payload = raw_payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureInvalid("Payload is not valid UTF-8") from e
    else:
        payload = raw_payload

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance_seconds)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature rejected: {e}")
        raise SignatureInvalid(str(e)) from e


def parse_event(raw_payload: Union[bytes, str]) -> dict:
    """Decode a verified payload into an event dict.

    Raises:
        MalformedEvent: payload is not a JSON object with `id` and `type`.
    """
    try:
        event = json.loads(raw_payload)
    except (ValueError, TypeError) as e:
        raise MalformedEvent(f"Invalid JSON payload: {e}") from e

    if not isinstance(event, dict):
        raise MalformedEvent("Event payload must be a JSON object")
    if not event.get("id") or not event.get("type"):
        raise MalformedEvent("Event payload missing id or type")

    return event
