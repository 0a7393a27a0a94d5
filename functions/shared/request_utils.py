"""Shared request utilities for API handlers."""

import base64
import binascii
import json
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def get_header(event: dict, name: str) -> Optional[str]:
    """Case-insensitive header lookup.

    API Gateway preserves the client's header casing, so "Stripe-Signature"
    and "stripe-signature" both show up in practice.
    """
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def get_origin(event: dict) -> Optional[str]:
    """Extract Origin header from request."""
    return get_header(event, "origin")


def get_raw_body(event: dict) -> bytes:
    """Return the request body exactly as the client sent it.

    Webhook signatures are computed over these bytes, so the body must never
    be parsed and re-serialized before verification.
    """
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body)
        except (binascii.Error, ValueError):
            logger.warning("Request body flagged as base64 but could not be decoded")
            return b""
    if isinstance(body, bytes):
        return body
    return body.encode("utf-8")


def parse_json_body(event: dict) -> dict:
    """Parse a JSON object body, raising ValueError when it is not one."""
    raw = get_raw_body(event)
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body
