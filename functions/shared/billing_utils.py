"""Shared secret retrieval for the Stripe integration and session auth."""

import json
import logging
import os
import time

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager

logger = logging.getLogger(__name__)

SECRETS_CACHE_TTL = 300  # 5 minutes

# Cached secrets keyed by ARN: arn -> (value, fetched_at)
_secret_cache: dict[str, tuple[str, float]] = {}


def _read_secret(secret_arn: str | None, json_field: str) -> str | None:
    """Read a secret from Secrets Manager (cached with TTL).

    Secrets may be stored either as plain strings or as JSON objects with the
    value under `json_field`.
    """
    if not secret_arn:
        return None

    cached = _secret_cache.get(secret_arn)
    if cached and (time.time() - cached[1]) < SECRETS_CACHE_TTL:
        return cached[0]

    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {secret_arn}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
        value = secret_json.get(json_field) if isinstance(secret_json, dict) else None
        value = value or secret_value
    except json.JSONDecodeError:
        value = secret_value

    _secret_cache[secret_arn] = (value, time.time())
    return value


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook signing secret.

    ARNs are read at call time so tests and redeploys can change them.
    """
    api_key = _read_secret(os.environ.get("STRIPE_SECRET_ARN"), "key")
    webhook_secret = _read_secret(os.environ.get("STRIPE_WEBHOOK_SECRET_ARN"), "secret")
    return api_key, webhook_secret


def get_stripe_api_key() -> str | None:
    """Retrieve only the Stripe API key (REST handlers do not need the signing secret)."""
    return _read_secret(os.environ.get("STRIPE_SECRET_ARN"), "key")


def get_session_secret() -> str | None:
    """Retrieve the HMAC secret used to sign session cookies."""
    return _read_secret(os.environ.get("SESSION_SECRET_ARN"), "secret")


def clear_secret_cache() -> None:
    """Drop cached secrets. Used in tests for clean state."""
    _secret_cache.clear()
