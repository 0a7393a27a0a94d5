"""
Billing Webhook Endpoint - POST /webhooks/billing

Receives payment provider webhooks and hands them to the reconciliation
engine. Authenticated by the provider signature, not by session.

Status codes drive provider redelivery:
- 200: processed, duplicate, or permanently unprocessable (do not redeliver)
- 400: bad signature or malformed payload
- 500: misconfiguration or unexpected error
- 503: transient failure; the event was not marked processed, redeliver
"""

import logging
import os

from botocore.exceptions import ClientError

from billing.deadline import Deadline
from billing.errors import (
    MalformedEvent,
    PermanentConflict,
    ProviderNotConfigured,
    ReconciliationError,
    SignatureInvalid,
)
from billing.events import classify
from billing.signature import parse_event, verify
from billing.store import OUTCOME_CONFLICT
from billing.wiring import get_engine
from shared.billing_utils import get_stripe_secrets
from shared.logging_utils import configure_structured_logging, set_event_id, set_request_id
from shared.metrics import emit_conflict_alert, emit_webhook_metric
from shared.request_utils import get_header, get_raw_body
from shared.response_utils import error_response, json_response

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS", "300"))

# Seconds the provider is asked to wait before redelivering
TRANSIENT_RETRY_AFTER = 30


def handler(event, context):
    """
    Lambda handler for billing webhooks.

    Handles every provider event kind the engine knows about
    (checkout completion, subscription lifecycle, invoice outcomes, trial
    ending); anything else is acknowledged and marked processed.
    """
    configure_structured_logging()
    set_request_id(event)

    stripe_api_key, webhook_secret = get_stripe_secrets()
    if not stripe_api_key or not webhook_secret:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    payload = get_raw_body(event)
    signature = get_header(event, "x-signature") or get_header(event, "stripe-signature")

    try:
        verify(payload, signature, webhook_secret, WEBHOOK_TOLERANCE_SECONDS)
    except SignatureInvalid as e:
        logger.warning(f"Rejected webhook: {e}")
        emit_webhook_metric("rejected", "unknown")
        return error_response(400, "invalid_signature", "Invalid signature")

    try:
        domain_event = classify(parse_event(payload))
    except MalformedEvent as e:
        logger.warning(f"Malformed webhook payload: {e}")
        emit_webhook_metric("rejected", "unknown")
        return error_response(400, "invalid_webhook_payload", "Invalid webhook payload")

    set_event_id(domain_event.event_id)
    kind = domain_event.kind.value
    logger.info(f"Processing billing event: {domain_event.provider_type} (id={domain_event.event_id})")

    engine = get_engine()
    if engine.events.is_processed(domain_event.event_id):
        logger.info(f"Skipping duplicate event {domain_event.event_id}")
        emit_webhook_metric("duplicate", kind)
        return json_response(200, {"received": True, "duplicate": True})

    try:
        result = engine.apply(domain_event, Deadline.from_context(context))

    except PermanentConflict as e:
        # Marked processed by the engine; redelivery cannot fix it
        logger.error(f"Permanent conflict for {domain_event.event_id}: {e} (reason={e.reason})")
        emit_conflict_alert(e.reason, kind)
        emit_webhook_metric("conflict", kind)
        return json_response(
            200,
            {
                "error": {"code": "reconciliation_conflict", "message": "Event could not be reconciled"},
                "received": True,
                "processed": False,
            },
        )
    except ClientError as e:
        # DynamoDB errors are transient; nothing was committed
        logger.error(f"Transient DynamoDB error handling {domain_event.provider_type}: {e}")
        emit_webhook_metric("transient_failure", kind)
        return error_response(
            503, "temporary_error", "Temporary error, please retry", retry_after=TRANSIENT_RETRY_AFTER
        )
    except ProviderNotConfigured as e:
        logger.error(f"Provider not configured: {e}")
        return error_response(500, "stripe_not_configured", "Stripe not configured")
    except ReconciliationError as e:
        if e.retryable:
            logger.error(f"Transient error handling {domain_event.provider_type}: {type(e).__name__}: {e}")
            emit_webhook_metric("transient_failure", kind)
            return error_response(
                503, "temporary_error", "Temporary error, please retry", retry_after=TRANSIENT_RETRY_AFTER
            )
        # Provider rejected a read (bad id, permissions); retrying will not help,
        # so record the event like any other conflict and alert
        logger.error(f"Permanent provider error handling {domain_event.provider_type}: {e}")
        engine.events.mark(domain_event, OUTCOME_CONFLICT)
        emit_conflict_alert("provider_rejected", kind)
        emit_webhook_metric("conflict", kind)
        return json_response(
            200,
            {
                "error": {"code": "provider_error", "message": "Provider error"},
                "received": True,
                "processed": False,
            },
        )
    except Exception as e:
        logger.error(f"Unexpected error handling {domain_event.provider_type}: {e}", exc_info=True)
        return error_response(500, "internal_error", "Internal error")

    emit_webhook_metric("processed", kind)
    return json_response(200, {"received": True, "result": result.value})
