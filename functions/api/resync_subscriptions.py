"""
Subscription Resync - Scheduled Lambda

Triggered hourly by EventBridge. Re-reads every live subscription from the
payment provider and reconciles it through the engine, which repairs drift
left by webhooks that were never delivered or ended in a conflict.

Pages through the subscriptions table. When the Lambda runs low on time it
re-invokes itself asynchronously with the scan position in `resume_key`.
"""

import json
import logging
import os

from botocore.exceptions import ClientError

from billing.deadline import Deadline
from billing.errors import ReconciliationError
from billing.events import local_event
from billing.models import EventKind, ReconciliationResult
from billing.wiring import get_engine
from shared.aws_clients import get_lambda
from shared.constants import LIVE_STATUSES
from shared.logging_utils import configure_structured_logging
from shared.metrics import emit_metric

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

RESYNC_PAGE_SIZE = int(os.environ.get("RESYNC_PAGE_SIZE", "100"))

# Stop paging below this much remaining time and hand over to a fresh invocation
MIN_REMAINING_MS = 60000


def handler(event, context):
    """Reconcile every live subscription against the provider.

    Args:
        event: EventBridge scheduled event, or a resume event with resume_key
        context: Lambda context with get_remaining_time_in_millis()

    Returns:
        Dict with per-outcome counts and whether the scan completed
    """
    configure_structured_logging()
    engine = get_engine()

    last_key = (event or {}).get("resume_key")
    counts = {"checked": 0, "updated": 0, "unchanged": 0, "missing": 0, "errors": 0}
    pages_processed = 0

    if last_key:
        logger.info(f"Resuming subscription resync from {last_key}")

    while True:
        subscriptions, last_key = engine.store.scan_by_status(
            LIVE_STATUSES, start_key=last_key, page_size=RESYNC_PAGE_SIZE
        )
        for subscription in subscriptions:
            counts["checked"] += 1
            counts[_resync_one(engine, subscription, context)] += 1
        pages_processed += 1

        if not last_key:
            logger.info(
                f"Subscription resync complete: {counts['checked']} checked, {counts['updated']} updated, "
                f"{counts['missing']} missing at provider, {counts['errors']} errors, {pages_processed} pages"
            )
            break

        remaining_time = context.get_remaining_time_in_millis()
        if remaining_time < MIN_REMAINING_MS:
            logger.warning(
                f"Running low on time ({remaining_time}ms remaining) after {counts['checked']} subscriptions "
                f"in {pages_processed} pages - will resume"
            )
            _invoke_self_async(context.function_name, last_key)
            break

    if counts["updated"]:
        emit_metric("ResyncRepairs", value=counts["updated"])
    if counts["errors"]:
        emit_metric("ResyncErrors", value=counts["errors"])

    return {
        "statusCode": 200,
        **counts,
        "pages_processed": pages_processed,
        "completed": last_key is None,
    }


def _resync_one(engine, subscription, context) -> str:
    """Reconcile one record; returns the counter it belongs to."""
    key = subscription.provider_subscription_id
    try:
        # By id only: a customer-level lookup could pick a different subscription
        snapshot = engine.fallback.resolve(subscription_id=key)
        if snapshot is None:
            logger.warning(f"Provider no longer has subscription {key} (owner {subscription.owner_id})")
            return "missing"

        result = engine.apply(
            local_event(EventKind.SUBSCRIPTION_UPDATED, snapshot, subscription.owner_id),
            Deadline.from_context(context),
        )
    except ReconciliationError as e:
        logger.error(f"Resync failed for {key}: {type(e).__name__}: {e}")
        return "errors"
    except ClientError as e:
        logger.error(f"DynamoDB error resyncing {key}: {e}")
        return "errors"

    if result is ReconciliationResult.UPDATED:
        logger.info(f"Resync repaired {key}: now {engine.store.get(key).status}")
        return "updated"
    return "unchanged"


def _invoke_self_async(function_name: str, resume_key: dict):
    """Invoke this Lambda asynchronously to continue the scan.

    Raises on failure so EventBridge retries the original invocation rather
    than leaving the rest of the table unchecked.
    """
    try:
        response = get_lambda().invoke(
            FunctionName=function_name,
            InvocationType="Event",
            Payload=json.dumps({"resume_key": resume_key}),
        )
    except ClientError as e:
        logger.error(f"Failed to invoke self for resume: {e}")
        raise RuntimeError(f"Failed to schedule resync continuation: {e}") from e

    status_code = response.get("StatusCode", 0)
    if status_code not in (200, 202):
        raise RuntimeError(f"Lambda invoke returned status {status_code}")
    logger.info(f"Invoked self ({function_name}) to continue resync")
