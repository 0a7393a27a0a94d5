"""
Billing History Endpoint - GET /subscriptions/billing-history?limit=N

Returns ledger records for the caller's current subscription, newest first,
plus totals. Requires session authentication.
"""

import logging

from botocore.exceptions import ClientError

from billing.views import parse_limit
from billing.wiring import get_engine
from shared.constants import DEFAULT_BILLING_HISTORY_LIMIT, MAX_BILLING_HISTORY_LIMIT
from shared.errors import APIError, SubscriptionNotFoundError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_origin
from shared.response_utils import api_error_response, error_response, success_response
from shared.session import require_session

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    limit = parse_limit(
        event.get("queryStringParameters"), DEFAULT_BILLING_HISTORY_LIMIT, MAX_BILLING_HISTORY_LIMIT
    )

    try:
        session = require_session(event)
        engine = get_engine()
        subscription = engine.store.get_current_for_owner(session["user_id"])
        if subscription is None:
            raise SubscriptionNotFoundError()

        records = engine.ledger.history(subscription.id, limit)
        summary = engine.ledger.summary(subscription.id)
    except APIError as e:
        return api_error_response(e, origin)
    except ClientError as e:
        logger.error(f"DynamoDB error reading billing history: {e}")
        return error_response(500, "internal_error", "Failed to load billing history", origin=origin)

    return success_response(
        {
            "subscription_id": subscription.id,
            "records": [record.to_dict() for record in records],
            "summary": summary,
        },
        origin=origin,
    )
