"""
Current Subscription Endpoint - GET /subscriptions/current

Returns the caller's current subscription (live, or the most recent canceled
one) with its video quota. Requires session authentication.
"""

import logging

from botocore.exceptions import ClientError

from billing.views import subscription_view
from billing.wiring import get_engine
from shared.errors import APIError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.request_utils import get_origin
from shared.response_utils import api_error_response, error_response, success_response
from shared.session import require_session

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """
    Lambda handler for GET /subscriptions/current.

    Returns:
    {
        "subscription": {...} | null
    }
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        session = require_session(event)
        subscription = get_engine().store.get_current_for_owner(session["user_id"])
    except APIError as e:
        return api_error_response(e, origin)
    except ClientError as e:
        logger.error(f"DynamoDB error reading subscription: {e}")
        return error_response(500, "internal_error", "Failed to load subscription", origin=origin)

    return success_response(
        {"subscription": subscription_view(subscription) if subscription else None},
        headers={"Cache-Control": "no-store"},
        origin=origin,
    )
