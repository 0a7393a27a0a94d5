"""
Video Limit Endpoint - GET /subscriptions/video-limit

Returns the caller's video quota for the current billing period.
Requires session authentication.
"""

import logging
from datetime import datetime, timezone

from botocore.exceptions import ClientError

from billing.quota import UsageQuotaTracker
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
    Lambda handler for GET /subscriptions/video-limit.

    Users without a subscription get a zero quota rather than a 404 so the
    dashboard can render an upsell.
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
        logger.error(f"DynamoDB error reading usage: {e}")
        return error_response(500, "internal_error", "An error occurred processing your request", origin=origin)

    if subscription is None:
        return success_response(
            {
                "plan_id": None,
                "status": None,
                "usage": {
                    "video_count": 0,
                    "video_limit": 0,
                    "remaining": 0,
                    "usage_percentage": 0.0,
                    "can_create_video": False,
                },
                "reset": None,
            },
            origin=origin,
        )

    usage = UsageQuotaTracker.usage(subscription)
    reset_date = datetime.fromtimestamp(subscription.current_period_end, tz=timezone.utc)
    seconds_until_reset = (reset_date - datetime.now(timezone.utc)).total_seconds()

    response_headers = {
        "Cache-Control": "no-store, no-cache, must-revalidate",
        "X-RateLimit-Limit": str(usage["video_limit"]),
        "X-RateLimit-Remaining": str(usage["remaining"]),
    }

    return success_response(
        {
            "plan_id": subscription.plan_id,
            "status": subscription.status,
            "usage": usage,
            "reset": {
                "date": reset_date.isoformat(),
                "seconds_until_reset": max(0, int(seconds_until_reset)),
            },
        },
        headers=response_headers,
        origin=origin,
    )
