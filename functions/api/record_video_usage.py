"""
Record Video Usage Endpoint - POST /subscriptions/video-usage

Consumes one video from the caller's quota for the current billing period.
Called by the video pipeline before rendering starts.
Requires session authentication.
"""

import logging
import time

from botocore.exceptions import ClientError

from billing.errors import ReconciliationError
from billing.views import require_live_subscription, to_api_error
from billing.wiring import get_engine
from shared.constants import USABLE_STATUSES
from shared.errors import APIError, PaymentRequiredError, QuotaExceededError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.metrics import emit_metric
from shared.request_utils import get_origin
from shared.response_utils import api_error_response, error_response, success_response
from shared.session import require_session

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    start = time.time()
    user_id = None

    try:
        session = require_session(event)
        user_id = session["user_id"]

        engine = get_engine()
        subscription = require_live_subscription(engine.store, user_id)
        if subscription.status not in USABLE_STATUSES:
            raise PaymentRequiredError(
                subscription.status,
                f"Subscription is {subscription.status}; update your payment method to keep creating videos",
            )
        allowed, remaining = engine.quota.increment(subscription.provider_subscription_id)
        if not allowed:
            emit_metric("QuotaExceeded", dimensions={"Plan": subscription.plan_id})
            raise QuotaExceededError(subscription.video_limit, subscription.current_period_end)

        response = success_response(
            {"allowed": True, "remaining": remaining},
            headers={
                "X-RateLimit-Limit": str(subscription.video_limit),
                "X-RateLimit-Remaining": str(remaining),
            },
            origin=origin,
        )
    except APIError as e:
        response = api_error_response(e, origin)
    except ReconciliationError as e:
        # LockTimeout while another writer holds the subscription
        logger.warning(f"Usage recording deferred for user {user_id}: {type(e).__name__}: {e}")
        response = api_error_response(to_api_error(e), origin)
    except ClientError as e:
        logger.error(f"DynamoDB error recording usage: {e}")
        response = error_response(503, "temporary_error", "Temporary error, please retry", retry_after=5, origin=origin)

    log_api_request(
        logger, "POST", "/subscriptions/video-usage", response["statusCode"], (time.time() - start) * 1000, user_id
    )
    return response
