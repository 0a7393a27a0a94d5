"""
Reactivate Subscription Endpoint - POST /subscriptions/reactivate

Undoes a pending cancel-at-period-end. Subscriptions that are already
canceled cannot be reactivated; the user creates a new one instead.
Requires session authentication.
"""

import logging
import time

from botocore.exceptions import ClientError

from billing.errors import ReconciliationError
from billing.events import local_event
from billing.models import EventKind
from billing.views import reload_live_subscription, require_live_subscription, subscription_view, to_api_error
from billing.wiring import get_engine, get_provider
from shared.errors import APIError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
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
        key = require_live_subscription(engine.store, user_id).provider_subscription_id
        with engine.lock.hold(key):
            if not reload_live_subscription(engine.store, key).cancel_at_period_end:
                raise APIError("not_scheduled_for_cancellation", "Subscription is not scheduled for cancellation")
            snapshot = get_provider().reactivate_subscription(key)
            engine.apply(local_event(EventKind.SUBSCRIPTION_UPDATED, snapshot, user_id))
            subscription = engine.store.get(key)

        logger.info(f"Reactivated subscription {key} for user {user_id}")
        response = success_response({"subscription": subscription_view(subscription)}, origin=origin)
    except APIError as e:
        response = api_error_response(e, origin)
    except ReconciliationError as e:
        logger.error(f"Reactivation failed for user {user_id}: {type(e).__name__}: {e}")
        response = api_error_response(to_api_error(e), origin)
    except ClientError as e:
        logger.error(f"DynamoDB error reactivating subscription: {e}")
        response = error_response(503, "temporary_error", "Temporary error, please retry", retry_after=5, origin=origin)

    log_api_request(
        logger, "POST", "/subscriptions/reactivate", response["statusCode"], (time.time() - start) * 1000, user_id
    )
    return response
