"""
Sync Subscription Endpoint - POST /subscriptions/sync

Manual fallback sync: re-reads the caller's subscription from the provider
and reconciles it. Used by the dashboard after checkout when the webhook has
not landed yet, and by support to repair drift.
Requires session authentication.
"""

import logging
import time

from botocore.exceptions import ClientError

from billing.errors import ReconciliationError
from billing.views import subscription_view, to_api_error
from billing.wiring import get_engine
from shared.errors import APIError, InvalidRequestError, SubscriptionNotFoundError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.request_utils import get_origin, parse_json_body
from shared.response_utils import api_error_response, error_response, success_response
from shared.session import require_session

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """
    Lambda handler for POST /subscriptions/sync.

    Request body (optional):
    {
        "payment_intent_id": "pi_xxx"   hint for picking among several subscriptions
    }
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)
    start = time.time()
    user_id = None

    try:
        session = require_session(event)
        user_id = session["user_id"]
        try:
            body = parse_json_body(event)
        except ValueError as e:
            raise InvalidRequestError(str(e))

        engine = get_engine()
        # Customer id comes from our own record, never from the request body
        current = engine.store.get_current_for_owner(user_id)
        if current is None or not current.provider_customer_id:
            raise SubscriptionNotFoundError("No billing account found for this user")

        subscription = engine.fallback.sync_by_customer(
            current.provider_customer_id, hint_id=body.get("payment_intent_id"), owner_id=user_id
        )
        if subscription is None or subscription.owner_id != user_id:
            raise SubscriptionNotFoundError()

        response = success_response({"subscription": subscription_view(subscription)}, origin=origin)
    except APIError as e:
        response = api_error_response(e, origin)
    except ReconciliationError as e:
        logger.error(f"Sync failed for user {user_id}: {type(e).__name__}: {e}")
        response = api_error_response(to_api_error(e), origin)
    except ClientError as e:
        logger.error(f"DynamoDB error syncing subscription: {e}")
        response = error_response(503, "temporary_error", "Temporary error, please retry", retry_after=5, origin=origin)

    log_api_request(
        logger, "POST", "/subscriptions/sync", response["statusCode"], (time.time() - start) * 1000, user_id
    )
    return response
