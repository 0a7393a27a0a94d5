"""
Cancel Subscription Endpoint - POST /subscriptions/cancel

Cancels at period end by default, or immediately when asked. The provider
result is reconciled through the engine under the subscription lock.
Requires session authentication.
"""

import logging
import time

from botocore.exceptions import ClientError

from billing.errors import ReconciliationError
from billing.events import local_event
from billing.models import EventKind
from billing.state_machine import CANCELED, normalize_provider_status
from billing.views import reload_live_subscription, require_live_subscription, subscription_view, to_api_error
from billing.wiring import get_engine, get_provider
from shared.errors import APIError, InvalidRequestError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.request_utils import get_origin, parse_json_body
from shared.response_utils import api_error_response, error_response, success_response
from shared.session import require_session

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

MAX_REASON_LENGTH = 500


def handler(event, context):
    """
    Lambda handler for POST /subscriptions/cancel.

    Request body (all optional):
    {
        "immediate": false,
        "reason": "Too expensive"
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

        immediate = bool(body.get("immediate", False))
        reason = body.get("reason")
        if reason is not None and (not isinstance(reason, str) or len(reason) > MAX_REASON_LENGTH):
            raise InvalidRequestError(f"reason must be a string of at most {MAX_REASON_LENGTH} characters")

        engine = get_engine()
        key = require_live_subscription(engine.store, user_id).provider_subscription_id

        with engine.lock.hold(key):
            reload_live_subscription(engine.store, key)
            snapshot = get_provider().cancel_subscription(key, immediate=immediate, reason=reason)
            kind = (
                EventKind.SUBSCRIPTION_DELETED
                if normalize_provider_status(snapshot.status) == CANCELED
                else EventKind.SUBSCRIPTION_UPDATED
            )
            engine.apply(local_event(kind, snapshot, user_id))
            subscription = engine.store.get(key)

        logger.info(f"Canceled subscription {key} for user {user_id} (immediate={immediate})")
        response = success_response({"subscription": subscription_view(subscription)}, origin=origin)
    except APIError as e:
        response = api_error_response(e, origin)
    except ReconciliationError as e:
        logger.error(f"Cancellation failed for user {user_id}: {type(e).__name__}: {e}")
        response = api_error_response(to_api_error(e), origin)
    except ClientError as e:
        logger.error(f"DynamoDB error canceling subscription: {e}")
        response = error_response(503, "temporary_error", "Temporary error, please retry", retry_after=5, origin=origin)

    log_api_request(
        logger, "POST", "/subscriptions/cancel", response["statusCode"], (time.time() - start) * 1000, user_id
    )
    return response
