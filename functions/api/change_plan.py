"""
Change Plan Endpoint - POST /subscriptions/change-plan

Swaps the subscription to another plan's price with the requested proration
policy, then reconciles the provider result through the engine.
Requires session authentication (logged-in user with a usable subscription).
"""

import logging
import time

from botocore.exceptions import ClientError

from billing.errors import ReconciliationError
from billing.events import local_event
from billing.models import EventKind, Subscription
from billing.state_machine import PAST_DUE
from billing.views import reload_live_subscription, require_live_subscription, subscription_view, to_api_error
from billing.wiring import get_engine, get_provider
from shared.constants import PLAN_IDS, PLAN_ORDER, PLANS, USABLE_STATUSES
from shared.errors import APIError, InvalidPlanError, InvalidRequestError, PaymentRequiredError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.request_utils import get_origin, parse_json_body
from shared.response_utils import api_error_response, error_response, success_response
from shared.session import require_session

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

PRORATION_BEHAVIORS = ("create_prorations", "always_invoice", "none")


def handler(event, context):
    """
    Lambda handler for POST /subscriptions/change-plan.

    Request body:
    {
        "plan_id": "growth",
        "proration_behavior": "create_prorations"   (optional)
    }

    Returns:
    {
        "subscription": {...},
        "previous_plan_id": "basic"
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

        plan_id = body.get("plan_id")
        if plan_id not in PLANS:
            raise InvalidPlanError(str(plan_id), PLAN_IDS)
        proration_behavior = body.get("proration_behavior", "create_prorations")
        if proration_behavior not in PRORATION_BEHAVIORS:
            raise InvalidRequestError(f"proration_behavior must be one of: {', '.join(PRORATION_BEHAVIORS)}")

        engine = get_engine()
        key = require_live_subscription(engine.store, user_id).provider_subscription_id
        with engine.lock.hold(key):
            subscription = reload_live_subscription(engine.store, key)
            previous_plan_id = subscription.plan_id
            _check_can_change(subscription, plan_id)
            snapshot = get_provider().change_price(
                key,
                PLANS[plan_id]["price_id"],
                proration_behavior=proration_behavior,
                idempotency_key=f"change-plan-{subscription.id}-{plan_id}-{subscription.version}",
            )
            engine.apply(local_event(EventKind.SUBSCRIPTION_UPDATED, snapshot, user_id, plan_id))
            subscription = engine.store.get(key)

        direction = "upgrade" if PLAN_ORDER[plan_id] > PLAN_ORDER.get(previous_plan_id, -1) else "downgrade"
        logger.info(f"Plan {direction} for user {user_id}: {previous_plan_id} -> {plan_id}")
        response = success_response(
            {"subscription": subscription_view(subscription), "previous_plan_id": previous_plan_id},
            origin=origin,
        )
    except APIError as e:
        response = api_error_response(e, origin)
    except ReconciliationError as e:
        logger.error(f"Plan change failed for user {user_id}: {type(e).__name__}: {e}")
        response = api_error_response(to_api_error(e), origin)
    except ClientError as e:
        logger.error(f"DynamoDB error changing plan: {e}")
        response = error_response(503, "temporary_error", "Temporary error, please retry", retry_after=5, origin=origin)

    log_api_request(
        logger, "POST", "/subscriptions/change-plan", response["statusCode"], (time.time() - start) * 1000, user_id
    )
    return response


def _check_can_change(subscription: Subscription, plan_id: str) -> None:
    if plan_id == subscription.plan_id:
        raise APIError("same_plan", f"You are already on the {plan_id} plan.")
    if subscription.status == PAST_DUE:
        raise PaymentRequiredError(subscription.status, "Please update your payment method before changing plans.")
    if subscription.status not in USABLE_STATUSES:
        raise APIError(
            "subscription_invalid", f"Cannot change plan for subscription with status: {subscription.status}"
        )
