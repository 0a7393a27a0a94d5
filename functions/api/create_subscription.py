"""
Create Subscription Endpoint - POST /subscriptions

Creates the provider subscription and reconciles it synchronously through
the engine, so the caller sees the local record immediately. The webhook for
the same subscription arrives later and reconciles idempotently.
Requires session authentication.
"""

import logging
import os
import time

from botocore.exceptions import ClientError

from billing.errors import ReconciliationError
from billing.events import local_event
from billing.models import EventKind
from billing.state_machine import CANCELED
from billing.views import subscription_view, to_api_error
from billing.wiring import get_engine, get_provider
from shared.constants import PLAN_IDS, PLANS
from shared.errors import APIError, InvalidPlanError, InvalidRequestError, SubscriptionExistsError
from shared.logging_utils import configure_structured_logging, log_api_request, set_request_id
from shared.request_utils import get_header, get_origin, parse_json_body
from shared.response_utils import api_error_response, error_response, success_response
from shared.session import require_session

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_TRIAL_DAYS = int(os.environ.get("DEFAULT_TRIAL_DAYS", "0"))


def handler(event, context):
    """
    Lambda handler for POST /subscriptions.

    Request body:
    {
        "plan_id": "basic" | "growth" | "professional",
        "payment_method_id": "pm_xxx"   (optional)
    }

    Returns 201:
    {
        "subscription": {...},
        "client_secret": "..." | null
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
        payment_method_id = body.get("payment_method_id")
        email = session.get("email") or body.get("email")
        if not email:
            raise InvalidRequestError("An email address is required to create a subscription")

        engine = get_engine()
        provider = get_provider()

        # Owner-level lock: one creation at a time per user
        with engine.lock.hold(f"owner:{user_id}"):
            existing = engine.store.get_current_for_owner(user_id)
            if existing and existing.status != CANCELED:
                raise SubscriptionExistsError(existing.status)

            customer_id = provider.get_or_create_customer(email, user_id)
            idempotency_key = get_header(event, "idempotency-key") or f"create-{user_id}-{plan_id}-{int(start) // 60}"
            snapshot = provider.create_subscription(
                customer_id,
                PLANS[plan_id]["price_id"],
                user_id,
                plan_id,
                trial_days=DEFAULT_TRIAL_DAYS,
                payment_method_id=payment_method_id,
                idempotency_key=idempotency_key,
            )
            with engine.lock.hold(snapshot.id):
                result = engine.apply(local_event(EventKind.SUBSCRIPTION_CREATED, snapshot, user_id, plan_id))
                subscription = engine.store.get(snapshot.id)

        logger.info(f"Created subscription {snapshot.id} for user {user_id} on {plan_id} ({result.value})")
        response = success_response(
            {
                "subscription": subscription_view(subscription),
                "client_secret": snapshot.client_secret,
            },
            status_code=201,
            origin=origin,
        )
    except APIError as e:
        response = api_error_response(e, origin)
    except ReconciliationError as e:
        logger.error(f"Subscription creation failed for user {user_id}: {type(e).__name__}: {e}")
        response = api_error_response(to_api_error(e), origin)
    except ClientError as e:
        logger.error(f"DynamoDB error creating subscription: {e}")
        response = error_response(503, "temporary_error", "Temporary error, please retry", retry_after=5, origin=origin)

    log_api_request(logger, "POST", "/subscriptions", response["statusCode"], (time.time() - start) * 1000, user_id)
    return response
