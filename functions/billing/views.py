"""
Helpers shared by the REST handlers: public projections of domain objects
and translation of reconciliation errors into API errors.
"""

import logging
from typing import Optional

from billing.errors import (
    PermanentConflict,
    ProviderNotConfigured,
    ProviderNotFound,
    ProviderRejected,
    ReconciliationError,
)
from billing.models import Subscription
from billing.quota import UsageQuotaTracker
from billing.state_machine import CANCELED
from shared.constants import PLANS
from shared.errors import (
    APIError,
    InternalError,
    ServiceUnavailableError,
    SubscriptionNotFoundError,
)
from shared.types import SubscriptionView

logger = logging.getLogger(__name__)


def subscription_view(subscription: Subscription) -> SubscriptionView:
    plan = PLANS.get(subscription.plan_id, {})
    return {
        "id": subscription.id,
        "plan_id": subscription.plan_id,
        "plan_name": plan.get("name", subscription.plan_id),
        "status": subscription.status,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "canceled_at": subscription.canceled_at,
        "usage": UsageQuotaTracker.usage(subscription),
        "updated_at": subscription.updated_at,
    }


def require_live_subscription(store, owner_id: str) -> Subscription:
    """The owner's non-canceled subscription, or SubscriptionNotFoundError."""
    subscription = store.get_current_for_owner(owner_id)
    if subscription is None or subscription.status == CANCELED:
        raise SubscriptionNotFoundError()
    return subscription


def reload_live_subscription(store, provider_subscription_id: str) -> Subscription:
    """Re-read a subscription once its lock is held.

    A webhook may have committed between the first read and the lock, so
    checks that gate a provider call run against this copy.
    """
    subscription = store.get(provider_subscription_id)
    if subscription is None or subscription.status == CANCELED:
        raise SubscriptionNotFoundError()
    return subscription


def to_api_error(error: ReconciliationError) -> APIError:
    """Map a reconciliation failure onto the REST error family."""
    if error.retryable:
        return ServiceUnavailableError()
    if isinstance(error, ProviderRejected):
        if error.payment_failed:
            return APIError(
                code="payment_failed",
                message=error.user_message or "Your card was declined",
                status_code=402,
            )
        return APIError(
            code="provider_rejected",
            message=error.user_message or "The payment provider rejected the request",
            status_code=400,
        )
    if isinstance(error, ProviderNotFound):
        return SubscriptionNotFoundError("Subscription not found at the payment provider")
    if isinstance(error, PermanentConflict):
        return APIError(
            code="subscription_conflict",
            message="Subscription state could not be reconciled. Support has been notified.",
            status_code=409,
            details={"reason": error.reason},
        )
    if isinstance(error, ProviderNotConfigured):
        logger.error(f"Payment provider not configured: {error}")
        return InternalError("Payment system not configured")
    return InternalError()


def parse_limit(query: Optional[dict], default: int, maximum: int) -> int:
    """Parse a `limit` query parameter, clamped to [1, maximum]."""
    raw = (query or {}).get("limit")
    if raw is None:
        return default
    try:
        return max(1, min(int(raw), maximum))
    except (TypeError, ValueError):
        return default
