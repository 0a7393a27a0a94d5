"""
Shared constants for the subscription service.
"""

import os

# Plan catalog (static configuration). Prices are in cents.
# Use `or` to handle empty string env vars (deploy tooling sets "" when not configured)
PLANS = {
    "basic": {
        "name": "Basic Plan",
        "price": 9900,
        "currency": "usd",
        "video_limit": 1,
        "price_id": os.environ.get("STRIPE_PRICE_BASIC") or "price_basic",
        "features": ["1 video per month", "Basic support", "Standard processing"],
    },
    "growth": {
        "name": "Growth Plan",
        "price": 19900,
        "currency": "usd",
        "video_limit": 4,
        "price_id": os.environ.get("STRIPE_PRICE_GROWTH") or "price_growth",
        "features": ["4 videos per month", "Priority support", "Faster processing"],
    },
    "professional": {
        "name": "Professional Plan",
        "price": 39900,
        "currency": "usd",
        "video_limit": 12,
        "price_id": os.environ.get("STRIPE_PRICE_PROFESSIONAL") or "price_professional",
        "features": [
            "12 videos per month",
            "Premium support",
            "Fastest processing",
            "Priority queue",
        ],
    },
}

PLAN_IDS = list(PLANS.keys())

# Plan ordering for upgrade/downgrade logging
PLAN_ORDER = {"basic": 0, "growth": 1, "professional": 2}

PRICE_TO_PLAN = {plan["price_id"]: plan_id for plan_id, plan in PLANS.items()}

DEFAULT_PLAN_ID = "basic"

# Subscription statuses that count as "live" for an owner
LIVE_STATUSES = ("pending", "incomplete", "trialing", "active", "past_due")

# Statuses that allow video creation
USABLE_STATUSES = ("active", "trialing")

# Billing history paging
DEFAULT_BILLING_HISTORY_LIMIT = 20
MAX_BILLING_HISTORY_LIMIT = 100

# Placeholder period length for a subscription the provider has not billed yet
PROVISIONAL_PERIOD_DAYS = 30

# Processed event markers expire after 90 days (provider stops redelivering after 3)
PROCESSED_EVENT_TTL_DAYS = 90

# DynamoDB throttling error codes that should be treated as transient
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)


def plan_for_price(price_id: str | None) -> str | None:
    """Map a provider price id to a plan id, or None when unknown."""
    if not price_id:
        return None
    return PRICE_TO_PLAN.get(price_id)


def video_limit_for_plan(plan_id: str | None) -> int:
    """Video limit for a plan, falling back to the default plan."""
    plan = PLANS.get(plan_id) or PLANS[DEFAULT_PLAN_ID]
    return plan["video_limit"]
