"""
Subscription status state machine.

    pending -> incomplete -> active|trialing <-> past_due -> canceled

The provider's status is authoritative: local status mirrors it, except that
canceled is terminal and a post-activation record never moves back to a
pre-activation state (that only happens when deliveries arrive out of order).
Invoice events carry no subscription status of their own, so they drive the
past_due <-> active edges directly.
"""

import logging
from typing import Optional

from billing.models import EventKind

logger = logging.getLogger(__name__)

PENDING = "pending"
INCOMPLETE = "incomplete"
TRIALING = "trialing"
ACTIVE = "active"
PAST_DUE = "past_due"
CANCELED = "canceled"

STATUSES = (PENDING, INCOMPLETE, TRIALING, ACTIVE, PAST_DUE, CANCELED)

PRE_ACTIVATION = frozenset({PENDING, INCOMPLETE})
POST_ACTIVATION = frozenset({TRIALING, ACTIVE, PAST_DUE})

ALLOWED_TRANSITIONS = {
    PENDING: frozenset({INCOMPLETE, TRIALING, ACTIVE, PAST_DUE, CANCELED}),
    INCOMPLETE: frozenset({TRIALING, ACTIVE, PAST_DUE, CANCELED}),
    TRIALING: frozenset({ACTIVE, PAST_DUE, CANCELED}),
    ACTIVE: frozenset({TRIALING, PAST_DUE, CANCELED}),
    PAST_DUE: frozenset({ACTIVE, TRIALING, CANCELED}),
    CANCELED: frozenset(),
}

# Provider statuses without a local equivalent
_PROVIDER_STATUS_MAP = {
    "unpaid": PAST_DUE,
    "incomplete_expired": CANCELED,
    "paused": PAST_DUE,
}


def normalize_provider_status(provider_status: Optional[str]) -> Optional[str]:
    """Map a provider status onto a local status, or None when unknown."""
    if not provider_status:
        return None
    status = _PROVIDER_STATUS_MAP.get(provider_status, provider_status)
    if status not in STATUSES:
        logger.warning(f"Unknown provider status: {provider_status}")
        return None
    return status


def is_terminal(status: str) -> bool:
    return status == CANCELED


def can_transition(current: str, target: str) -> bool:
    """True if `current -> target` is allowed (staying put is always allowed)."""
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _mirror(current: str, target: str) -> str:
    if can_transition(current, target):
        return target
    logger.info(f"Ignoring stale provider status {target} for subscription in {current}")
    return current


def next_status(current: Optional[str], kind: EventKind, provider_status: Optional[str] = None) -> str:
    """Compute the status after applying an event.

    Args:
        current: Stored status, or None when the record does not exist yet
            (treated as pending).
        kind: Classified event kind.
        provider_status: Status from the provider snapshot carried by (or
            fetched for) the event, if any.

    Returns:
        The new local status. Never raises; disallowed moves keep `current`.
    """
    status = current or PENDING

    if is_terminal(status):
        return CANCELED

    if kind is EventKind.SUBSCRIPTION_DELETED:
        return CANCELED

    target = normalize_provider_status(provider_status)
    if target:
        status = _mirror(status, target)

    if kind is EventKind.INVOICE_PAYMENT_FAILED:
        # The first invoice failing leaves a new subscription incomplete
        if status in PRE_ACTIVATION:
            return _mirror(status, INCOMPLETE)
        if status in POST_ACTIVATION:
            return PAST_DUE
        return status

    if kind is EventKind.INVOICE_PAID and status in (PENDING, INCOMPLETE, PAST_DUE):
        return ACTIVE

    return status
