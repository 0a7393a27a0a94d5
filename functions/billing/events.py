"""
Event classification.

Turns a verified provider event dict into a DomainEvent exactly once, so the
engine dispatches on EventKind instead of raw type strings.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from billing.errors import MalformedEvent
from billing.models import DomainEvent, EventKind, ProviderInvoice, ProviderSubscription

logger = logging.getLogger(__name__)

EVENT_TYPE_TO_KIND = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "customer.subscription.trial_will_end": EventKind.TRIAL_WILL_END,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
}

SUBSCRIPTION_KINDS = frozenset(
    {
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
        EventKind.TRIAL_WILL_END,
    }
)
INVOICE_KINDS = frozenset({EventKind.INVOICE_PAID, EventKind.INVOICE_PAYMENT_FAILED})

LOCAL_EVENT_PREFIX = "local_"


def _id_of(value) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def classify(payload: dict) -> DomainEvent:
    """Classify a provider event payload.

    Unknown event types classify as EventKind.UNKNOWN rather than failing, so
    new provider event types are acknowledged without a deploy.

    Raises:
        MalformedEvent: a recognised event whose data object cannot be parsed.
    """
    event_id = payload.get("id")
    event_type = payload.get("type", "")
    created = int(payload.get("created") or 0)
    kind = EVENT_TYPE_TO_KIND.get(event_type, EventKind.UNKNOWN)
    data_object = (payload.get("data") or {}).get("object") or {}

    if kind is EventKind.UNKNOWN:
        logger.info(f"Unhandled event type: {event_type}")
        return DomainEvent(event_id=event_id, kind=kind, provider_type=event_type, created=created, raw=payload)

    if not isinstance(data_object, dict) or not data_object.get("id"):
        raise MalformedEvent(f"Event {event_id} ({event_type}) has no data object", event_id=event_id)

    try:
        if kind in SUBSCRIPTION_KINDS:
            subscription = ProviderSubscription.from_payload(data_object)
            return DomainEvent(
                event_id=event_id,
                kind=kind,
                provider_type=event_type,
                created=created,
                subscription_key=subscription.id,
                customer_key=subscription.customer_id,
                subscription=subscription,
                owner_hint=subscription.metadata.get("user_id"),
                plan_hint=subscription.metadata.get("plan_id"),
                raw=payload,
            )

        if kind in INVOICE_KINDS:
            invoice = ProviderInvoice.from_payload(data_object)
            return DomainEvent(
                event_id=event_id,
                kind=kind,
                provider_type=event_type,
                created=created,
                subscription_key=invoice.subscription_id,
                customer_key=invoice.customer_id,
                invoice_key=invoice.id,
                invoice=invoice,
                payment_hint=invoice.payment_intent_id,
                raw=payload,
            )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedEvent(f"Event {event_id} ({event_type}) has an unparseable object: {e}", event_id=event_id) from e

    # Checkout session: subscription may be expanded or just an id
    metadata = data_object.get("metadata") or {}
    return DomainEvent(
        event_id=event_id,
        kind=kind,
        provider_type=event_type,
        created=created,
        subscription_key=_id_of(data_object.get("subscription")),
        customer_key=_id_of(data_object.get("customer")),
        owner_hint=metadata.get("user_id") or data_object.get("client_reference_id"),
        plan_hint=metadata.get("plan_id"),
        payment_hint=_id_of(data_object.get("payment_intent")),
        raw=payload,
    )


def local_event(
    kind: EventKind,
    subscription: ProviderSubscription,
    owner_id: Optional[str] = None,
    plan_id: Optional[str] = None,
) -> DomainEvent:
    """Synthesise an event for a provider object returned by a REST mutation.

    REST handlers reconcile through the same engine entry point as webhooks;
    the `local_` id keeps these apart from provider event ids.
    """
    return DomainEvent(
        event_id=f"{LOCAL_EVENT_PREFIX}{uuid.uuid4().hex}",
        kind=kind,
        provider_type=f"local.{kind.value}",
        created=int(datetime.now(timezone.utc).timestamp()),
        subscription_key=subscription.id,
        customer_key=subscription.customer_id,
        subscription=subscription,
        owner_hint=owner_id or subscription.metadata.get("user_id"),
        plan_hint=plan_id or subscription.metadata.get("plan_id"),
    )
