"""
Fallback sync against the provider.

Webhooks can reference a subscription we have not stored yet (the creation
event is still in flight, or the synchronous creation path has not
committed). In that case the subscription is fetched from the provider and
materialised through the engine's normal apply path, so there is exactly one
code path that creates local records.
"""

import logging
from typing import Optional

from billing.errors import ProviderNotFound
from billing.events import local_event
from billing.models import EventKind, ProviderSubscription, Subscription
from billing.state_machine import CANCELED, normalize_provider_status

logger = logging.getLogger(__name__)


def pick_subscription(
    candidates: list[ProviderSubscription], hint_id: Optional[str] = None
) -> Optional[ProviderSubscription]:
    """Choose the subscription a customer-level event refers to.

    A candidate whose id, latest invoice or latest payment intent matches the
    hint wins outright; otherwise the most recently created non-canceled one.
    """
    if hint_id:
        for candidate in candidates:
            if hint_id in (candidate.id, candidate.latest_invoice_id, candidate.latest_payment_intent_id):
                return candidate

    live = [c for c in candidates if normalize_provider_status(c.status) != CANCELED]
    if not live:
        return None
    return max(live, key=lambda c: c.created)


class ReconciliationFallback:
    def __init__(self, provider, store):
        self.provider = provider
        self.store = store
        self._engine = None

    def attach(self, engine) -> None:
        """Bind the engine used to materialise records (done by the engine itself)."""
        self._engine = engine

    def resolve(
        self,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        hint_id: Optional[str] = None,
    ) -> Optional[ProviderSubscription]:
        """Fetch the provider snapshot for an event without writing anything.

        Tries the subscription id first; with only a customer id (or when the
        id is unknown to the provider) lists the customer's subscriptions.

        Raises:
            TransientProviderError: provider unavailable; the caller retries.
        """
        if subscription_id:
            try:
                return self.provider.retrieve_subscription(subscription_id)
            except ProviderNotFound:
                logger.warning(f"Provider has no subscription {subscription_id}")
                if not customer_id:
                    return None

        if not customer_id:
            return None

        candidates = self.provider.list_subscriptions_for_customer(customer_id)
        chosen = pick_subscription(candidates, hint_id or subscription_id)
        if chosen:
            logger.info(f"Resolved customer {customer_id} to subscription {chosen.id} ({len(candidates)} candidates)")
        else:
            logger.warning(f"No usable subscription for customer {customer_id} ({len(candidates)} candidates)")
        return chosen

    def sync_by_customer(
        self,
        customer_id: str,
        hint_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> Subscription:
        """Bring the local record for a customer in line with the provider.

        Raises:
            ProviderNotFound: the customer has no matching subscription.
            PermanentConflict: the subscription cannot be attributed to an owner.
        """
        snapshot = self.resolve(customer_id=customer_id, hint_id=hint_id)
        if snapshot is None:
            raise ProviderNotFound(f"No subscription found for customer {customer_id}")

        self._engine.apply(local_event(EventKind.SUBSCRIPTION_UPDATED, snapshot, owner_id=owner_id))
        return self.store.get(snapshot.id)
