"""
Stripe adapter.

Thin wrapper over the stripe SDK that returns ProviderSubscription /
ProviderInvoice snapshots and translates SDK errors into the reconciliation
taxonomy:

- connection, rate limit and 5xx errors -> TransientProviderError
- resource_missing -> ProviderNotFound
- anything else the SDK raises -> ProviderRejected

Network retries are disabled; a failed webhook attempt is retried by the
provider's own redelivery.
"""

import logging
import time
from typing import Callable, Optional

import stripe

from billing.errors import ProviderNotConfigured, ProviderNotFound, ProviderRejected, TransientProviderError
from billing.models import ProviderInvoice, ProviderSubscription
from shared.billing_utils import get_stripe_api_key
from shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)

CUSTOMER_SUBSCRIPTION_LIST_LIMIT = 10


def _as_dict(stripe_object) -> dict:
    # StripeObject -> plain nested dicts, so snapshot parsing sees one shape
    to_dict = getattr(stripe_object, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(stripe_object)


class StripeProvider:
    def __init__(self, api_key_loader: Callable[[], Optional[str]] = get_stripe_api_key):
        self._api_key_loader = api_key_loader

    def _configure(self) -> None:
        api_key = self._api_key_loader()
        if not api_key:
            raise ProviderNotConfigured("Stripe API key not configured")
        stripe.api_key = api_key
        stripe.max_network_retries = 0

    def _call(self, operation: str, fn: Callable, *args, **kwargs):
        self._configure()
        start = time.time()
        try:
            result = fn(*args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            log_external_call(logger, "stripe", operation, False, (time.time() - start) * 1000, error=str(e))
            raise TransientProviderError(f"Stripe {operation} failed: {e}") from e
        except stripe.CardError as e:
            log_external_call(logger, "stripe", operation, False, (time.time() - start) * 1000, error=str(e))
            raise ProviderRejected(str(e), user_message=e.user_message, code=e.code, payment_failed=True) from e
        except stripe.InvalidRequestError as e:
            log_external_call(logger, "stripe", operation, False, (time.time() - start) * 1000, error=str(e))
            if e.code == "resource_missing":
                raise ProviderNotFound(f"Stripe {operation}: {e.user_message or e}") from e
            raise ProviderRejected(str(e), user_message=e.user_message, code=e.code) from e
        except stripe.StripeError as e:
            log_external_call(logger, "stripe", operation, False, (time.time() - start) * 1000, error=str(e))
            raise ProviderRejected(str(e), user_message=e.user_message, code=e.code) from e

        log_external_call(logger, "stripe", operation, True, (time.time() - start) * 1000)
        return result

    # Reads used by reconciliation

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = self._call(
            "Subscription.retrieve",
            stripe.Subscription.retrieve,
            subscription_id,
            expand=["latest_invoice"],
        )
        return ProviderSubscription.from_payload(_as_dict(subscription))

    def list_subscriptions_for_customer(self, customer_id: str) -> list[ProviderSubscription]:
        result = self._call(
            "Subscription.list",
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=CUSTOMER_SUBSCRIPTION_LIST_LIMIT,
            expand=["data.latest_invoice"],
        )
        data = _as_dict(result).get("data") or []
        return [ProviderSubscription.from_payload(_as_dict(item)) for item in data]

    def retrieve_invoice(self, invoice_id: str) -> ProviderInvoice:
        invoice = self._call("Invoice.retrieve", stripe.Invoice.retrieve, invoice_id)
        return ProviderInvoice.from_payload(_as_dict(invoice))

    # Mutations used by the REST surface

    def get_or_create_customer(self, email: str, owner_id: str) -> str:
        """Return the Stripe customer id for an owner, creating the customer if needed."""
        existing = self._call("Customer.list", stripe.Customer.list, email=email, limit=1)
        customers = _as_dict(existing).get("data") or []
        if customers:
            return customers[0]["id"]

        customer = self._call(
            "Customer.create",
            stripe.Customer.create,
            email=email,
            metadata={"user_id": owner_id},
            idempotency_key=f"customer-{owner_id}",
        )
        logger.info(f"Created Stripe customer {customer['id']} for user {owner_id}")
        return customer["id"]

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        owner_id: str,
        plan_id: str,
        trial_days: int = 0,
        payment_method_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ProviderSubscription:
        if payment_method_id:
            self._call("PaymentMethod.attach", stripe.PaymentMethod.attach, payment_method_id, customer=customer_id)
            self._call(
                "Customer.modify",
                stripe.Customer.modify,
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )

        params = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": {"user_id": owner_id, "plan_id": plan_id},
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.confirmation_secret"],
        }
        if trial_days > 0:
            params["trial_period_days"] = trial_days
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        subscription = self._call("Subscription.create", stripe.Subscription.create, **params)
        return ProviderSubscription.from_payload(_as_dict(subscription))

    def cancel_subscription(
        self, subscription_id: str, immediate: bool = False, reason: Optional[str] = None
    ) -> ProviderSubscription:
        details = {"comment": reason} if reason else None
        if immediate:
            kwargs = {"cancellation_details": details} if details else {}
            subscription = self._call("Subscription.cancel", stripe.Subscription.cancel, subscription_id, **kwargs)
        else:
            kwargs = {"cancel_at_period_end": True}
            if details:
                kwargs["cancellation_details"] = details
            subscription = self._call("Subscription.modify", stripe.Subscription.modify, subscription_id, **kwargs)
        return ProviderSubscription.from_payload(_as_dict(subscription))

    def reactivate_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = self._call(
            "Subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )
        return ProviderSubscription.from_payload(_as_dict(subscription))

    def change_price(
        self,
        subscription_id: str,
        price_id: str,
        proration_behavior: str = "create_prorations",
        idempotency_key: Optional[str] = None,
    ) -> ProviderSubscription:
        """Swap the subscription's single item to a new price.

        The item id is not stored locally, so the subscription is fetched first.
        """
        current = self.retrieve_subscription(subscription_id)
        if not current.item_id:
            raise ProviderRejected(f"Subscription {subscription_id} has no items", code="no_items")

        params = {
            "items": [{"id": current.item_id, "price": price_id}],
            "proration_behavior": proration_behavior,
            "cancel_at_period_end": False,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        subscription = self._call("Subscription.modify", stripe.Subscription.modify, subscription_id, **params)
        return ProviderSubscription.from_payload(_as_dict(subscription))
