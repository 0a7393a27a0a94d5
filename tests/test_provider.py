"""
Tests for the Stripe adapter's error translation and request shapes.

The SDK is patched at the class-method level; nothing reaches the network.
"""

from unittest.mock import patch

import pytest
import stripe

from billing.errors import ProviderNotConfigured, ProviderNotFound, ProviderRejected, TransientProviderError
from billing.provider import StripeProvider
from conftest import invoice_object, subscription_object


@pytest.fixture
def provider():
    return StripeProvider(api_key_loader=lambda: "sk_test_123")


class TestConfiguration:
    def test_missing_api_key(self):
        """Should raise ProviderNotConfigured without an API key."""
        with pytest.raises(ProviderNotConfigured):
            StripeProvider(api_key_loader=lambda: None).retrieve_subscription("sub_123")

    def test_disables_sdk_retries(self, provider):
        """Should turn off the SDK's own network retries."""
        with patch.object(stripe.Subscription, "retrieve", return_value=subscription_object()):
            provider.retrieve_subscription("sub_123")

        assert stripe.api_key == "sk_test_123"
        assert stripe.max_network_retries == 0


class TestErrorTranslation:
    @pytest.mark.parametrize(
        "error",
        [
            stripe.APIConnectionError("connection reset"),
            stripe.RateLimitError("slow down"),
            stripe.APIError("internal error"),
        ],
    )
    def test_transient_errors(self, provider, error):
        """Connection, rate limit and server errors should map to transient."""
        with patch.object(stripe.Subscription, "retrieve", side_effect=error):
            with pytest.raises(TransientProviderError) as exc_info:
                provider.retrieve_subscription("sub_123")

        assert exc_info.value.retryable is True

    def test_card_error_is_payment_failure(self, provider):
        """Card errors should be rejections flagged as payment failures."""
        error = stripe.CardError("Your card was declined.", None, "card_declined")
        with patch.object(stripe.Subscription, "create", side_effect=error):
            with pytest.raises(ProviderRejected) as exc_info:
                provider.create_subscription("cus_1", "price_basic", "user_1", "basic")

        assert exc_info.value.payment_failed is True
        assert exc_info.value.code == "card_declined"
        assert exc_info.value.user_message == "Your card was declined."

    def test_resource_missing_is_not_found(self, provider):
        """A missing resource should map to ProviderNotFound."""
        error = stripe.InvalidRequestError("No such subscription: 'sub_x'", "id", code="resource_missing")
        with patch.object(stripe.Subscription, "retrieve", side_effect=error):
            with pytest.raises(ProviderNotFound):
                provider.retrieve_subscription("sub_x")

    def test_other_invalid_request_is_rejected(self, provider):
        """Other invalid requests should map to ProviderRejected."""
        error = stripe.InvalidRequestError("Invalid price", "price", code="parameter_invalid")
        with patch.object(stripe.Subscription, "modify", side_effect=error):
            with pytest.raises(ProviderRejected) as exc_info:
                provider.reactivate_subscription("sub_123")

        assert exc_info.value.payment_failed is False
        assert exc_info.value.retryable is False

    def test_authentication_error_is_rejected(self, provider):
        """Authentication errors should not be retried."""
        with patch.object(stripe.Invoice, "retrieve", side_effect=stripe.AuthenticationError("bad key")):
            with pytest.raises(ProviderRejected):
                provider.retrieve_invoice("in_123")


class TestReads:
    def test_retrieve_subscription_parses_snapshot(self, provider):
        """Should parse the retrieved subscription into a snapshot."""
        with patch.object(stripe.Subscription, "retrieve", return_value=subscription_object()) as retrieve:
            snapshot = provider.retrieve_subscription("sub_123")

        retrieve.assert_called_once_with("sub_123", expand=["latest_invoice"])
        assert snapshot.id == "sub_123"
        assert snapshot.price_id == "price_basic"
        assert snapshot.item_id == "si_sub_123"

    def test_list_for_customer(self, provider):
        """Should list every subscription for a customer."""
        listing = {"data": [subscription_object("sub_a"), subscription_object("sub_b")]}
        with patch.object(stripe.Subscription, "list", return_value=listing) as list_call:
            snapshots = provider.list_subscriptions_for_customer("cus_123")

        assert [s.id for s in snapshots] == ["sub_a", "sub_b"]
        assert list_call.call_args.kwargs["status"] == "all"

    def test_retrieve_invoice(self, provider):
        """Should parse a retrieved invoice."""
        with patch.object(stripe.Invoice, "retrieve", return_value=invoice_object()):
            invoice = provider.retrieve_invoice("in_123")

        assert invoice.subscription_id == "sub_123"
        assert invoice.amount == 9900


class TestMutations:
    def test_existing_customer_reused(self, provider):
        """Should reuse an existing customer instead of creating one."""
        with patch.object(stripe.Customer, "list", return_value={"data": [{"id": "cus_existing"}]}):
            with patch.object(stripe.Customer, "create") as create:
                assert provider.get_or_create_customer("a@example.com", "user_1") == "cus_existing"

        create.assert_not_called()

    def test_customer_created_idempotently(self, provider):
        """Should create a missing customer with an idempotency key."""
        with patch.object(stripe.Customer, "list", return_value={"data": []}):
            with patch.object(stripe.Customer, "create", return_value={"id": "cus_new"}) as create:
                assert provider.get_or_create_customer("a@example.com", "user_1") == "cus_new"

        assert create.call_args.kwargs["idempotency_key"] == "customer-user_1"
        assert create.call_args.kwargs["metadata"] == {"user_id": "user_1"}

    def test_create_subscription_params(self, provider):
        """Should pass price, metadata and idempotency key when creating."""
        with patch.object(stripe.Subscription, "create", return_value=subscription_object(status="trialing")) as create:
            provider.create_subscription(
                "cus_1", "price_basic", "user_1", "basic", trial_days=7, idempotency_key="idem-1"
            )

        kwargs = create.call_args.kwargs
        assert kwargs["metadata"] == {"user_id": "user_1", "plan_id": "basic"}
        assert kwargs["trial_period_days"] == 7
        assert kwargs["idempotency_key"] == "idem-1"
        assert kwargs["payment_behavior"] == "default_incomplete"

    def test_cancel_immediately_vs_at_period_end(self, provider):
        """Immediate cancellation should cancel, otherwise flag period end."""
        with patch.object(stripe.Subscription, "cancel", return_value=subscription_object(status="canceled")) as cancel:
            provider.cancel_subscription("sub_123", immediate=True)
        with patch.object(stripe.Subscription, "modify", return_value=subscription_object()) as modify:
            provider.cancel_subscription("sub_123", reason="Too expensive")

        cancel.assert_called_once_with("sub_123")
        assert modify.call_args.kwargs["cancel_at_period_end"] is True
        assert modify.call_args.kwargs["cancellation_details"] == {"comment": "Too expensive"}

    def test_change_price_swaps_item(self, provider):
        """A price change should replace the existing subscription item."""
        with patch.object(stripe.Subscription, "retrieve", return_value=subscription_object()):
            with patch.object(
                stripe.Subscription, "modify", return_value=subscription_object(price_id="price_growth")
            ) as modify:
                snapshot = provider.change_price("sub_123", "price_growth", proration_behavior="none")

        kwargs = modify.call_args.kwargs
        assert kwargs["items"] == [{"id": "si_sub_123", "price": "price_growth"}]
        assert kwargs["proration_behavior"] == "none"
        assert snapshot.price_id == "price_growth"

    def test_change_price_without_items(self, provider):
        """A subscription without items should be rejected."""
        bare = subscription_object()
        bare["items"] = {"data": []}
        with patch.object(stripe.Subscription, "retrieve", return_value=bare):
            with pytest.raises(ProviderRejected) as exc_info:
                provider.change_price("sub_123", "price_growth")

        assert exc_info.value.code == "no_items"
