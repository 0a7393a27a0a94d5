"""
Shared pytest fixtures for subscription billing tests.
"""

import dataclasses
import hashlib
import hmac
import json
import os
import sys
import time

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
SESSION_SECRET = "session-test-secret"
STRIPE_API_KEY = "sk_test_123"

# Period fixtures (Unix seconds): January and February 2026
PERIOD_1_START = 1767225600
PERIOD_1_END = 1769904000
PERIOD_2_START = 1769904000
PERIOD_2_END = 1772323200


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")

    # Keep lock waits short so timeout tests stay fast
    os.environ.setdefault("LOCK_WAIT_SECONDS", "2")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Reset AWS clients, cached secrets and the cached engine between tests."""
    _reset()
    yield
    _reset()


def _reset():
    from billing.wiring import set_engine
    from shared.aws_clients import reset_clients
    from shared.billing_utils import clear_secret_cache

    reset_clients()
    clear_secret_cache()
    set_engine(None)


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    # Subscriptions (plus OWNER#<id> pointer items)
    dynamodb.create_table(
        TableName="billing-subscriptions",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # provider subscription id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # SUBSCRIPTION | CURRENT
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Processed webhook events (idempotency markers)
    dynamodb.create_table(
        TableName="billing-processed-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # PROCESSED
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Billing ledger, one record per invoice
    dynamodb.create_table(
        TableName="billing-ledger",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # invoice id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # INVOICE
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "subscription_id", "AttributeType": "S"},
            {"AttributeName": "recorded_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "subscription-index",
                "KeySchema": [
                    {"AttributeName": "subscription_id", "KeyType": "HASH"},
                    {"AttributeName": "recorded_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Subscription lock leases
    dynamodb.create_table(
        TableName="billing-locks",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def stripe_secrets(mock_dynamodb, monkeypatch):
    """Stripe and session secrets in mocked Secrets Manager."""
    client = boto3.client("secretsmanager", region_name="us-east-1")
    api_key = client.create_secret(Name="billing/stripe-key", SecretString=json.dumps({"key": STRIPE_API_KEY}))
    webhook = client.create_secret(
        Name="billing/stripe-webhook", SecretString=json.dumps({"secret": WEBHOOK_SECRET})
    )
    session = client.create_secret(Name="billing/session", SecretString=json.dumps({"secret": SESSION_SECRET}))

    monkeypatch.setenv("STRIPE_SECRET_ARN", api_key["ARN"])
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET_ARN", webhook["ARN"])
    monkeypatch.setenv("SESSION_SECRET_ARN", session["ARN"])
    return {"api_key": STRIPE_API_KEY, "webhook_secret": WEBHOOK_SECRET, "session_secret": SESSION_SECRET}


class FakeProvider:
    """In-memory stand-in for StripeProvider.

    Holds ProviderSubscription snapshots keyed by id and records every call.
    """

    def __init__(self):
        self.subscriptions = {}
        self.calls = []
        self._created = 0

    def add(self, snapshot):
        self.subscriptions[snapshot.id] = snapshot
        return snapshot

    def retrieve_subscription(self, subscription_id):
        from billing.errors import ProviderNotFound

        self.calls.append(("retrieve_subscription", subscription_id))
        if subscription_id not in self.subscriptions:
            raise ProviderNotFound(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    def list_subscriptions_for_customer(self, customer_id):
        self.calls.append(("list_subscriptions_for_customer", customer_id))
        return [s for s in self.subscriptions.values() if s.customer_id == customer_id]

    def get_or_create_customer(self, email, owner_id):
        self.calls.append(("get_or_create_customer", email, owner_id))
        return f"cus_{owner_id}"

    def create_subscription(
        self,
        customer_id,
        price_id,
        owner_id,
        plan_id,
        trial_days=0,
        payment_method_id=None,
        idempotency_key=None,
    ):
        self.calls.append(("create_subscription", customer_id, price_id, idempotency_key))
        self._created += 1
        snapshot = make_snapshot(
            f"sub_new{self._created}",
            customer_id=customer_id,
            status="trialing" if trial_days else "incomplete",
            price_id=price_id,
            metadata={"user_id": owner_id, "plan_id": plan_id},
            client_secret="pi_secret_abc",
        )
        return self.add(snapshot)

    def cancel_subscription(self, subscription_id, immediate=False, reason=None):
        self.calls.append(("cancel_subscription", subscription_id, immediate, reason))
        current = self.subscriptions[subscription_id]
        if immediate:
            updated = dataclasses.replace(current, status="canceled", canceled_at=int(time.time()))
        else:
            updated = dataclasses.replace(current, cancel_at_period_end=True)
        return self.add(updated)

    def reactivate_subscription(self, subscription_id):
        self.calls.append(("reactivate_subscription", subscription_id))
        return self.add(dataclasses.replace(self.subscriptions[subscription_id], cancel_at_period_end=False))

    def change_price(self, subscription_id, price_id, proration_behavior="create_prorations", idempotency_key=None):
        self.calls.append(("change_price", subscription_id, price_id, proration_behavior, idempotency_key))
        return self.add(
            dataclasses.replace(self.subscriptions[subscription_id], price_id=price_id, cancel_at_period_end=False)
        )


def make_snapshot(
    subscription_id="sub_123",
    customer_id="cus_123",
    status="active",
    price_id="price_basic",
    period_start=PERIOD_1_START,
    period_end=PERIOD_1_END,
    metadata=None,
    **overrides,
):
    from billing.models import ProviderSubscription

    return ProviderSubscription(
        id=subscription_id,
        customer_id=customer_id,
        status=status,
        price_id=price_id,
        item_id=f"si_{subscription_id}",
        current_period_start=period_start,
        current_period_end=period_end,
        created=overrides.pop("created", period_start),
        metadata={"user_id": "user_1"} if metadata is None else metadata,
        **overrides,
    )


def subscription_object(
    subscription_id="sub_123",
    customer_id="cus_123",
    status="active",
    price_id="price_basic",
    period_start=PERIOD_1_START,
    period_end=PERIOD_1_END,
    metadata=None,
    cancel_at_period_end=False,
    canceled_at=None,
):
    """A provider subscription object as it appears in webhook payloads."""
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "created": period_start,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": canceled_at,
        "metadata": {"user_id": "user_1"} if metadata is None else metadata,
        "items": {
            "data": [
                {
                    "id": f"si_{subscription_id}",
                    "price": {"id": price_id},
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            ]
        },
    }


def invoice_object(
    invoice_id="in_123",
    subscription_id="sub_123",
    customer_id="cus_123",
    amount=9900,
    period_start=PERIOD_1_START,
    period_end=PERIOD_1_END,
    payment_intent="pi_123",
):
    """A provider invoice object as it appears in webhook payloads."""
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer_id,
        "subscription": subscription_id,
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "usd",
        "status": "paid",
        "payment_intent": payment_intent,
        "lines": {
            "data": [
                {
                    "type": "subscription",
                    "period": {"start": period_start, "end": period_end},
                }
            ]
        },
    }


def provider_event(event_id, event_type, data_object, created=None):
    """Wrap a data object in a provider event envelope."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "data": {"object": data_object},
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a `t=...,v1=...` signature header for a raw payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def session_cookie(user_id="user_1", email="user1@example.com", secret=SESSION_SECRET) -> str:
    from shared.session import create_session_token

    token = create_session_token({"user_id": user_id, "email": email, "exp": int(time.time()) + 3600}, secret)
    return f"session={token}"


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def engine(mock_dynamodb, fake_provider):
    """Engine wired to mocked DynamoDB and the fake provider, installed as the cached engine."""
    from billing.locks import SubscriptionLock
    from billing.wiring import build_engine, set_engine

    engine = build_engine(provider=fake_provider, lock=SubscriptionLock(wait_seconds=2))
    set_engine(engine)
    return engine


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "GET",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "requestId": "req-test",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


@pytest.fixture
def authed_event(api_gateway_event, stripe_secrets):
    """API Gateway event carrying a valid session cookie for user_1."""
    api_gateway_event["headers"]["Cookie"] = session_cookie()
    return api_gateway_event
