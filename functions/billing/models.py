"""
Domain types for subscription reconciliation.

Subscription and BillingRecord round-trip to DynamoDB items via
`to_item()` / `from_item()`. ProviderSubscription and ProviderInvoice are
immutable snapshots parsed once from provider payloads (webhook bodies or
API responses), so the engine never touches raw provider dicts.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

SUBSCRIPTION_SK = "SUBSCRIPTION"
INVOICE_SK = "INVOICE"
PROCESSED_SK = "PROCESSED"
OWNER_POINTER_SK = "CURRENT"


def owner_pointer_key(owner_id: str) -> str:
    return f"OWNER#{owner_id}"


def _to_int(value: Any, default: int = 0) -> int:
    # DynamoDB numbers come back as Decimal
    if value is None:
        return default
    return int(value)


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else _to_int(value)


class EventKind(Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    TRIAL_WILL_END = "trial_will_end"
    UNKNOWN = "unknown"


class ReconciliationResult(Enum):
    CREATED = "created"
    UPDATED = "updated"
    NOOP = "noop"


class LedgerOutcome:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"

    ALL = (SUCCEEDED, FAILED, PENDING)


@dataclass(frozen=True)
class ProviderSubscription:
    """Provider-side view of a subscription at one point in time."""

    id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str] = None
    item_id: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    created: int = 0
    trial_end: Optional[int] = None
    latest_invoice_id: Optional[str] = None
    latest_payment_intent_id: Optional[str] = None
    # Secret the client uses to confirm the first payment; only set on create
    client_secret: Optional[str] = field(default=None, compare=False, repr=False)
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict) -> "ProviderSubscription":
        """Parse a provider subscription object.

        Newer API versions carry the billing period on the subscription
        item rather than the subscription, so the first item wins.
        """
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        price = first_item.get("price") or {}

        period_start = first_item.get("current_period_start") or data.get("current_period_start")
        period_end = first_item.get("current_period_end") or data.get("current_period_end")

        latest_invoice = data.get("latest_invoice")
        latest_invoice_id = None
        latest_payment_intent_id = None
        client_secret = None
        if isinstance(latest_invoice, dict):
            latest_invoice_id = latest_invoice.get("id")
            payment_intent = latest_invoice.get("payment_intent")
            if isinstance(payment_intent, dict):
                latest_payment_intent_id = payment_intent.get("id")
                client_secret = payment_intent.get("client_secret")
            else:
                latest_payment_intent_id = payment_intent
            # Newer API versions moved these off the invoice
            if not latest_payment_intent_id:
                payments = (latest_invoice.get("payments") or {}).get("data") or []
                if payments:
                    latest_payment_intent_id = (payments[0].get("payment") or {}).get("payment_intent")
            if not client_secret:
                client_secret = (latest_invoice.get("confirmation_secret") or {}).get("client_secret")
        elif latest_invoice:
            latest_invoice_id = latest_invoice

        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return cls(
            id=data["id"],
            customer_id=customer,
            status=data.get("status") or "incomplete",
            price_id=price.get("id") if isinstance(price, dict) else price,
            item_id=first_item.get("id"),
            current_period_start=_optional_int(period_start),
            current_period_end=_optional_int(period_end),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            canceled_at=_optional_int(data.get("canceled_at")),
            created=_to_int(data.get("created")),
            trial_end=_optional_int(data.get("trial_end")),
            latest_invoice_id=latest_invoice_id,
            latest_payment_intent_id=latest_payment_intent_id,
            client_secret=client_secret,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ProviderInvoice:
    """Provider-side view of an invoice."""

    id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount: int
    currency: str
    status: Optional[str] = None
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    payment_intent_id: Optional[str] = None
    created: int = 0

    @classmethod
    def from_payload(cls, data: dict) -> "ProviderInvoice":
        """Parse a provider invoice object.

        The billed period comes from the subscription line item; the
        invoice-level period_start/period_end describe when the invoice
        was drafted, not which period it pays for.
        """
        period_start = None
        period_end = None
        lines = (data.get("lines") or {}).get("data") or []
        for line in lines:
            line_period = line.get("period") or {}
            is_subscription_line = line.get("type") == "subscription" or (
                (line.get("parent") or {}).get("type") == "subscription_item_details"
            )
            if is_subscription_line and line_period.get("start"):
                period_start = line_period.get("start")
                period_end = line_period.get("end")
                break
        if period_start is None and lines:
            line_period = lines[0].get("period") or {}
            period_start = line_period.get("start")
            period_end = line_period.get("end")

        subscription_id = data.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        if not subscription_id:
            details = (data.get("parent") or {}).get("subscription_details") or {}
            subscription_id = details.get("subscription")

        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        payment_intent = data.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")

        amount = data.get("amount_paid")
        if not amount:
            amount = data.get("amount_due") or data.get("total") or 0

        return cls(
            id=data["id"],
            customer_id=customer,
            subscription_id=subscription_id,
            amount=_to_int(amount),
            currency=(data.get("currency") or "usd").lower(),
            status=data.get("status"),
            period_start=_optional_int(period_start),
            period_end=_optional_int(period_end),
            payment_intent_id=payment_intent,
            created=_to_int(data.get("created")),
        )


@dataclass(frozen=True)
class DomainEvent:
    """A classified provider event (or a locally synthesised one)."""

    event_id: str
    kind: EventKind
    provider_type: str
    created: int
    subscription_key: Optional[str] = None
    customer_key: Optional[str] = None
    invoice_key: Optional[str] = None
    subscription: Optional[ProviderSubscription] = None
    invoice: Optional[ProviderInvoice] = None
    owner_hint: Optional[str] = None
    plan_hint: Optional[str] = None
    payment_hint: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass
class Subscription:
    id: str
    owner_id: str
    plan_id: str
    status: str
    provider_subscription_id: str
    provider_customer_id: Optional[str]
    current_period_start: int
    current_period_end: int
    video_limit: int
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    video_count: int = 0
    created_at: str = ""
    updated_at: str = ""
    usage_reset_period_start: int = 0
    last_event_created: int = 0
    version: int = 0

    def to_item(self) -> dict:
        # Index key attributes cannot be NULL or empty, so unset fields are omitted
        item = {k: v for k, v in asdict(self).items() if v is not None}
        item["pk"] = self.provider_subscription_id
        item["sk"] = SUBSCRIPTION_SK
        return item

    @classmethod
    def from_item(cls, item: dict) -> "Subscription":
        return cls(
            id=item["id"],
            owner_id=item["owner_id"],
            plan_id=item["plan_id"],
            status=item["status"],
            provider_subscription_id=item["provider_subscription_id"],
            provider_customer_id=item.get("provider_customer_id"),
            current_period_start=_to_int(item.get("current_period_start")),
            current_period_end=_to_int(item.get("current_period_end")),
            video_limit=_to_int(item.get("video_limit")),
            cancel_at_period_end=bool(item.get("cancel_at_period_end", False)),
            canceled_at=_optional_int(item.get("canceled_at")),
            video_count=_to_int(item.get("video_count")),
            created_at=item.get("created_at", ""),
            updated_at=item.get("updated_at", ""),
            usage_reset_period_start=_to_int(item.get("usage_reset_period_start")),
            last_event_created=_to_int(item.get("last_event_created")),
            version=_to_int(item.get("version")),
        )

    @property
    def remaining_videos(self) -> int:
        return max(0, self.video_limit - self.video_count)


@dataclass
class BillingRecord:
    id: str
    subscription_id: str
    provider_invoice_id: str
    amount: int
    currency: str
    outcome: str
    period_start: Optional[int]
    period_end: Optional[int]
    recorded_at: str
    updated_at: str

    def to_item(self) -> dict:
        item = {k: v for k, v in asdict(self).items() if v not in (None, "")}
        item["pk"] = self.provider_invoice_id
        item["sk"] = INVOICE_SK
        return item

    @classmethod
    def from_item(cls, item: dict) -> "BillingRecord":
        return cls(
            id=item["id"],
            subscription_id=item.get("subscription_id", ""),
            provider_invoice_id=item["provider_invoice_id"],
            amount=_to_int(item.get("amount")),
            currency=item.get("currency", "usd"),
            outcome=item["outcome"],
            period_start=_optional_int(item.get("period_start")),
            period_end=_optional_int(item.get("period_end")),
            recorded_at=item.get("recorded_at", ""),
            updated_at=item.get("updated_at", ""),
        )

    def to_dict(self) -> dict:
        return asdict(self)
