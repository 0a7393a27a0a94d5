"""
DynamoDB persistence for subscriptions and processed-event markers.

The subscription write, the owner pointer write and the ProcessedEvent insert
for one reconciliation step go out as a single TransactWriteItems call: either
the event is marked processed together with its effect, or neither happens.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from billing.errors import ConcurrentModification
from billing.models import (
    OWNER_POINTER_SK,
    PROCESSED_SK,
    SUBSCRIPTION_SK,
    DomainEvent,
    Subscription,
    owner_pointer_key,
)
from billing.state_machine import CANCELED
from shared.aws_clients import get_dynamodb, get_dynamodb_client
from shared.constants import PROCESSED_EVENT_TTL_DAYS

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "billing-subscriptions")
EVENTS_TABLE = os.environ.get("EVENTS_TABLE", "billing-processed-events")

OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_CONFLICT = "conflict"

# Fields mirrored from the provider on every commit. video_count and
# usage_reset_period_start are owned by UsageQuotaTracker and never written here.
_MIRRORED_FIELDS = (
    "owner_id",
    "plan_id",
    "status",
    "provider_customer_id",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
    "video_limit",
    "updated_at",
    "last_event_created",
)


class ProcessedEventStore:
    """Idempotency markers keyed by provider event id."""

    def __init__(self, table_name: Optional[str] = None):
        self.table_name = table_name or EVENTS_TABLE

    def _table(self):
        return get_dynamodb().Table(self.table_name)

    def get(self, event_id: str) -> Optional[dict]:
        response = self._table().get_item(Key={"pk": event_id, "sk": PROCESSED_SK}, ConsistentRead=True)
        return response.get("Item")

    def is_processed(self, event_id: str) -> bool:
        return self.get(event_id) is not None

    def build_item(self, event: DomainEvent, outcome: str) -> dict:
        now = datetime.now(timezone.utc)
        item = {
            "pk": event.event_id,
            "sk": PROCESSED_SK,
            "event_type": event.provider_type,
            "outcome": outcome,
            "processed_at": now.isoformat(),
            "ttl": int((now + timedelta(days=PROCESSED_EVENT_TTL_DAYS)).timestamp()),
        }
        if event.subscription_key:
            item["subscription_key"] = event.subscription_key
        if event.customer_key:
            item["customer_id"] = event.customer_key
        return item

    def mark(self, event: DomainEvent, outcome: str) -> bool:
        """Record an event as processed without a subscription write.

        Returns:
            True if this call inserted the marker, False if it already existed.
        """
        try:
            self._table().put_item(
                Item=self.build_item(event, outcome),
                ConditionExpression="attribute_not_exists(pk)",
            )
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise


class SubscriptionStore:
    def __init__(self, table_name: Optional[str] = None, events: Optional[ProcessedEventStore] = None):
        self.table_name = table_name or SUBSCRIPTIONS_TABLE
        self.events = events or ProcessedEventStore()

    def _table(self):
        return get_dynamodb().Table(self.table_name)

    def get(self, provider_subscription_id: str) -> Optional[Subscription]:
        """Strongly consistent read by provider subscription id."""
        response = self._table().get_item(
            Key={"pk": provider_subscription_id, "sk": SUBSCRIPTION_SK},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return Subscription.from_item(item) if item else None

    def get_owner_pointer(self, owner_id: str) -> Optional[dict]:
        response = self._table().get_item(
            Key={"pk": owner_pointer_key(owner_id), "sk": OWNER_POINTER_SK},
            ConsistentRead=True,
        )
        return response.get("Item")

    def get_current_for_owner(self, owner_id: str) -> Optional[Subscription]:
        """The owner's current subscription (the live one, else the last canceled one)."""
        pointer = self.get_owner_pointer(owner_id)
        if not pointer:
            return None
        return self.get(pointer["provider_subscription_id"])

    def scan_by_status(
        self, statuses, start_key: Optional[dict] = None, page_size: int = 100
    ) -> tuple[list[Subscription], Optional[dict]]:
        """One page of subscription records whose status is in `statuses`.

        Owner pointer items are skipped. Returns the records and the key to
        resume from, or None after the last page.
        """
        scan_kwargs = {
            "FilterExpression": Attr("sk").eq(SUBSCRIPTION_SK) & Attr("status").is_in(list(statuses)),
            "Limit": page_size,
        }
        if start_key:
            scan_kwargs["ExclusiveStartKey"] = start_key
        response = self._table().scan(**scan_kwargs)
        items = [Subscription.from_item(item) for item in response.get("Items", [])]
        return items, response.get("LastEvaluatedKey")

    def _pointer_write(self, subscription: Subscription, pointer: Optional[dict], now: str) -> Optional[dict]:
        sid = subscription.provider_subscription_id
        key = {"pk": owner_pointer_key(subscription.owner_id), "sk": OWNER_POINTER_SK}

        if pointer and pointer.get("provider_subscription_id") == sid:
            if pointer.get("status") == subscription.status:
                return None
            return {
                "Update": {
                    "TableName": self.table_name,
                    "Key": key,
                    "UpdateExpression": "SET #status = :status, updated_at = :now",
                    "ConditionExpression": "provider_subscription_id = :sid",
                    "ExpressionAttributeNames": {"#status": "status"},
                    "ExpressionAttributeValues": {":status": subscription.status, ":now": now, ":sid": sid},
                }
            }

        if subscription.status == CANCELED:
            return None
        if pointer and pointer.get("status") != CANCELED:
            # Another live subscription holds the pointer; leave it alone
            return None

        # Claim the pointer: free, held by a canceled subscription, or already ours
        return {
            "Put": {
                "TableName": self.table_name,
                "Item": {
                    **key,
                    "provider_subscription_id": sid,
                    "subscription_id": subscription.id,
                    "status": subscription.status,
                    "updated_at": now,
                },
                "ConditionExpression": "attribute_not_exists(pk) OR #status = :canceled OR provider_subscription_id = :sid",
                "ExpressionAttributeNames": {"#status": "status"},
                "ExpressionAttributeValues": {":canceled": CANCELED, ":sid": sid},
            }
        }

    def commit(
        self,
        subscription: Subscription,
        *,
        created: bool,
        event: DomainEvent,
        outcome: str = OUTCOME_APPLIED,
        pointer: Optional[dict] = None,
    ) -> bool:
        """Write the subscription, its owner pointer and the ProcessedEvent marker atomically.

        `subscription.version` must be the version that was read; the stored
        version is bumped by one.

        Returns:
            False if the event was already marked processed (a concurrent
            delivery won), True otherwise.

        Raises:
            ConcurrentModification: the record or the owner pointer changed
                since it was read.
        """
        now = subscription.updated_at
        items = []

        if created:
            item = subscription.to_item()
            item["version"] = 1
            items.append(
                {
                    "Put": {
                        "TableName": self.table_name,
                        "Item": item,
                        "ConditionExpression": "attribute_not_exists(pk)",
                    }
                }
            )
        else:
            to_set = [name for name in _MIRRORED_FIELDS if getattr(subscription, name) is not None]
            to_remove = [name for name in _MIRRORED_FIELDS if getattr(subscription, name) is None]
            names = {f"#{name}": name for name in _MIRRORED_FIELDS}
            values = {f":{name}": getattr(subscription, name) for name in to_set}
            values[":expected_version"] = subscription.version
            values[":next_version"] = subscription.version + 1
            update_expression = "SET " + ", ".join(f"#{name} = :{name}" for name in to_set)
            update_expression += ", #version = :next_version"
            if to_remove:
                update_expression += " REMOVE " + ", ".join(f"#{name}" for name in to_remove)
            items.append(
                {
                    "Update": {
                        "TableName": self.table_name,
                        "Key": {"pk": subscription.provider_subscription_id, "sk": SUBSCRIPTION_SK},
                        "UpdateExpression": update_expression,
                        "ConditionExpression": "#version = :expected_version",
                        "ExpressionAttributeNames": {**names, "#version": "version"},
                        "ExpressionAttributeValues": values,
                    }
                }
            )

        pointer_write = self._pointer_write(subscription, pointer, now)
        if pointer_write:
            items.append(pointer_write)

        event_index = len(items)
        items.append(
            {
                "Put": {
                    "TableName": self.events.table_name,
                    "Item": self.events.build_item(event, outcome),
                    "ConditionExpression": "attribute_not_exists(pk)",
                }
            }
        )

        try:
            get_dynamodb_client().transact_write_items(TransactItems=items)
        except ClientError as e:
            if e.response["Error"]["Code"] != "TransactionCanceledException":
                raise
            reasons = e.response.get("CancellationReasons") or []
            codes = [reason.get("Code") for reason in reasons]
            if len(codes) > event_index and codes[event_index] == "ConditionalCheckFailed":
                logger.info(f"Event {event.event_id} already processed by a concurrent delivery")
                return False
            logger.warning(f"Commit for {subscription.provider_subscription_id} cancelled: {codes}")
            raise ConcurrentModification(
                f"Concurrent write to subscription {subscription.provider_subscription_id}",
                event_id=event.event_id,
            ) from e

        subscription.version = subscription.version + 1 if not created else 1
        return True
