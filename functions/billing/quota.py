"""
Monthly video quota.

video_count lives on the subscription record but is owned here: the engine
never writes it. Resets are keyed on the billing period start so each period
resets at most once no matter how many invoice events report it.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from botocore.exceptions import ClientError

from billing.deadline import Deadline
from billing.locks import SubscriptionLock
from billing.models import SUBSCRIPTION_SK, Subscription
from shared.aws_clients import get_dynamodb
from shared.constants import USABLE_STATUSES
from shared.types import UsageView

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "billing-subscriptions")


class UsageQuotaTracker:
    def __init__(self, lock: SubscriptionLock, table_name: Optional[str] = None):
        self.lock = lock
        self.table_name = table_name or SUBSCRIPTIONS_TABLE

    def _table(self):
        return get_dynamodb().Table(self.table_name)

    def reset_for_new_period(self, subscription_id: str, period_start: int, period_end: Optional[int] = None) -> bool:
        """Zero the video count for a billing period that has not been reset yet.

        Args:
            subscription_id: Provider subscription id (the record key)
            period_start: Start of the new billing period (Unix seconds)
            period_end: End of the new billing period, for logging

        Returns:
            True if the count was reset, False if this period was already reset
            (or the record does not exist).
        """
        try:
            self._table().update_item(
                Key={"pk": subscription_id, "sk": SUBSCRIPTION_SK},
                UpdateExpression="SET video_count = :zero, usage_reset_period_start = :period_start, usage_reset_at = :now",
                ConditionExpression=(
                    "attribute_exists(pk) AND "
                    "(attribute_not_exists(usage_reset_period_start) OR usage_reset_period_start < :period_start)"
                ),
                ExpressionAttributeValues={
                    ":zero": 0,
                    ":period_start": period_start,
                    ":now": datetime.now(timezone.utc).isoformat(),
                },
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.debug(f"Quota for {subscription_id} already reset for period starting {period_start}")
                return False
            raise

        logger.info(f"Reset video quota for {subscription_id}: period {period_start} -> {period_end}")
        return True

    def increment(self, subscription_id: str, deadline: Optional[Deadline] = None) -> tuple[bool, int]:
        """Consume one video from the quota.

        Runs under the subscription lock; the conditional update is the actual
        guarantee that the count never passes the limit.

        Returns:
            (allowed, remaining). allowed=False means the quota is exhausted or
            the subscription is not in a usable status; it is a result, not
            an error.
        """
        with self.lock.hold(subscription_id, deadline):
            table = self._table()
            try:
                response = table.update_item(
                    Key={"pk": subscription_id, "sk": SUBSCRIPTION_SK},
                    UpdateExpression="SET video_count = video_count + :one, updated_at = :now",
                    ConditionExpression=(
                        "attribute_exists(pk) AND video_count < video_limit AND #status IN (:active, :trialing)"
                    ),
                    ExpressionAttributeNames={"#status": "status"},
                    ExpressionAttributeValues={
                        ":one": 1,
                        ":now": datetime.now(timezone.utc).isoformat(),
                        ":active": USABLE_STATUSES[0],
                        ":trialing": USABLE_STATUSES[1],
                    },
                    ReturnValues="ALL_NEW",
                )
            except ClientError as e:
                if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                    raise
                item = table.get_item(
                    Key={"pk": subscription_id, "sk": SUBSCRIPTION_SK}, ConsistentRead=True
                ).get("Item")
                remaining = Subscription.from_item(item).remaining_videos if item else 0
                logger.info(f"Video quota refused for {subscription_id} (remaining={remaining})")
                return False, remaining

        updated = Subscription.from_item(response["Attributes"])
        return True, updated.remaining_videos

    @staticmethod
    def usage(subscription: Subscription) -> UsageView:
        """Quota view for the dashboard."""
        limit = subscription.video_limit
        count = subscription.video_count
        return {
            "video_count": count,
            "video_limit": limit,
            "remaining": subscription.remaining_videos,
            "usage_percentage": round(count / limit * 100, 1) if limit > 0 else 0.0,
            "can_create_video": subscription.status in USABLE_STATUSES and count < limit,
        }
