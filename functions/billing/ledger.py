"""
Billing ledger: one record per provider invoice.

Writes are insert-if-absent keyed by invoice id, so replayed invoice events
never duplicate a record. A later outcome for the same invoice updates the
record in place (failed -> succeeded after a retry charge), except that
succeeded is final: a late payment_failed delivery cannot un-pay an invoice.
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from billing.models import INVOICE_SK, BillingRecord, LedgerOutcome
from shared.aws_clients import get_dynamodb
from shared.constants import DEFAULT_BILLING_HISTORY_LIMIT, MAX_BILLING_HISTORY_LIMIT

logger = logging.getLogger(__name__)

LEDGER_TABLE = os.environ.get("LEDGER_TABLE", "billing-ledger")

# Conditional update retries when two writers race on the same invoice
MAX_OUTCOME_UPDATE_ATTEMPTS = 3


class BillingLedger:
    def __init__(self, table_name: Optional[str] = None):
        self.table_name = table_name or LEDGER_TABLE

    def _table(self):
        return get_dynamodb().Table(self.table_name)

    def get(self, invoice_id: str) -> Optional[BillingRecord]:
        response = self._table().get_item(Key={"pk": invoice_id, "sk": INVOICE_SK}, ConsistentRead=True)
        item = response.get("Item")
        return BillingRecord.from_item(item) if item else None

    def record(
        self,
        invoice_id: str,
        amount: int,
        outcome: str,
        period: Optional[tuple[Optional[int], Optional[int]]] = None,
        currency: str = "usd",
        subscription_id: str = "",
    ) -> BillingRecord:
        """Insert or update the ledger record for an invoice.

        Args:
            invoice_id: Provider invoice id (the idempotency key)
            amount: Amount in minor currency units
            outcome: One of LedgerOutcome.ALL
            period: (period_start, period_end) the invoice pays for
            currency: ISO currency code, lowercase
            subscription_id: Local subscription id

        Returns:
            The record as stored after this call.
        """
        if outcome not in LedgerOutcome.ALL:
            raise ValueError(f"Unknown ledger outcome: {outcome}")
        if not isinstance(amount, int):
            raise TypeError("Ledger amounts must be integer minor units")

        period_start, period_end = period or (None, None)
        now = datetime.now(timezone.utc).isoformat()
        record = BillingRecord(
            id=f"bill_{uuid.uuid4().hex[:16]}",
            subscription_id=subscription_id,
            provider_invoice_id=invoice_id,
            amount=amount,
            currency=currency,
            outcome=outcome,
            period_start=period_start,
            period_end=period_end,
            recorded_at=now,
            updated_at=now,
        )

        table = self._table()
        try:
            table.put_item(Item=record.to_item(), ConditionExpression="attribute_not_exists(pk)")
            logger.info(f"Recorded invoice {invoice_id}: {outcome} {amount} {currency}")
            return record
        except ClientError as e:
            if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                raise

        for _ in range(MAX_OUTCOME_UPDATE_ATTEMPTS):
            existing = self.get(invoice_id)
            if existing.outcome == outcome:
                return existing
            if existing.outcome == LedgerOutcome.SUCCEEDED:
                logger.info(f"Invoice {invoice_id} already succeeded, ignoring late {outcome}")
                return existing

            try:
                response = table.update_item(
                    Key={"pk": invoice_id, "sk": INVOICE_SK},
                    UpdateExpression="SET #outcome = :outcome, #amount = :amount, updated_at = :now",
                    ConditionExpression="#outcome = :previous",
                    ExpressionAttributeNames={"#outcome": "outcome", "#amount": "amount"},
                    ExpressionAttributeValues={
                        ":outcome": outcome,
                        ":amount": amount,
                        ":now": now,
                        ":previous": existing.outcome,
                    },
                    ReturnValues="ALL_NEW",
                )
            except ClientError as e:
                if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                    continue
                raise

            logger.info(f"Invoice {invoice_id} outcome {existing.outcome} -> {outcome}")
            return BillingRecord.from_item(response["Attributes"])

        # Lost every race; whatever is stored now is the answer
        return self.get(invoice_id)

    def history(self, subscription_id: str, limit: int = DEFAULT_BILLING_HISTORY_LIMIT) -> list[BillingRecord]:
        """Most recent records first."""
        limit = max(1, min(limit, MAX_BILLING_HISTORY_LIMIT))
        response = self._table().query(
            IndexName="subscription-index",
            KeyConditionExpression=Key("subscription_id").eq(subscription_id),
            ScanIndexForward=False,
            Limit=limit,
        )
        return [BillingRecord.from_item(item) for item in response.get("Items", [])]

    def summary(self, subscription_id: str) -> dict:
        """Totals across every record for a subscription."""
        table = self._table()
        query_kwargs = {
            "IndexName": "subscription-index",
            "KeyConditionExpression": Key("subscription_id").eq(subscription_id),
        }
        records = []
        while True:
            response = table.query(**query_kwargs)
            records.extend(BillingRecord.from_item(item) for item in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            query_kwargs["ExclusiveStartKey"] = last_key

        succeeded = [r for r in records if r.outcome == LedgerOutcome.SUCCEEDED]
        return {
            "total_paid": sum(r.amount for r in succeeded),
            "currency": records[0].currency if records else "usd",
            "invoice_count": len(records),
            "failed_count": sum(1 for r in records if r.outcome == LedgerOutcome.FAILED),
            "last_payment_at": max((r.recorded_at for r in succeeded), default=None),
        }
