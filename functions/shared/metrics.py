"""
CloudWatch Metrics Helper

Provides utilities for emitting custom billing metrics to CloudWatch.
Metric emission is best-effort: a CloudWatch failure never fails a webhook.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from shared.aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "SubscriptionBilling")


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a custom metric to CloudWatch.

    Args:
        metric_name: Name of the metric
        value: Metric value (default: 1.0)
        unit: Unit of measurement (Count, Seconds, Bytes, etc.)
        dimensions: Optional dimensions for filtering metrics

    Example:
        emit_metric("WebhookProcessed", dimensions={"EventKind": "invoice_paid"})
    """
    try:
        metric_data = {
            "MetricName": metric_name,
            "Value": value,
            "Unit": unit,
            "Timestamp": datetime.now(timezone.utc),
        }

        if dimensions:
            metric_data["Dimensions"] = [{"Name": k, "Value": v} for k, v in dimensions.items()]

        get_cloudwatch().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[metric_data],
        )

        logger.debug(
            f"Emitted metric: {metric_name}={value} {unit}",
            extra={"dimensions": dimensions},
        )

    except Exception as e:
        # Don't fail the Lambda if metrics fail
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_webhook_metric(outcome: str, event_kind: str) -> None:
    """
    Emit a webhook processing metric.

    Args:
        outcome: 'processed', 'duplicate', 'transient_failure', 'conflict', 'rejected'
        event_kind: Classified event kind (e.g. 'invoice_paid')
    """
    emit_metric(
        "WebhookDeliveries",
        dimensions={"Outcome": outcome, "EventKind": event_kind},
    )


def emit_conflict_alert(reason: str, event_kind: str) -> None:
    """Alerting hook for permanent reconciliation conflicts.

    An alarm on ReconciliationConflict pages the on-call: these events are
    marked processed and will not be redelivered.
    """
    emit_metric(
        "ReconciliationConflict",
        dimensions={"Reason": reason[:50], "EventKind": event_kind},
    )
