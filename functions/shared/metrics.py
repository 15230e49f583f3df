"""
CloudWatch metrics and operator alerts.

Both are best-effort: a failure to emit never affects webhook processing.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from shared.aws_clients import get_cloudwatch, get_sns

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "TierBill")


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
        unit: Unit of measurement (Count, Milliseconds, ...)
        dimensions: Optional dimensions for filtering metrics

    Example:
        emit_metric("WebhookEventHandled", dimensions={"EventType": "invoice.paid"})
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
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def send_operator_alert(subject: str, message: str) -> bool:
    """Publish an alert to ALERT_TOPIC_ARN if configured.

    Returns:
        True if the alert was published
    """
    alert_topic_arn = os.environ.get("ALERT_TOPIC_ARN")
    if not alert_topic_arn:
        logger.debug("ALERT_TOPIC_ARN not configured, skipping alert")
        return False

    try:
        get_sns().publish(
            TopicArn=alert_topic_arn,
            Subject=subject[:100],
            Message=message,
        )
        logger.info(f"Operator alert sent: {subject}")
        return True
    except Exception as e:
        logger.error(f"Failed to send operator alert: {e}")
        return False
