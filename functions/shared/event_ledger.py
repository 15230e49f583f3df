"""
Webhook event ledger.

One row per Stripe event id, written before any handler runs. The conditional
put is the only serialization point between concurrent deliveries of the same
event: whoever creates the row processes the event, everyone else is a
duplicate. Rows are never deleted or released, so a claimed event is never
processed twice even if its handler failed.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from botocore.exceptions import ClientError

from shared import config
from shared.aws_clients import get_dynamodb
from shared.constants import EVENT_SK
from shared.logging_utils import billing_context

if TYPE_CHECKING:
    from shared.dispatcher import HandlerResult
    from shared.webhook_events import WebhookEvent

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "processing"
STATUS_HANDLED = "handled"
STATUS_HANDLER_FAILED = "handler_failed"

def _events_table():
    return get_dynamodb().Table(config.BILLING_EVENTS_TABLE)


def try_claim_event(event: "WebhookEvent") -> bool:
    """Atomically record a first-seen event.

    Returns:
        True if this invocation created the row and should process the event,
        False if the event was already recorded (duplicate delivery, or the
        losing side of a concurrent race).

    Raises:
        ClientError: any DynamoDB failure other than the condition check
    """
    now = datetime.now(timezone.utc).isoformat()
    item = {
        "pk": event.id,
        "sk": EVENT_SK,
        "event_type": event.type,
        "raw_payload": event.raw_payload,
        "livemode": event.livemode,
        "event_created_at": event.created,
        "status": STATUS_PROCESSING,
        "created_at": now,
    }
    # Events without a customer carry no customer_id attribute
    if event.customer_id:
        item["customer_id"] = event.customer_id

    try:
        _events_table().put_item(
            Item=item,
            ConditionExpression="attribute_not_exists(pk)",
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.info(
                f"Duplicate event {event.id}, already recorded",
                extra=billing_context(event_id=event.id, customer_id=event.customer_id, operation="claim"),
            )
            return False
        raise

    return True


def record_event_outcome(event_id: str, result: "HandlerResult") -> bool:
    """Complete a claimed row with the handler outcome (best-effort).

    Only a row still in ``processing`` is updated, so an outcome is written
    at most once. Identity and payload fields from the claim are untouched.

    Returns:
        True if the outcome was written
    """
    status = STATUS_HANDLED if result.ok else STATUS_HANDLER_FAILED
    try:
        _events_table().update_item(
            Key={"pk": event_id, "sk": EVENT_SK},
            UpdateExpression=(
                "SET #status = :status, user_id = :user_id, #type = :type, "
                "amount = :amount, currency = :currency, #error = :error, "
                "processed_at = :now"
            ),
            ConditionExpression="#status = :processing",
            ExpressionAttributeNames={
                "#status": "status",
                "#type": "type",
                "#error": "error",
            },
            ExpressionAttributeValues={
                ":status": status,
                ":user_id": result.user_id,
                ":type": result.audit_type,
                ":amount": result.amount,
                ":currency": result.currency,
                ":error": result.error,
                ":now": datetime.now(timezone.utc).isoformat(),
                ":processing": STATUS_PROCESSING,
            },
        )
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.warning(f"Event {event_id} outcome already recorded, leaving it unchanged")
        else:
            logger.error(f"Failed to record outcome for event {event_id}: {e}")
        return False
    except Exception as e:
        # Outcome recording must not change the webhook response
        logger.error(f"Failed to record outcome for event {event_id}: {e}")
        return False


def get_event(event_id: str) -> Optional[dict]:
    """Fetch a ledger row by Stripe event id."""
    response = _events_table().get_item(Key={"pk": event_id, "sk": EVENT_SK})
    return response.get("Item")

