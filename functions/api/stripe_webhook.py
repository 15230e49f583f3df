"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Verifies the Stripe signature, claims the event in the ledger, dispatches it
and records the outcome. Uses Stripe signature verification instead of auth.

Handles:
- checkout.session.completed: link customer to user, record payment
- customer.subscription.created/updated/deleted: reconcile the user's tier
- invoice.paid/payment_succeeded/payment_failed: record invoice outcome
"""

import base64
import binascii
import logging

from botocore.exceptions import ClientError

from shared import config
from shared.dispatcher import (
    OUTCOME_DUPLICATE,
    OUTCOME_HANDLED,
    OUTCOME_HANDLER_FAILED,
    OUTCOME_INTERNAL_FAULT,
    OUTCOME_INVALID_PAYLOAD,
    OUTCOME_INVALID_SIGNATURE,
    OUTCOME_NOT_CONFIGURED,
    dispatch_event,
    response_for,
)
from shared.errors import InvalidPayloadError, InvalidSignatureError
from shared.event_ledger import get_event, record_event_outcome, try_claim_event
from shared.logging_utils import billing_context, configure_structured_logging, set_request_id
from shared.metrics import emit_metric
from shared.stripe_client import configure_stripe
from shared.webhook_events import verify_webhook

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _get_header(headers: dict, name: str):
    """Case-insensitive header lookup (API Gateway v1 keeps client casing)."""
    wanted = name.lower()
    for key, value in (headers or {}).items():
        if key.lower() == wanted:
            return value
    return None


def _raw_body(event: dict) -> bytes:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidPayloadError() from e
    return body.encode("utf-8")


def handler(event, context):
    """Lambda handler for Stripe webhooks."""
    configure_structured_logging()
    set_request_id(event)

    stripe_api_key, webhook_secret = config.get_stripe_secrets()
    if not stripe_api_key or not webhook_secret:
        logger.error("Stripe secrets not configured")
        return response_for(OUTCOME_NOT_CONFIGURED)

    sig_header = _get_header(event.get("headers"), "Stripe-Signature")

    try:
        stripe_event = verify_webhook(
            _raw_body(event),
            sig_header,
            webhook_secret,
            tolerance=config.WEBHOOK_TOLERANCE_SECONDS,
        )
    except InvalidSignatureError:
        return response_for(OUTCOME_INVALID_SIGNATURE)
    except InvalidPayloadError:
        return response_for(OUTCOME_INVALID_PAYLOAD)

    configure_stripe(stripe_api_key)

    log_context = billing_context(event_id=stripe_event.id, customer_id=stripe_event.customer_id)
    logger.info(f"Processing Stripe event: {stripe_event.type}", extra=log_context)

    # Check for duplicate event and atomically claim it
    try:
        claimed = try_claim_event(stripe_event)
    except ClientError as e:
        # Nothing was recorded, so Stripe's retry will be processed normally
        logger.error(f"Failed to claim event {stripe_event.id}: {e}", extra=log_context)
        return response_for(OUTCOME_INTERNAL_FAULT)

    if not claimed:
        prior = get_event(stripe_event.id) or {}
        logger.info(
            f"Duplicate delivery, first seen {prior.get('created_at')} with status {prior.get('status')}",
            extra=log_context,
        )
        emit_metric("WebhookEventDuplicate", dimensions={"EventType": stripe_event.type})
        return response_for(OUTCOME_DUPLICATE)

    result = dispatch_event(stripe_event, config.load_price_tiers())
    record_event_outcome(stripe_event.id, result)

    return response_for(OUTCOME_HANDLED if result.ok else OUTCOME_HANDLER_FAILED)
