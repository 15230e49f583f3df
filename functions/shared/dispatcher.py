"""
Webhook event dispatch.

Routes a verified, claimed event to its handler and turns whatever happens
inside the handler into a HandlerResult. Nothing raised by a handler escapes
dispatch_event(): once an event is claimed, Stripe always gets a 2xx.
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional, Union

from botocore.exceptions import ClientError

from shared.constants import AUDIT_INVOICE, AUDIT_ONE_TIME, AUDIT_SUBSCRIPTION, AUDIT_UNHANDLED
from shared.errors import (
    BillingError,
    InternalFaultError,
    InvalidPayloadError,
    InvalidSignatureError,
    NotConfiguredError,
)
from shared.identity import link_customer, resolve_user, resolve_user_id
from shared.logging_utils import billing_context
from shared.metrics import emit_metric
from shared.reconciler import reconcile_user
from shared.response_utils import json_response
from shared.stripe_client import retrieve_customer_metadata
from shared.subscriptions import PriceTierMap
from shared.webhook_events import (
    CheckoutCompleted,
    InvoiceOutcome,
    SubscriptionChanged,
    UnhandledEvent,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class HandlerResult:
    """Outcome of handling one event, recorded on its ledger row."""

    ok: bool
    audit_type: str
    user_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    error: Optional[str] = None


OUTCOME_HANDLED = "handled"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_HANDLER_FAILED = "handler_failed"
OUTCOME_INVALID_SIGNATURE = "invalid_signature"
OUTCOME_INVALID_PAYLOAD = "invalid_payload"
OUTCOME_NOT_CONFIGURED = "not_configured"
OUTCOME_INTERNAL_FAULT = "internal_fault"

# Outcome -> 200 body, or the error whose response is returned
RESPONSE_POLICY: dict[str, Union[dict, BillingError]] = {
    OUTCOME_HANDLED: {"received": True},
    OUTCOME_DUPLICATE: {"received": True, "duplicate": True},
    # Claimed events are never reprocessed, so a redelivery would be a duplicate
    OUTCOME_HANDLER_FAILED: {"received": True, "processed": False},
    OUTCOME_INVALID_SIGNATURE: InvalidSignatureError(),
    OUTCOME_INVALID_PAYLOAD: InvalidPayloadError(),
    OUTCOME_NOT_CONFIGURED: NotConfiguredError(),
    OUTCOME_INTERNAL_FAULT: InternalFaultError("Webhook processing failed"),
}


def response_for(outcome: str) -> dict:
    """Build the API Gateway response for a webhook outcome."""
    policy = RESPONSE_POLICY[outcome]
    if isinstance(policy, BillingError):
        return policy.to_response()
    return json_response(200, policy)


def _audit_type(event: WebhookEvent) -> str:
    if isinstance(event, CheckoutCompleted):
        return AUDIT_SUBSCRIPTION if event.mode == "subscription" else AUDIT_ONE_TIME
    if isinstance(event, SubscriptionChanged):
        return AUDIT_SUBSCRIPTION
    if isinstance(event, InvoiceOutcome):
        return AUDIT_INVOICE
    return AUDIT_UNHANDLED


def _handle_checkout_completed(event: CheckoutCompleted) -> HandlerResult:
    """Link the paying customer to its user and record the payment."""
    result = HandlerResult(
        ok=True,
        audit_type=_audit_type(event),
        amount=event.amount_total,
        currency=event.currency,
    )
    if not event.customer_id:
        logger.info(
            f"Checkout {event.session_id} has no customer, recording payment only",
            extra=billing_context(event_id=event.id, operation="checkout"),
        )
        return result

    metadata = retrieve_customer_metadata(event.customer_id)
    user_id = metadata["user_id"] or resolve_user_id(event.customer_id)
    if not user_id:
        logger.warning(
            "Checkout customer has no linked user",
            extra=billing_context(event_id=event.id, customer_id=event.customer_id, operation="checkout"),
        )
        return result

    result.user_id = user_id
    link_customer(user_id, event.customer_id, billing_email=event.email, app_id=metadata["app_id"])
    return result


def _handle_subscription_changed(event: SubscriptionChanged, price_tiers: PriceTierMap) -> HandlerResult:
    """Re-derive the snapshot from Stripe; the event body itself is only a trigger."""
    user_id = resolve_user(event.customer_id)
    if not user_id:
        logger.warning(
            f"No user for customer on {event.type}, skipping reconcile",
            extra=billing_context(event_id=event.id, customer_id=event.customer_id, operation="reconcile"),
        )
        return HandlerResult(ok=True, audit_type=AUDIT_SUBSCRIPTION)

    reconcile_user(user_id, customer_id=event.customer_id, price_tiers=price_tiers)
    return HandlerResult(ok=True, audit_type=AUDIT_SUBSCRIPTION, user_id=user_id)


def _handle_invoice(event: InvoiceOutcome) -> HandlerResult:
    user_id = resolve_user(event.customer_id)
    context = billing_context(
        event_id=event.id, customer_id=event.customer_id, user_id=user_id, operation="invoice"
    )
    if event.paid:
        logger.info(f"Invoice {event.invoice_id} paid: {event.amount} {event.currency}", extra=context)
    else:
        logger.warning(f"Invoice {event.invoice_id} payment failed: {event.amount} {event.currency}", extra=context)

    return HandlerResult(
        ok=True,
        audit_type=AUDIT_INVOICE,
        user_id=user_id,
        amount=event.amount,
        currency=event.currency,
    )


def _handle_unhandled(event: UnhandledEvent) -> HandlerResult:
    logger.info(f"Unhandled event type: {event.type}", extra=billing_context(event_id=event.id))
    return HandlerResult(ok=True, audit_type=AUDIT_UNHANDLED)


def _handlers(price_tiers: PriceTierMap) -> dict[type, Callable[..., HandlerResult]]:
    """Handler per event variant; only subscription changes read the price map."""
    return {
        CheckoutCompleted: _handle_checkout_completed,
        SubscriptionChanged: partial(_handle_subscription_changed, price_tiers=price_tiers),
        InvoiceOutcome: _handle_invoice,
        UnhandledEvent: _handle_unhandled,
    }


def dispatch_event(event: WebhookEvent, price_tiers: PriceTierMap) -> HandlerResult:
    """Run the handler for a claimed event and capture its outcome.

    Never raises. A failure produces a result with ok=False, the error code
    and whatever audit fields are known from the event itself.
    """
    handler = _handlers(price_tiers)[type(event)]
    context = billing_context(event_id=event.id, customer_id=event.customer_id, event_type=event.type)

    try:
        result = handler(event)
    except BillingError as e:
        logger.error(f"Handler failed for {event.type}: {e.code}: {e.message}", extra=context)
        result = _failed_result(event, e.code)
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "ClientError")
        logger.error(f"DynamoDB error handling {event.type}: {error_code}", extra=context)
        result = _failed_result(event, f"dynamodb:{error_code}")
    except Exception as e:
        logger.exception(f"Unexpected error handling {event.type}", extra=context)
        result = _failed_result(event, type(e).__name__)

    metric = "WebhookEventHandled" if result.ok else "WebhookEventFailed"
    emit_metric(metric, dimensions={"EventType": event.type})
    return result


def _failed_result(event: WebhookEvent, error: str) -> HandlerResult:
    amount = None
    currency = None
    if isinstance(event, CheckoutCompleted):
        amount, currency = event.amount_total, event.currency
    elif isinstance(event, InvoiceOutcome):
        amount, currency = event.amount, event.currency
    return HandlerResult(
        ok=False,
        audit_type=_audit_type(event),
        amount=amount,
        currency=currency,
        error=error,
    )
