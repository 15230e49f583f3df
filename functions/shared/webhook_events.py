"""
Stripe webhook verification and event parsing.

verify_webhook() checks the Stripe-Signature header against the exact body
bytes, then parses the body into one of a closed set of event dataclasses.
Downstream code only ever sees these dataclasses, never raw Stripe dicts.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

import stripe

from shared.constants import (
    CHECKOUT_COMPLETED,
    DEFAULT_WEBHOOK_TOLERANCE,
    INVOICE_EVENTS,
    INVOICE_PAID_EVENTS,
    SUBSCRIPTION_EVENTS,
)
from shared.errors import InvalidPayloadError, InvalidSignatureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Envelope:
    id: str
    type: str
    created: Optional[int]
    livemode: bool
    raw_payload: str


@dataclass(frozen=True)
class CheckoutCompleted(_Envelope):
    customer_id: Optional[str] = None
    email: Optional[str] = None
    mode: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionChanged(_Envelope):
    """customer.subscription.created / updated / deleted."""

    customer_id: str = ""
    subscription_id: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class InvoiceOutcome(_Envelope):
    customer_id: str = ""
    invoice_id: Optional[str] = None
    paid: bool = False
    amount: Optional[int] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class UnhandledEvent(_Envelope):
    customer_id: Optional[str] = None


WebhookEvent = Union[CheckoutCompleted, SubscriptionChanged, InvoiceOutcome, UnhandledEvent]


def verify_webhook(
    raw_body: Union[bytes, str],
    signature_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_WEBHOOK_TOLERANCE,
) -> WebhookEvent:
    """Verify a Stripe webhook delivery and parse it.

    Args:
        raw_body: Request body exactly as received (never re-serialized)
        signature_header: Value of the Stripe-Signature header
        secret: Endpoint signing secret (whsec_...)
        tolerance: Max age of the signed timestamp in seconds

    Returns:
        Parsed event dataclass

    Raises:
        InvalidSignatureError: header missing/malformed, signature mismatch
            or timestamp outside tolerance
        InvalidPayloadError: signed body is not a well-formed event
    """
    if not signature_header:
        logger.warning("Webhook request missing signature")
        raise InvalidSignatureError()

    if isinstance(raw_body, bytes):
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidPayloadError() from e
    else:
        payload = raw_body or ""

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        # Message only; the exception repr carries the header and payload
        logger.warning(f"Invalid Stripe signature: {e.user_message or 'verification failed'}")
        raise InvalidSignatureError() from e

    return parse_event(payload)


def _optional_str(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _optional_int(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _customer_ref(obj: dict) -> Optional[str]:
    """Customer may be an id string or an expanded customer object."""
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return _optional_str(customer)


def parse_event(payload: str) -> WebhookEvent:
    """Parse a verified webhook body into its event dataclass.

    Raises:
        InvalidPayloadError: body is not JSON, or required fields are missing
    """
    try:
        body = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidPayloadError() from e

    if not isinstance(body, dict):
        raise InvalidPayloadError()

    event_id = _optional_str(body.get("id"))
    event_type = _optional_str(body.get("type"))
    data = body.get("data")
    obj = data.get("object") if isinstance(data, dict) else None

    if not event_id or not event_type or not isinstance(obj, dict):
        logger.warning(f"Webhook payload missing id/type/data.object (type={event_type})")
        raise InvalidPayloadError()

    envelope = {
        "id": event_id,
        "type": event_type,
        "created": _optional_int(body.get("created")),
        "livemode": bool(body.get("livemode", False)),
        "raw_payload": payload,
    }

    if event_type == CHECKOUT_COMPLETED:
        details = obj.get("customer_details") or {}
        return CheckoutCompleted(
            **envelope,
            customer_id=_customer_ref(obj),
            email=_optional_str(details.get("email")) or _optional_str(obj.get("customer_email")),
            mode=_optional_str(obj.get("mode")),
            amount_total=_optional_int(obj.get("amount_total")),
            currency=_optional_str(obj.get("currency")),
            session_id=_optional_str(obj.get("id")),
        )

    if event_type in SUBSCRIPTION_EVENTS:
        customer_id = _customer_ref(obj)
        if not customer_id:
            logger.warning(f"Subscription event {event_id} has no customer")
            raise InvalidPayloadError()
        return SubscriptionChanged(
            **envelope,
            customer_id=customer_id,
            subscription_id=_optional_str(obj.get("id")),
            status=_optional_str(obj.get("status")),
        )

    if event_type in INVOICE_EVENTS:
        customer_id = _customer_ref(obj)
        if not customer_id:
            logger.warning(f"Invoice event {event_id} has no customer")
            raise InvalidPayloadError()
        paid = event_type in INVOICE_PAID_EVENTS
        amount = _optional_int(obj.get("amount_paid")) if paid else None
        if amount is None:
            amount = _optional_int(obj.get("amount_due"))
        return InvoiceOutcome(
            **envelope,
            customer_id=customer_id,
            invoice_id=_optional_str(obj.get("id")),
            paid=paid,
            amount=amount,
            currency=_optional_str(obj.get("currency")),
        )

    return UnhandledEvent(**envelope, customer_id=_customer_ref(obj))
