"""
Live Stripe reads used by identity resolution and reconciliation.

Every call goes through a bounded-timeout HTTP client and every Stripe error
surfaces as ProviderUnavailableError, so callers never see SDK exceptions.
Results are normalized into plain values right here.
"""

import logging
import time
from typing import Any

import stripe

from shared import config
from shared.constants import APP_ID_METADATA_KEY, STRIPE_LIST_PAGE_SIZE, USER_ID_METADATA_KEY
from shared.errors import ProviderUnavailableError
from shared.logging_utils import log_external_call
from shared.subscriptions import ProviderSubscription

logger = logging.getLogger(__name__)

TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)

_http_client = None


def configure_stripe(api_key: str) -> None:
    """Set the API key and a bounded-timeout HTTP client for the SDK."""
    global _http_client
    if _http_client is None:
        _http_client = stripe.RequestsClient(timeout=config.STRIPE_TIMEOUT_SECONDS)
    stripe.api_key = api_key
    stripe.default_http_client = _http_client
    stripe.max_network_retries = config.STRIPE_MAX_NETWORK_RETRIES


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Key lookup that works for both dicts and StripeObjects."""
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def _provider_error(operation: str, error: stripe.StripeError) -> ProviderUnavailableError:
    transient = isinstance(error, TRANSIENT_STRIPE_ERRORS)
    return ProviderUnavailableError(operation, transient=transient)


def retrieve_customer_metadata(customer_id: str) -> dict:
    """Read the back-reference metadata stored on a Stripe customer.

    Returns:
        {"user_id": str | None, "app_id": str | None}. Deleted customers
        have no metadata and yield Nones.

    Raises:
        ProviderUnavailableError: Stripe call failed
    """
    start = time.time()
    try:
        customer = stripe.Customer.retrieve(customer_id)
    except stripe.StripeError as e:
        log_external_call(logger, "stripe", "retrieve_customer", False, (time.time() - start) * 1000, str(e))
        raise _provider_error("retrieve_customer", e) from e
    log_external_call(logger, "stripe", "retrieve_customer", True, (time.time() - start) * 1000)

    if _get(customer, "deleted", False):
        logger.warning(f"Stripe customer {customer_id} is deleted")
        return {"user_id": None, "app_id": None}

    metadata = _get(customer, "metadata", {})
    return {
        "user_id": _get(metadata, USER_ID_METADATA_KEY) or None,
        "app_id": _get(metadata, APP_ID_METADATA_KEY) or None,
    }


def _to_provider_subscription(sub: Any) -> ProviderSubscription:
    items = _get(_get(sub, "items", {}), "data", [])
    item = items[0] if items else {}
    price_id = _get(_get(item, "price", {}), "id")

    # Newer API versions carry the billing period on the item, older ones on
    # the subscription itself
    period_end = _get(item, "current_period_end") or _get(sub, "current_period_end")

    return ProviderSubscription(
        id=_get(sub, "id", ""),
        status=_get(sub, "status", ""),
        price_id=price_id,
        current_period_end=int(period_end) if period_end else None,
        created=int(_get(sub, "created", 0)),
    )


def list_customer_subscriptions(customer_id: str) -> list[ProviderSubscription]:
    """List every subscription a customer has at Stripe, following pagination.

    All statuses are fetched; filtering to active-like ones is the
    reconciler's job.

    Raises:
        ProviderUnavailableError: any page failed
    """
    params: dict[str, Any] = {
        "customer": customer_id,
        "status": "all",
        "limit": STRIPE_LIST_PAGE_SIZE,
    }
    subscriptions: list[ProviderSubscription] = []
    start = time.time()

    while True:
        try:
            page = stripe.Subscription.list(**params)
        except stripe.StripeError as e:
            log_external_call(
                logger, "stripe", "list_subscriptions", False, (time.time() - start) * 1000, str(e)
            )
            raise _provider_error("list_subscriptions", e) from e

        data = list(_get(page, "data", []))
        subscriptions.extend(_to_provider_subscription(sub) for sub in data)

        if not data or not _get(page, "has_more", False):
            break
        params["starting_after"] = _get(data[-1], "id")

    log_external_call(logger, "stripe", "list_subscriptions", True, (time.time() - start) * 1000)
    return subscriptions
