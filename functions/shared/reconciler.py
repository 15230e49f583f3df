"""
Subscription reconciliation.

Every reconcile re-reads the customer's subscriptions from Stripe and
overwrites the stored snapshot, so the outcome does not depend on which
webhook arrived last or in what order.
"""

import logging
from typing import Optional

from shared import config
from shared.billing_utils import get_profile, write_subscription_snapshot
from shared.errors import CustomerNotLinkedError
from shared.logging_utils import billing_context
from shared.stripe_client import list_customer_subscriptions
from shared.subscriptions import CanonicalSnapshot, PriceTierMap, select_canonical

logger = logging.getLogger(__name__)


def reconcile_user(
    user_id: str,
    customer_id: Optional[str] = None,
    price_tiers: Optional[PriceTierMap] = None,
) -> CanonicalSnapshot:
    """Recompute and persist a user's subscription snapshot from Stripe.

    Args:
        user_id: Profile owner
        customer_id: Stripe customer; read from the profile when omitted
        price_tiers: Price id -> tier map; built from environment when omitted

    Returns:
        The snapshot that was written

    Raises:
        CustomerNotLinkedError: no customer given and none on the profile
        ProviderUnavailableError: Stripe read failed; nothing was written
    """
    if price_tiers is None:
        price_tiers = config.load_price_tiers()

    if not customer_id:
        profile = get_profile(user_id)
        customer_id = (profile or {}).get("stripe_customer_id")
        if not customer_id:
            raise CustomerNotLinkedError(user_id=user_id)

    context = billing_context(customer_id=customer_id, user_id=user_id, operation="reconcile")

    subscriptions = list_customer_subscriptions(customer_id)
    snapshot = select_canonical(subscriptions, price_tiers)

    if not price_tiers and subscriptions:
        logger.warning("No price ids configured, every subscription maps to free", extra=context)

    write_subscription_snapshot(user_id, snapshot)

    logger.info(
        f"Reconciled {len(subscriptions)} subscriptions -> {snapshot.tier.label}",
        extra={**context, "status": snapshot.status, "price_id": snapshot.price_id},
    )
    return snapshot
