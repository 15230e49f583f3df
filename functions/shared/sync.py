"""
User-initiated subscription sync.

Runs the same reconcile the webhook path runs, so both converge on the same
snapshot for the same Stripe state. Never raises: on any failure the caller
gets the last stored snapshot flagged as cached.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from shared import config
from shared.billing_utils import get_profile
from shared.errors import BillingError
from shared.logging_utils import billing_context
from shared.reconciler import reconcile_user
from shared.subscriptions import PriceTierMap, subscription_info

logger = logging.getLogger(__name__)

NO_CUSTOMER_ERROR = "No Stripe customer ID found"


@dataclass
class SyncResult:
    success: bool
    subscription: Optional[dict] = None
    error: Optional[str] = None
    cached: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _cached_info(user_id: str, price_tiers: PriceTierMap) -> Optional[dict]:
    try:
        profile = get_profile(user_id)
    except Exception as e:
        logger.error(f"Failed to read cached profile for {user_id}: {e}")
        return None
    return subscription_info(profile, price_tiers) if profile else None


def force_sync(user_id: str, price_tiers: Optional[PriceTierMap] = None) -> SyncResult:
    """Reconcile one user against Stripe now.

    Returns:
        SyncResult with the fresh subscription summary on success, or the
        cached summary (cached=True) and an error message on failure
    """
    if price_tiers is None:
        price_tiers = config.load_price_tiers()

    context = billing_context(user_id=user_id, operation="force_sync")

    try:
        profile = get_profile(user_id)
        customer_id = (profile or {}).get("stripe_customer_id")
        if not customer_id:
            logger.info("Sync requested for user without Stripe customer", extra=context)
            return SyncResult(success=False, error=NO_CUSTOMER_ERROR)

        reconcile_user(user_id, customer_id=customer_id, price_tiers=price_tiers)
        fresh = get_profile(user_id) or {}
        return SyncResult(success=True, subscription=subscription_info(fresh, price_tiers))

    except BillingError as e:
        logger.warning(f"Sync failed for {user_id}: {e.code}, using cached data", extra=context)
        error = e.message
    except Exception as e:
        logger.exception("Sync failed unexpectedly, using cached data", extra=context)
        error = f"Sync failed: {type(e).__name__}"

    return cached_result(user_id, error, price_tiers)


def cached_result(user_id: str, error: str, price_tiers: Optional[PriceTierMap] = None) -> SyncResult:
    """Failed sync carrying the last stored snapshot."""
    if price_tiers is None:
        price_tiers = config.load_price_tiers()
    return SyncResult(
        success=False,
        subscription=_cached_info(user_id, price_tiers),
        error=error,
        cached=True,
    )
