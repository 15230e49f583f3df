"""
Subscription Reconcile Sweep - Scheduled Lambda (EventBridge, daily)

Re-runs reconciliation for every profile linked to a Stripe customer. Covers
webhooks that were never delivered or whose handler failed after the event
was claimed; those are not redelivered for processing.
"""

import logging
import os

from shared import config
from shared.billing_utils import iter_linked_profiles
from shared.errors import BillingError
from shared.logging_utils import billing_context, configure_structured_logging
from shared.metrics import emit_metric
from shared.reconciler import reconcile_user
from shared.stripe_client import configure_stripe

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

SWEEP_MAX_PROFILES = int(os.environ.get("SWEEP_MAX_PROFILES") or 1000)


def handler(event, context):
    """
    Lambda handler for the scheduled reconcile sweep.

    Returns:
        {"processed": int, "reconciled": int, "failed": int}
    """
    configure_structured_logging()

    stripe_api_key, _ = config.get_stripe_secrets()
    if not stripe_api_key:
        logger.error("Stripe API key not configured")
        return {"processed": 0, "reconciled": 0, "failed": 0, "error": "Stripe not configured"}

    configure_stripe(stripe_api_key)
    price_tiers = config.load_price_tiers()

    processed = 0
    reconciled = 0
    failed = 0

    for profile in iter_linked_profiles(limit=SWEEP_MAX_PROFILES):
        processed += 1
        user_id = profile["pk"]
        customer_id = profile["stripe_customer_id"]

        try:
            reconcile_user(user_id, customer_id=customer_id, price_tiers=price_tiers)
            reconciled += 1
        except BillingError as e:
            failed += 1
            logger.warning(
                f"Sweep reconcile failed: {e.code}",
                extra=billing_context(customer_id=customer_id, user_id=user_id, operation="sweep"),
            )
        except Exception as e:
            failed += 1
            logger.error(
                f"Sweep reconcile error: {e}",
                extra=billing_context(customer_id=customer_id, user_id=user_id, operation="sweep"),
            )

    logger.info(f"Reconcile sweep complete: {processed} processed, {reconciled} reconciled, {failed} failed")
    emit_metric("SweepReconciled", value=reconciled)
    if failed:
        emit_metric("SweepFailed", value=failed)

    return {"processed": processed, "reconciled": reconciled, "failed": failed}
