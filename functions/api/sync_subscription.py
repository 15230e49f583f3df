"""
Subscription Sync Endpoint - POST /billing/sync

Re-derives the caller's subscription from Stripe on demand (e.g. when the
billing page loads after returning from checkout). Requires an API Gateway
authorizer; the user id is taken from its claims.
"""

import logging

from shared import config
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import error_response, success_response
from shared.stripe_client import configure_stripe
from shared.sync import cached_result, force_sync

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _get_origin(event: dict) -> str | None:
    """Extract Origin header from request."""
    headers = event.get("headers", {}) or {}
    return headers.get("origin") or headers.get("Origin")


def _get_user_id(event: dict) -> str | None:
    """User id from REST (claims / principalId) or HTTP API (jwt.claims) authorizers."""
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = authorizer.get("claims") or (authorizer.get("jwt") or {}).get("claims") or {}
    return claims.get("sub") or authorizer.get("principalId")


def handler(event, context):
    """
    Lambda handler for POST /billing/sync.

    No request body required.

    Returns:
    {
        "success": true,
        "subscription": {"status": "active", "plan_tier": "premium", ...},
        "error": null,
        "cached": false
    }
    """
    configure_structured_logging()
    set_request_id(event)
    origin = _get_origin(event)

    user_id = _get_user_id(event)
    if not user_id:
        return error_response(401, "unauthorized", "Authentication required", origin=origin)

    stripe_api_key, _ = config.get_stripe_secrets()
    if not stripe_api_key:
        logger.error("Stripe API key not configured")
        result = cached_result(user_id, "Payment system not configured")
    else:
        configure_stripe(stripe_api_key)
        result = force_sync(user_id)

    logger.info(
        f"Subscription sync for {user_id}: success={result.success} cached={result.cached}",
        extra={"user_id": user_id},
    )
    return success_response(result.to_dict(), origin=origin)
