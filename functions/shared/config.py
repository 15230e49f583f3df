"""
Environment-driven configuration for the billing functions.

Table names and secret ARNs are read once at import, as every Lambda does.
The price->tier map is built by load_price_tiers() and passed explicitly to
the reconciler so it never reads process environment itself.
"""

import json
import logging
import os
import time
from typing import Mapping, Optional

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.constants import (
    DEFAULT_STRIPE_MAX_NETWORK_RETRIES,
    DEFAULT_STRIPE_TIMEOUT,
    DEFAULT_WEBHOOK_TOLERANCE,
    Tier,
)

logger = logging.getLogger(__name__)

PROFILES_TABLE = os.environ.get("PROFILES_TABLE", "tierbill-profiles")
BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "tierbill-billing-events")

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")

WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS") or DEFAULT_WEBHOOK_TOLERANCE)
STRIPE_TIMEOUT_SECONDS = float(os.environ.get("STRIPE_TIMEOUT_SECONDS") or DEFAULT_STRIPE_TIMEOUT)
STRIPE_MAX_NETWORK_RETRIES = int(
    os.environ.get("STRIPE_MAX_NETWORK_RETRIES") or DEFAULT_STRIPE_MAX_NETWORK_RETRIES
)

# Env var name -> tier
PRICE_ENV_VARS = {
    "STRIPE_PRICE_BABY": Tier.BABY,
    "STRIPE_PRICE_PREMIUM": Tier.PREMIUM,
    "STRIPE_PRICE_PRO": Tier.PRO,
}

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0
STRIPE_SECRETS_CACHE_TTL = 300  # 5 minutes


def load_price_tiers(environ: Optional[Mapping[str, str]] = None) -> dict[str, Tier]:
    """Build the price id -> tier map from environment.

    Empty values are skipped (deploy tooling sets "" when a price is not
    configured) so an empty price id can never map to a paid tier.
    """
    environ = os.environ if environ is None else environ
    price_tiers = {}
    for env_var, tier in PRICE_ENV_VARS.items():
        price_id = (environ.get(env_var) or "").strip()
        if price_id:
            price_tiers[price_id] = tier
    return price_tiers


def _read_secret(secret_arn: str, json_field: str) -> str | None:
    response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value or None
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or secret_value
    return secret_value


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook secret (cached with TTL).

    Secrets Manager is authoritative; STRIPE_API_KEY / STRIPE_WEBHOOK_SECRET
    environment variables are used when no ARN is configured (local runs).
    """
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = None
    webhook_secret = None

    if STRIPE_SECRET_ARN:
        try:
            api_key = _read_secret(STRIPE_SECRET_ARN, "key")
        except ClientError as e:
            logger.error(f"Failed to retrieve Stripe API key: {e}")
    else:
        api_key = os.environ.get("STRIPE_API_KEY")

    if STRIPE_WEBHOOK_SECRET_ARN:
        try:
            webhook_secret = _read_secret(STRIPE_WEBHOOK_SECRET_ARN, "secret")
        except ClientError as e:
            logger.error(f"Failed to retrieve Stripe webhook secret: {e}")
    else:
        webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET")

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def reset_secrets_cache():
    """Drop cached secrets. Used in tests."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0
