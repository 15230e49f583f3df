"""Profile reads and writes for billing state."""

import logging
from datetime import datetime, timezone
from typing import Iterator, Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from shared import config
from shared.aws_clients import get_dynamodb
from shared.constants import NO_SUBSCRIPTION_STATUS, PROFILE_SK, THROTTLING_ERRORS, Tier
from shared.subscriptions import FREE_SNAPSHOT, CanonicalSnapshot, iso_to_epoch

logger = logging.getLogger(__name__)


def _profiles_table():
    return get_dynamodb().Table(config.PROFILES_TABLE)


def get_profile(user_id: str, table=None) -> Optional[dict]:
    """Fetch a user's profile item, None if absent."""
    if table is None:
        table = _profiles_table()
    response = table.get_item(Key={"pk": user_id, "sk": PROFILE_SK})
    return response.get("Item")


def write_subscription_snapshot(
    user_id: str,
    snapshot: CanonicalSnapshot,
    table=None,
) -> str:
    """Overwrite the subscription columns of a profile with a snapshot.

    The write is unconditional: the snapshot is always derived from a fresh
    provider read, so last writer wins and every writer converges on the
    same state. Creates the profile item when it does not exist yet.

    Returns:
        The synced_at timestamp written
    """
    if table is None:
        table = _profiles_table()

    synced_at = datetime.now(timezone.utc).isoformat()
    try:
        table.update_item(
            Key={"pk": user_id, "sk": PROFILE_SK},
            UpdateExpression=(
                "SET subscription_status = :status, "
                "subscription_tier = :tier, "
                "subscription_price_id = :price_id, "
                "subscription_current_period_end = :period_end, "
                "subscription_id = :sub_id, "
                "subscription_synced_at = :now"
            ),
            ExpressionAttributeValues={
                ":status": snapshot.status,
                ":tier": snapshot.tier.label,
                ":price_id": snapshot.price_id,
                ":period_end": snapshot.current_period_end_iso,
                ":sub_id": snapshot.subscription_id,
                ":now": synced_at,
            },
        )
    except ClientError as e:
        error_code = e.response["Error"]["Code"]
        if error_code in THROTTLING_ERRORS:
            logger.warning(f"Throttled writing subscription snapshot for {user_id}")
        else:
            logger.error(f"Failed to write subscription snapshot for {user_id}: {e}")
        raise

    logger.info(
        f"Subscription snapshot written for {user_id}: {snapshot.tier.label} ({snapshot.status})",
        extra={"user_id": user_id, "tier": snapshot.tier.label, "status": snapshot.status},
    )
    return synced_at


def snapshot_from_profile(profile: Optional[dict]) -> CanonicalSnapshot:
    """Rebuild the stored snapshot from a profile item (free if never synced)."""
    if not profile or not profile.get("subscription_status"):
        return FREE_SNAPSHOT

    tier_label = profile.get("subscription_tier") or Tier.FREE.label
    try:
        tier = Tier[tier_label.upper()]
    except KeyError:
        logger.warning(f"Unknown stored tier {tier_label!r}, treating as free")
        tier = Tier.FREE

    return CanonicalSnapshot(
        status=profile.get("subscription_status") or NO_SUBSCRIPTION_STATUS,
        tier=tier,
        price_id=profile.get("subscription_price_id"),
        current_period_end=iso_to_epoch(profile.get("subscription_current_period_end")),
        subscription_id=profile.get("subscription_id"),
    )


def iter_linked_profiles(limit: Optional[int] = None, table=None) -> Iterator[dict]:
    """Scan profiles that carry a Stripe customer id.

    Args:
        limit: Stop after yielding this many profiles
        table: DynamoDB table resource. Fetched if not provided.
    """
    if table is None:
        table = _profiles_table()

    scan_kwargs = {
        "FilterExpression": Attr("sk").eq(PROFILE_SK) & Attr("stripe_customer_id").exists(),
        "ProjectionExpression": "pk, stripe_customer_id",
    }
    yielded = 0

    while True:
        response = table.scan(**scan_kwargs)
        for item in response.get("Items", []):
            if not item.get("stripe_customer_id"):
                continue
            yield item
            yielded += 1
            if limit is not None and yielded >= limit:
                return

        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return
        scan_kwargs["ExclusiveStartKey"] = last_key
