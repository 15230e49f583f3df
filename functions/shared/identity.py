"""
Customer <-> user identity resolution.

The Stripe customer's metadata.user_id is the authoritative back-reference;
the profile's stripe_customer_id (and its GSI) is a cache of it. A separate
CUSTOMER#<id> claim item guarantees no two users ever hold the same customer.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from shared import config
from shared.aws_clients import get_dynamodb
from shared.billing_utils import get_profile
from shared.constants import CUSTOMER_LINK_PREFIX, CUSTOMER_LINK_SK, PROFILE_SK
from shared.errors import CustomerLinkConflictError
from shared.logging_utils import billing_context
from shared.metrics import send_operator_alert
from shared.stripe_client import retrieve_customer_metadata

logger = logging.getLogger(__name__)

CUSTOMER_INDEX = "stripe-customer-index"


def _profiles_table():
    return get_dynamodb().Table(config.PROFILES_TABLE)


def _link_key(customer_id: str) -> dict:
    return {"pk": f"{CUSTOMER_LINK_PREFIX}{customer_id}", "sk": CUSTOMER_LINK_SK}


def get_link_owner(customer_id: str, table=None) -> Optional[str]:
    """User id holding the link claim for a customer, if any."""
    if table is None:
        table = _profiles_table()
    response = table.get_item(Key=_link_key(customer_id))
    item = response.get("Item")
    return item.get("user_id") if item else None


def resolve_user_id(customer_id: str) -> Optional[str]:
    """Look up the user linked to a Stripe customer via the GSI.

    Returns None when no profile carries the customer id. DynamoDB errors
    propagate.
    """
    table = _profiles_table()
    response = table.query(
        IndexName=CUSTOMER_INDEX,
        KeyConditionExpression=Key("stripe_customer_id").eq(customer_id),
    )
    user_ids = [item["pk"] for item in response.get("Items", []) if item.get("sk") == PROFILE_SK]

    if not user_ids:
        return None
    if len(user_ids) == 1:
        return user_ids[0]

    # Only reachable through manual edits; the link claim decides
    owner = get_link_owner(customer_id, table=table)
    logger.error(
        f"Customer {customer_id} found on {len(user_ids)} profiles, using link owner {owner}",
        extra=billing_context(customer_id=customer_id, operation="user_lookup"),
    )
    return owner if owner in user_ids else None


def resolve_user_id_from_metadata(customer_id: str) -> Optional[str]:
    """Read the user id back-reference from the Stripe customer (live).

    Raises:
        ProviderUnavailableError: Stripe read failed
    """
    return retrieve_customer_metadata(customer_id)["user_id"]


def resolve_user(customer_id: str) -> Optional[str]:
    """GSI lookup first, then the customer metadata fallback.

    A user found only through metadata is linked to the customer before it is
    returned, so every later reconcile (webhook, sync or sweep) reads the same
    customer. A metadata user with no profile, or one already linked to a
    different customer, resolves to None and is left untouched.

    Raises:
        CustomerLinkConflictError: another user holds the customer's link claim
        ProviderUnavailableError: Stripe read failed
    """
    user_id = resolve_user_id(customer_id)
    if user_id:
        return user_id

    user_id = resolve_user_id_from_metadata(customer_id)
    if not user_id:
        return None

    context = billing_context(customer_id=customer_id, user_id=user_id, operation="user_lookup")
    profile = get_profile(user_id)
    if not profile:
        logger.warning("Customer metadata names a user with no profile", extra=context)
        return None

    linked_customer_id = profile.get("stripe_customer_id")
    if linked_customer_id and linked_customer_id != customer_id:
        logger.warning(
            f"Customer metadata names a user linked to {linked_customer_id}, not relinking",
            extra=context,
        )
        return None

    logger.info("Resolved user from customer metadata, restoring link", extra=context)
    link_customer(user_id, customer_id)
    return user_id


def link_customer(
    user_id: str,
    customer_id: str,
    billing_email: Optional[str] = None,
    app_id: Optional[str] = None,
) -> Optional[str]:
    """Bind a Stripe customer to a user.

    Claims the customer first, then upserts the profile. If the profile write
    fails, a claim created by this call is released again. Relinking the same
    pair is a no-op apart from refreshing billing_email. Relinking a user to a
    new customer releases the claim on the old one.

    Returns:
        The customer id the user was previously linked to, if different

    Raises:
        CustomerLinkConflictError: customer already belongs to another user;
            nothing is written
    """
    table = _profiles_table()
    now = datetime.now(timezone.utc).isoformat()
    context = billing_context(customer_id=customer_id, user_id=user_id, operation="link_customer")

    try:
        claim = table.put_item(
            Item={**_link_key(customer_id), "user_id": user_id, "linked_at": now},
            ConditionExpression="attribute_not_exists(pk) OR user_id = :uid",
            ExpressionAttributeValues={":uid": user_id},
            ReturnValues="ALL_OLD",
        )
    except ClientError as e:
        if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
            raise
        existing_user_id = get_link_owner(customer_id, table=table)
        logger.error(
            f"Customer {customer_id} already linked to another user",
            extra={**context, "existing_user_id": existing_user_id},
        )
        send_operator_alert(
            subject=f"Stripe customer link conflict: {customer_id}",
            message=(
                f"Customer {customer_id} is linked to user {existing_user_id}; "
                f"a link to user {user_id} was refused."
            ),
        )
        raise CustomerLinkConflictError(customer_id, existing_user_id, user_id) from e

    set_parts = ["stripe_customer_id = :cust_id", "customer_linked_at = :now"]
    values = {":cust_id": customer_id, ":now": now}
    if billing_email:
        set_parts.append("billing_email = :email")
        values[":email"] = billing_email
    if app_id:
        set_parts.append("app_id = :app_id")
        values[":app_id"] = app_id

    try:
        response = table.update_item(
            Key={"pk": user_id, "sk": PROFILE_SK},
            UpdateExpression="SET " + ", ".join(set_parts),
            ExpressionAttributeValues=values,
            ReturnValues="UPDATED_OLD",
        )
    except ClientError as e:
        # Only a claim created by this call is rolled back
        if "Attributes" not in claim:
            _release_link(customer_id, user_id, table)
        logger.error(f"Profile link write failed: {e.response['Error']['Code']}", extra=context)
        raise

    previous = (response.get("Attributes") or {}).get("stripe_customer_id")

    if previous and previous != customer_id:
        _release_link(previous, user_id, table)
        logger.info(f"User {user_id} relinked from {previous} to {customer_id}", extra=context)
        return previous

    logger.info(f"Customer {customer_id} linked to user {user_id}", extra=context)
    return None


def _release_link(customer_id: str, user_id: str, table) -> None:
    try:
        table.delete_item(
            Key=_link_key(customer_id),
            ConditionExpression="user_id = :uid",
            ExpressionAttributeValues={":uid": user_id},
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.warning(f"Link claim for {customer_id} not held by {user_id}, leaving it")
        else:
            raise
