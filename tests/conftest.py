"""
Shared pytest fixtures for tier billing tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_KEY = "sk_test_123"

PRICE_BABY = "price_baby"
PRICE_PREMIUM = "price_premium"
PRICE_PRO = "price_pro"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    from shared.aws_clients import reset_clients

    reset_clients()


@pytest.fixture(autouse=True)
def reset_stripe_secrets_cache():
    """Drop cached Stripe secrets so each test sees its own configuration."""
    from shared import config

    config.reset_secrets_cache()
    yield
    config.reset_secrets_cache()


@pytest.fixture
def stripe_env(monkeypatch):
    """Stripe key, webhook secret and price ids from environment (no ARNs)."""
    from shared import config

    monkeypatch.setattr(config, "STRIPE_SECRET_ARN", None)
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET_ARN", None)
    monkeypatch.setenv("STRIPE_API_KEY", STRIPE_API_KEY)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_PRICE_BABY", PRICE_BABY)
    monkeypatch.setenv("STRIPE_PRICE_PREMIUM", PRICE_PREMIUM)
    monkeypatch.setenv("STRIPE_PRICE_PRO", PRICE_PRO)


@pytest.fixture
def price_tiers():
    """Price id -> tier map used by reconciler tests."""
    from shared.constants import Tier

    return {PRICE_BABY: Tier.BABY, PRICE_PREMIUM: Tier.PREMIUM, PRICE_PRO: Tier.PRO}


def create_dynamodb_tables(dynamodb):
    """Create the profiles and billing events tables with their GSIs.

    Shared by unit test fixtures (mock_dynamodb) and the integration tests.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    # Profiles table: PROFILE items plus CUSTOMER# link claims
    dynamodb.create_table(
        TableName="tierbill-profiles",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "stripe_customer_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "stripe-customer-index",
                "KeySchema": [{"AttributeName": "stripe_customer_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Billing events table for webhook ledger / audit trail
    dynamodb.create_table(
        TableName="tierbill-billing-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # "EVENT"
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked AWS with the billing tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def profiles_table(mock_dynamodb):
    return mock_dynamodb.Table("tierbill-profiles")


@pytest.fixture
def events_table(mock_dynamodb):
    return mock_dynamodb.Table("tierbill-billing-events")


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "isBase64Encoded": False,
        "requestContext": {
            "requestId": "req-test-123",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


# =============================================================================
# Helpers
# =============================================================================


def seed_profile(table, user_id, customer_id=None, **fields):
    """Insert a profile item, and its customer link claim when linked."""
    item = {"pk": user_id, "sk": "PROFILE", **fields}
    if customer_id:
        item["stripe_customer_id"] = customer_id
        table.put_item(Item={"pk": f"CUSTOMER#{customer_id}", "sk": "CUSTOMER_LINK", "user_id": user_id})
    table.put_item(Item=item)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header value (t=...,v1=HMAC-SHA256)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event_payload(event_id: str, event_type: str, obj: dict, created: int = 1700000000) -> str:
    """Serialize a Stripe event envelope the way Stripe sends it."""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "livemode": False,
            "data": {"object": obj},
        }
    )


def stripe_subscription(
    sub_id: str,
    status: str,
    price_id: str,
    created: int = 1700000000,
    period_end: int = 1702592000,
) -> dict:
    """Subscription as returned by Subscription.list (period end on the item)."""
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "created": created,
        "items": {
            "data": [
                {
                    "id": f"si_{sub_id}",
                    "price": {"id": price_id},
                    "current_period_end": period_end,
                }
            ]
        },
    }


def subscription_page(*subscriptions, has_more: bool = False) -> dict:
    return {"object": "list", "data": list(subscriptions), "has_more": has_more}
