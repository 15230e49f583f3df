"""
Shared constants for tier billing.
"""

from enum import IntEnum


class Tier(IntEnum):
    """Subscription tiers. Integer value is the merge priority."""

    FREE = 0
    BABY = 1
    PREMIUM = 2
    PRO = 3

    @property
    def label(self) -> str:
        return self.name.lower()


# Statuses that count toward tier computation
ACTIVE_STATUSES = frozenset({"active", "trialing"})

# Stored status when the customer has no subscriptions
NO_SUBSCRIPTION_STATUS = "none"

# Webhook event types routed by the dispatcher
CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
INVOICE_PAID_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded"})
INVOICE_FAILED_EVENTS = frozenset({"invoice.payment_failed"})
INVOICE_EVENTS = INVOICE_PAID_EVENTS | INVOICE_FAILED_EVENTS

# Audit record types written to the event ledger
AUDIT_SUBSCRIPTION = "subscription"
AUDIT_ONE_TIME = "one_time"
AUDIT_INVOICE = "invoice"
AUDIT_UNHANDLED = "unhandled"

# Customer metadata keys set at customer creation time
USER_ID_METADATA_KEY = "user_id"
APP_ID_METADATA_KEY = "app_id"

# DynamoDB sort keys
PROFILE_SK = "PROFILE"
CUSTOMER_LINK_SK = "CUSTOMER_LINK"
EVENT_SK = "EVENT"
CUSTOMER_LINK_PREFIX = "CUSTOMER#"

# Stripe signature timestamp tolerance (seconds), matches Stripe's default
DEFAULT_WEBHOOK_TOLERANCE = 300

# Timeouts
DEFAULT_STRIPE_TIMEOUT = 10.0
DEFAULT_STRIPE_MAX_NETWORK_RETRIES = 2

# Page size for Subscription.list
STRIPE_LIST_PAGE_SIZE = 100

# DynamoDB throttling error codes, logged as warnings rather than errors
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
