"""
Billing error taxonomy.

Every error carries a machine-readable code and the HTTP status it maps to
when it reaches an API Gateway boundary.
"""

import json
from typing import Optional


class BillingError(Exception):
    """Base class for billing errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class InvalidSignatureError(BillingError):
    """Webhook signature missing, malformed, wrong or expired. Permanent."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(
            code="invalid_signature",
            message=message,
            status_code=400,
        )


class InvalidPayloadError(BillingError):
    """Signed body does not parse into a known event shape. Permanent."""

    def __init__(self, message: str = "Invalid webhook payload"):
        super().__init__(
            code="invalid_webhook_payload",
            message=message,
            status_code=400,
        )


class CustomerNotLinkedError(BillingError):
    """No user is linked to the customer (or no customer to the user).

    Soft: callers log and continue.
    """

    def __init__(self, user_id: Optional[str] = None, customer_id: Optional[str] = None):
        details = {}
        if user_id:
            details["user_id"] = user_id
        if customer_id:
            details["customer_id"] = customer_id
        super().__init__(
            code="customer_not_linked",
            message="No Stripe customer linked",
            status_code=404,
            details=details,
        )
        self.user_id = user_id
        self.customer_id = customer_id


class CustomerLinkConflictError(BillingError):
    """Customer is already linked to a different user."""

    def __init__(self, customer_id: str, existing_user_id: Optional[str], requested_user_id: str):
        super().__init__(
            code="customer_link_conflict",
            message=f"Stripe customer {customer_id} is already linked to another user",
            status_code=409,
            details={"customer_id": customer_id},
        )
        self.customer_id = customer_id
        self.existing_user_id = existing_user_id
        self.requested_user_id = requested_user_id


class ProviderUnavailableError(BillingError):
    """Live Stripe read failed. Persisted state is left untouched."""

    def __init__(self, operation: str, message: str = "Payment provider unavailable", transient: bool = True):
        super().__init__(
            code="provider_unavailable",
            message=message,
            status_code=503,
            details={"operation": operation},
        )
        self.operation = operation
        self.transient = transient


class NotConfiguredError(BillingError):
    """Stripe credentials are missing from Secrets Manager and the environment."""

    def __init__(self, message: str = "Stripe not configured"):
        super().__init__(
            code="stripe_not_configured",
            message=message,
            status_code=500,
        )


class InternalFaultError(BillingError):
    """Unexpected failure before the event was claimed."""

    def __init__(self, message: str = "An internal error occurred"):
        super().__init__(
            code="internal_error",
            message=message,
            status_code=500,
        )
