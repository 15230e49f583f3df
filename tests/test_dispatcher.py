"""
Tests for webhook event dispatch and the response policy.
"""

import json
from unittest.mock import patch

import stripe

from conftest import make_event_payload, seed_profile, stripe_subscription, subscription_page
from shared.billing_utils import get_profile
from shared.dispatcher import (
    OUTCOME_DUPLICATE,
    OUTCOME_HANDLED,
    OUTCOME_HANDLER_FAILED,
    OUTCOME_INTERNAL_FAULT,
    OUTCOME_INVALID_PAYLOAD,
    OUTCOME_INVALID_SIGNATURE,
    OUTCOME_NOT_CONFIGURED,
    dispatch_event,
    response_for,
)
from shared.identity import get_link_owner
from shared.sync import force_sync
from shared.webhook_events import parse_event


def _event(event_type, obj, event_id="evt_1"):
    return parse_event(make_event_payload(event_id, event_type, obj))


class TestCheckoutCompleted:
    def test_links_customer_from_metadata(self, profiles_table, price_tiers):
        event = _event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "customer": "cus_1",
                "mode": "subscription",
                "amount_total": 2000,
                "currency": "usd",
                "customer_details": {"email": "buyer@example.com"},
            },
        )
        customer = {"id": "cus_1", "metadata": {"user_id": "u_1", "app_id": "app_main"}}

        with patch("stripe.Customer.retrieve", return_value=customer):
            result = dispatch_event(event, price_tiers)

        assert result.ok is True
        assert result.user_id == "u_1"
        assert result.audit_type == "subscription"
        assert result.amount == 2000
        assert result.currency == "usd"
        profile = get_profile("u_1")
        assert profile["stripe_customer_id"] == "cus_1"
        assert profile["billing_email"] == "buyer@example.com"
        assert profile["app_id"] == "app_main"
        assert get_link_owner("cus_1") == "u_1"

    def test_one_time_payment_audit_type(self, profiles_table, price_tiers):
        event = _event(
            "checkout.session.completed",
            {"id": "cs_1", "customer": "cus_1", "mode": "payment", "amount_total": 500, "currency": "usd"},
        )

        with patch("stripe.Customer.retrieve", return_value={"metadata": {"user_id": "u_1"}}):
            result = dispatch_event(event, price_tiers)

        assert result.audit_type == "one_time"
        assert result.amount == 500

    def test_falls_back_to_existing_link(self, profiles_table, price_tiers):
        seed_profile(profiles_table, "u_1", customer_id="cus_1")
        event = _event("checkout.session.completed", {"id": "cs_1", "customer": "cus_1", "mode": "subscription"})

        with patch("stripe.Customer.retrieve", return_value={"metadata": {}}):
            result = dispatch_event(event, price_tiers)

        assert result.user_id == "u_1"

    def test_unknown_customer_records_without_user(self, profiles_table, price_tiers):
        event = _event("checkout.session.completed", {"id": "cs_1", "customer": "cus_1", "mode": "payment"})

        with patch("stripe.Customer.retrieve", return_value={"metadata": {}}):
            result = dispatch_event(event, price_tiers)

        assert result.ok is True
        assert result.user_id is None
        assert get_link_owner("cus_1") is None

    def test_guest_checkout_without_customer(self, profiles_table, price_tiers):
        event = _event("checkout.session.completed", {"id": "cs_1", "mode": "payment", "amount_total": 900})

        with patch("stripe.Customer.retrieve") as mock_retrieve:
            result = dispatch_event(event, price_tiers)

        mock_retrieve.assert_not_called()
        assert result.ok is True
        assert result.amount == 900

    def test_link_conflict_is_handler_failure(self, profiles_table, price_tiers):
        seed_profile(profiles_table, "u_owner", customer_id="cus_1")
        event = _event(
            "checkout.session.completed",
            {"id": "cs_1", "customer": "cus_1", "mode": "subscription", "amount_total": 2000, "currency": "usd"},
        )

        with patch("stripe.Customer.retrieve", return_value={"metadata": {"user_id": "u_intruder"}}):
            result = dispatch_event(event, price_tiers)

        assert result.ok is False
        assert result.error == "customer_link_conflict"
        assert result.amount == 2000
        assert get_link_owner("cus_1") == "u_owner"
        assert get_profile("u_intruder") is None


class TestSubscriptionChanged:
    def test_reconciles_resolved_user(self, profiles_table, price_tiers):
        seed_profile(profiles_table, "u_1", customer_id="cus_1")
        event = _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_1", "status": "active"})
        page = subscription_page(stripe_subscription("sub_1", "active", "price_premium"))

        with patch("stripe.Subscription.list", return_value=page):
            result = dispatch_event(event, price_tiers)

        assert result.ok is True
        assert result.user_id == "u_1"
        assert result.audit_type == "subscription"
        assert get_profile("u_1")["subscription_tier"] == "premium"

    def test_state_comes_from_live_read_not_event_body(self, profiles_table, price_tiers):
        """An out-of-order 'deleted' event still yields the live state."""
        seed_profile(profiles_table, "u_1", customer_id="cus_1")
        event = _event("customer.subscription.deleted", {"id": "sub_old", "customer": "cus_1", "status": "canceled"})
        page = subscription_page(
            stripe_subscription("sub_old", "canceled", "price_baby"),
            stripe_subscription("sub_new", "active", "price_pro"),
        )

        with patch("stripe.Subscription.list", return_value=page):
            dispatch_event(event, price_tiers)

        assert get_profile("u_1")["subscription_tier"] == "pro"

    def test_metadata_user_is_linked_before_reconcile(self, profiles_table, price_tiers):
        seed_profile(profiles_table, "u_1")
        event = _event("customer.subscription.created", {"id": "sub_1", "customer": "cus_1"})
        page = subscription_page(stripe_subscription("sub_1", "active", "price_premium"))

        with patch("stripe.Customer.retrieve", return_value={"id": "cus_1", "metadata": {"user_id": "u_1"}}), \
                patch("stripe.Subscription.list", return_value=page):
            result = dispatch_event(event, price_tiers)
            synced = force_sync("u_1", price_tiers)

        assert result.ok is True
        assert result.user_id == "u_1"
        profile = get_profile("u_1")
        assert profile["stripe_customer_id"] == "cus_1"
        assert profile["subscription_tier"] == "premium"
        assert get_link_owner("cus_1") == "u_1"
        assert synced.subscription["plan_tier"] == "premium"

    def test_metadata_user_linked_to_other_customer_is_not_reconciled(self, profiles_table, price_tiers):
        seed_profile(profiles_table, "u_1", customer_id="cus_a")
        pages = {
            "cus_a": subscription_page(stripe_subscription("sub_a", "active", "price_pro")),
            "cus_b": subscription_page(),
        }
        with patch("stripe.Subscription.list", side_effect=lambda **kw: pages[kw["customer"]]):
            force_sync("u_1", price_tiers)
            event = _event("customer.subscription.deleted", {"id": "sub_b", "customer": "cus_b"})

            with patch("stripe.Customer.retrieve", return_value={"id": "cus_b", "metadata": {"user_id": "u_1"}}):
                result = dispatch_event(event, price_tiers)
            after_webhook = get_profile("u_1")
            synced = force_sync("u_1", price_tiers)

        assert result.ok is True
        assert result.user_id is None
        assert after_webhook["stripe_customer_id"] == "cus_a"
        assert after_webhook["subscription_tier"] == "pro"
        assert synced.subscription["plan_tier"] == after_webhook["subscription_tier"]
        assert get_link_owner("cus_b") is None

    def test_metadata_user_with_foreign_claim_fails_without_reconcile(self, profiles_table, price_tiers):
        seed_profile(profiles_table, "u_1", subscription_tier="free")
        profiles_table.put_item(Item={"pk": "CUSTOMER#cus_1", "sk": "CUSTOMER_LINK", "user_id": "u_2"})
        event = _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_1"})

        with patch("stripe.Customer.retrieve", return_value={"id": "cus_1", "metadata": {"user_id": "u_1"}}), \
                patch("stripe.Subscription.list") as mock_list, \
                patch("shared.identity.send_operator_alert"):
            result = dispatch_event(event, price_tiers)

        assert result.ok is False
        assert result.error == "customer_link_conflict"
        mock_list.assert_not_called()
        assert get_profile("u_1")["subscription_tier"] == "free"

    def test_unresolved_customer_is_ok_without_user(self, profiles_table, price_tiers):
        event = _event("customer.subscription.created", {"id": "sub_1", "customer": "cus_ghost"})

        with patch("stripe.Customer.retrieve", return_value={"metadata": {}}), \
                patch("stripe.Subscription.list") as mock_list:
            result = dispatch_event(event, price_tiers)

        assert result.ok is True
        assert result.user_id is None
        mock_list.assert_not_called()

    def test_provider_failure_is_captured(self, profiles_table, price_tiers):
        seed_profile(profiles_table, "u_1", customer_id="cus_1", subscription_tier="baby", subscription_status="active")
        event = _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_1"})

        with patch("stripe.Subscription.list", side_effect=stripe.APIConnectionError("down")):
            result = dispatch_event(event, price_tiers)

        assert result.ok is False
        assert result.error == "provider_unavailable"
        assert get_profile("u_1")["subscription_tier"] == "baby"

    def test_unexpected_exception_is_captured(self, profiles_table, price_tiers):
        event = _event("customer.subscription.updated", {"id": "sub_1", "customer": "cus_1"})

        with patch("shared.dispatcher.resolve_user", side_effect=RuntimeError("bug")):
            result = dispatch_event(event, price_tiers)

        assert result.ok is False
        assert result.error == "RuntimeError"


class TestInvoiceOutcome:
    def test_records_amount_without_touching_snapshot(self, profiles_table, price_tiers):
        seed_profile(profiles_table, "u_1", customer_id="cus_1", subscription_tier="pro", subscription_status="active")
        event = _event(
            "invoice.payment_failed", {"id": "in_1", "customer": "cus_1", "amount_due": 4900, "currency": "usd"}
        )

        with patch("stripe.Subscription.list") as mock_list:
            result = dispatch_event(event, price_tiers)

        mock_list.assert_not_called()
        assert result.ok is True
        assert result.audit_type == "invoice"
        assert result.user_id == "u_1"
        assert result.amount == 4900
        assert get_profile("u_1")["subscription_tier"] == "pro"


class TestUnhandled:
    def test_unknown_type_is_recorded_as_unhandled(self, mock_dynamodb, price_tiers):
        result = dispatch_event(_event("charge.refunded", {"id": "ch_1"}), price_tiers)

        assert result.ok is True
        assert result.audit_type == "unhandled"


class TestResponsePolicy:
    def test_success_outcomes(self):
        assert json.loads(response_for(OUTCOME_HANDLED)["body"]) == {"received": True}
        assert json.loads(response_for(OUTCOME_DUPLICATE)["body"]) == {"received": True, "duplicate": True}

    def test_handler_failure_is_acknowledged(self):
        response = response_for(OUTCOME_HANDLER_FAILED)

        assert response["statusCode"] == 200
        assert json.loads(response["body"]) == {"received": True, "processed": False}

    def test_rejections(self):
        assert response_for(OUTCOME_INVALID_SIGNATURE)["statusCode"] == 400
        assert json.loads(response_for(OUTCOME_INVALID_PAYLOAD)["body"])["error"]["code"] == "invalid_webhook_payload"
        assert response_for(OUTCOME_NOT_CONFIGURED)["statusCode"] == 500
        assert response_for(OUTCOME_INTERNAL_FAULT)["statusCode"] == 500

    def test_internal_fault_body(self):
        body = json.loads(response_for(OUTCOME_INTERNAL_FAULT)["body"])

        assert body == {"error": {"code": "internal_error", "message": "Webhook processing failed"}}
