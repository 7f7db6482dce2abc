"""
Tests for the entitlement reconciler, driven through the Stripe and Gumroad providers.
"""
from __future__ import annotations

from datetime import UTC, datetime
from urllib.parse import urlencode
from unittest.mock import MagicMock

import pytest

from src.application.use_cases.reconcile_entitlement import ReconcileEntitlementUseCase
from src.domain.errors import StoreWriteFailed
from src.infrastructure.payments.gumroad_provider import GumroadProvider

CHECKOUT_COMPLETED = {
    "id": "cs_1",
    "customer": "cus_1",
    "subscription": "sub_1",
    "customer_details": {"email": "pilot@example.com"},
    "metadata": {"supabase_user_id": "u1"},
}


@pytest.fixture()
def reconciler(stripe_provider, profiles):
    fixed = datetime(2026, 1, 1, tzinfo=UTC)
    return ReconcileEntitlementUseCase(stripe_provider, profiles, clock=lambda: fixed)


@pytest.fixture()
def seeded(profiles):
    profiles.upsert({"id": "u1", "email": "pilot@example.com"})
    return profiles


class TestActivation:
    def test_checkout_then_cancel(self, reconciler, seeded, stripe_delivery):
        """Checkout marks the user premium; deleting the subscription ends it."""
        result = reconciler.execute(*stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED))
        assert result.status_code == 200
        assert result.body == {"received": True}

        profile = seeded.get("u1")
        assert profile.is_premium is True
        assert profile.subscription_id("stripe") == "sub_1"
        assert profile.billing["stripe_customer_id"] == "cus_1"
        assert profile.premium_since == datetime.fromtimestamp(1_700_000_000, tz=UTC)

        deleted = {"id": "sub_1", "customer": "cus_1", "status": "canceled"}
        result = reconciler.execute(*stripe_delivery("customer.subscription.deleted", deleted))
        assert result.status_code == 200

        profile = seeded.get("u1")
        assert profile.is_premium is False
        assert profile.premium_ended is not None

    def test_redelivery_is_idempotent(self, reconciler, seeded, stripe_delivery):
        reconciler.execute(*stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED))
        once = seeded.get("u1")

        for _ in range(3):
            reconciler.execute(*stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED))

        assert seeded.get("u1") == once

    def test_redelivered_cancel_keeps_first_end_time(self, reconciler, seeded, stripe_delivery):
        reconciler.execute(*stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED))
        deleted = {"id": "sub_1", "status": "canceled"}
        reconciler.execute(*stripe_delivery("customer.subscription.deleted", deleted, created=1_700_000_100))
        ended = seeded.get("u1").premium_ended

        reconciler.execute(*stripe_delivery("customer.subscription.deleted", deleted, created=1_700_000_900))
        assert seeded.get("u1").premium_ended == ended

    def test_purchase_before_signup_creates_pending_row(self, reconciler, profiles, stripe_delivery):
        obj = {**CHECKOUT_COMPLETED, "metadata": {}, "customer_details": {"email": "new@example.com"}}
        result = reconciler.execute(*stripe_delivery("checkout.session.completed", obj))
        assert result.status_code == 200

        pending = profiles.find_one("email", "new@example.com")
        assert pending is not None
        assert pending.is_pending is True
        assert pending.is_premium is True
        assert pending.subscription_id("stripe") == "sub_1"

    def test_signed_up_user_found_through_auth(self, reconciler, profiles, stripe_delivery):
        """A registered user whose profile row has no email yet is not left pending."""
        profiles.auth_users["new@example.com"] = "u7"
        obj = {**CHECKOUT_COMPLETED, "metadata": {}, "customer_details": {"email": "New@Example.com"}}

        reconciler.execute(*stripe_delivery("checkout.session.completed", obj))

        profile = profiles.get("u7")
        assert profile.is_premium is True
        assert profile.is_pending is False
        assert profile.subscription_id("stripe") == "sub_1"
        assert profiles.find_one("email", "New@Example.com") is None

    def test_activation_without_user_or_email_writes_nothing(self, reconciler, profiles, stripe_delivery):
        obj = {"id": "cs_2", "customer": "cus_2", "subscription": "sub_3"}
        result = reconciler.execute(*stripe_delivery("checkout.session.completed", obj))

        assert result.status_code == 200
        assert profiles._mem == {}

        assert pending.subscription_id("stripe") == "sub_1"

    def test_unknown_trusted_id_falls_back_to_email(self, reconciler, profiles, stripe_delivery):
        reconciler.execute(*stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED))

        assert profiles.get("u1") is None
        pending = profiles.find_one("email", "pilot@example.com")
        assert pending.is_pending is True
        assert pending.is_premium is True

    def test_subscription_update_found_by_subscription_id(self, reconciler, seeded, stripe_delivery):
        reconciler.execute(*stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED))
        reconciler.execute(*stripe_delivery("customer.subscription.paused", {"id": "sub_1", "status": "paused"}))
        assert seeded.get("u1").is_premium is False

        resumed = {"id": "sub_1", "status": "active"}
        reconciler.execute(*stripe_delivery("customer.subscription.updated", resumed))
        profile = seeded.get("u1")
        assert profile.is_premium is True
        assert profile.premium_ended is None


class TestDeactivation:
    def test_unmatched_cancel_is_acknowledged(self, reconciler, profiles, stripe_delivery):
        deleted = {"id": "sub_missing", "status": "canceled"}
        result = reconciler.execute(*stripe_delivery("customer.subscription.deleted", deleted))
        assert result.status_code == 200
        assert profiles._mem == {}

    def test_cancel_of_old_subscription_is_ignored(self, reconciler, seeded, stripe_delivery):
        """A late cancel for a replaced subscription must not revoke the new one."""
        newer = {**CHECKOUT_COMPLETED, "subscription": "sub_2"}
        reconciler.execute(*stripe_delivery("checkout.session.completed", newer))

        stale = {"id": "sub_1", "status": "canceled", "metadata": {"supabase_user_id": "u1"}}
        result = reconciler.execute(*stripe_delivery("customer.subscription.deleted", stale))

        assert result.status_code == 200
        profile = seeded.get("u1")
        assert profile.is_premium is True
        assert profile.subscription_id("stripe") == "sub_2"


class TestPaymentConfirmed:
    def test_reasserts_premium(self, reconciler, seeded, stripe_delivery):
        reconciler.execute(*stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED))
        seeded.update("u1", {"is_premium": False})

        invoice = {"id": "in_1", "subscription": "sub_1", "customer": "cus_1"}
        reconciler.execute(*stripe_delivery("invoice.paid", invoice))
        assert seeded.get("u1").is_premium is True

    def test_no_write_when_already_premium(self, stripe_provider, stripe_delivery):
        store = MagicMock()
        store.get.return_value = None
        store.find_one.return_value = MagicMock(is_premium=True, id="u1")
        uc = ReconcileEntitlementUseCase(stripe_provider, store)

        invoice = {"id": "in_1", "subscription": "sub_1"}
        uc.execute(*stripe_delivery("invoice.payment_succeeded", invoice))

        store.upsert.assert_not_called()
        store.update.assert_not_called()

    def test_invoice_without_subscription_grants_nothing(self, reconciler, profiles, stripe_delivery):
        invoice = {"id": "in_9", "customer": "cus_9", "customer_email": "oneoff@example.com"}
        result = reconciler.execute(*stripe_delivery("invoice.paid", invoice))

        assert result.status_code == 200
        assert profiles._mem == {}

    def test_invoice_without_subscription_leaves_user_free(self, reconciler, profiles, stripe_delivery):
        profiles.upsert({"id": "u1", "email": "pilot@example.com", "stripe_customer_id": "cus_1"})
        invoice = {
            "id": "in_9",
            "customer": "cus_1",
            "customer_email": "pilot@example.com",
            "subscription_details": {"metadata": {"supabase_user_id": "u1"}},
        }
        reconciler.execute(*stripe_delivery("invoice.paid", invoice))

        profile = profiles.get("u1")
        assert profile.is_premium is False
        assert profile.subscription_id("stripe") is None


class TestRejection:
    def test_bad_signature_never_mutates(self, reconciler, seeded, stripe_delivery):
        body, _ = stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED)
        before = dict(seeded._mem)

        result = reconciler.execute(body, {"Stripe-Signature": "t=1,v1=deadbeef"})

        assert result.status_code == 400
        assert result.body == {"error": "Invalid signature"}
        assert seeded._mem == before
        assert seeded.get("u1").is_premium is False

    def test_missing_signature_header(self, reconciler, stripe_delivery):
        body, _ = stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED)
        assert reconciler.execute(body, {}).status_code == 400

    def test_malformed_body_after_valid_signature(self, reconciler, sign_stripe):
        body = b"{not json"
        result = reconciler.execute(body, sign_stripe(body))
        assert result.status_code == 400
        assert "Invalid JSON" in result.body["error"]

    def test_unknown_event_type_is_acknowledged(self, reconciler, profiles, stripe_delivery):
        result = reconciler.execute(*stripe_delivery("customer.tax_id.created", {"id": "txi_1"}))
        assert result.status_code == 200
        assert profiles._mem == {}


def test_store_failure_still_acknowledged(stripe_provider, stripe_delivery):
    store = MagicMock()
    store.get.side_effect = StoreWriteFailed("connection reset")
    uc = ReconcileEntitlementUseCase(stripe_provider, store)

    result = uc.execute(*stripe_delivery("checkout.session.completed", CHECKOUT_COMPLETED))

    assert result.status_code == 200
    assert result.body == {"received": True}


GUMROAD_FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


@pytest.fixture()
def gumroad(profiles):
    fixed = datetime(2026, 1, 1, tzinfo=UTC)
    return ReconcileEntitlementUseCase(GumroadProvider(seller_id="seller_1"), profiles, clock=lambda: fixed)


def gumroad_ping(**fields) -> tuple[bytes, dict]:
    return urlencode({"seller_id": "seller_1", **fields}).encode(), GUMROAD_FORM_HEADERS


class TestGumroadReconciliation:
    def test_trial_state_written_then_cleared(self, gumroad, seeded):
        gumroad.execute(
            *gumroad_ping(
                email="pilot@example.com",
                sale_id="sale_1",
                subscription_id="gsub_1",
                free_trial_ends_on="2026-02-01",
                **{"url_params[supabase_user_id]": "u1"},
            )
        )
        profile = seeded.get("u1")
        assert profile.is_premium is True
        assert profile.is_trial is True
        assert profile.trial_ends_at == datetime(2026, 2, 1, tzinfo=UTC)
        assert profile.subscription_status == "trialing"
        assert profile.premium_since == datetime(2026, 1, 1, tzinfo=UTC)

        gumroad.execute(
            *gumroad_ping(
                email="pilot@example.com",
                resource_name="subscription_ended",
                subscription_id="gsub_1",
            )
        )
        profile = seeded.get("u1")
        assert profile.is_premium is False
        assert profile.is_trial is False
        assert profile.subscription_status == "ended"
        assert profile.premium_ended == datetime(2026, 1, 1, tzinfo=UTC)

    def test_cancellation_without_subscription_found_by_customer_email(self, gumroad, profiles):
        profiles.upsert(
            {
                "id": "u1",
                "email": "login@example.com",
                "is_premium": True,
                "gumroad_subscription_id": "gsub_1",
                "gumroad_customer_email": "buyer@example.com",
            }
        )

        result = gumroad.execute(
            *gumroad_ping(email="buyer@example.com", resource_name="cancellation")
        )

        assert result.status_code == 200
        profile = profiles.get("u1")
        assert profile.is_premium is False
        assert profile.subscription_status == "cancelled"
        assert profile.subscription_id("gumroad") == "gsub_1"

    def test_recurring_charge_for_unknown_buyer_is_stored_pending(self, gumroad, profiles):
        result = gumroad.execute(
            *gumroad_ping(
                email="captain@example.com",
                subscription_id="gsub_9",
                is_recurring_charge="true",
            )
        )

        assert result.status_code == 200
        pending = profiles.find_one("email", "captain@example.com")
        assert pending.is_pending is True
        assert pending.is_premium is True
        assert pending.subscription_id("gumroad") == "gsub_9"

    def test_wrong_seller_rejected(self, gumroad, profiles):
        body = urlencode({"seller_id": "intruder", "email": "x@example.com", "sale_id": "s"}).encode()
        assert gumroad.execute(body, GUMROAD_FORM_HEADERS).status_code == 400
        assert profiles._mem == {}
