from __future__ import annotations

import logging
import os
from typing import Any, Mapping

import stripe

from src.domain.entities.entitlement_event import CanonicalEvent, EntitlementIntent
from src.domain.errors import MalformedPayload, ProviderApiUnavailable
from src.infrastructure.payments.base import (
    USER_ID_KEY,
    CheckoutSession,
    PaymentProvider,
    allow_unsigned,
    dig,
    header,
    load_json,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

_ACTIVE_STATUSES = {"active", "trialing"}
_ENDED_STATUSES = {"canceled", "unpaid", "incomplete_expired", "paused"}


class StripeProvider(PaymentProvider):
    name = "stripe"
    signature_header = "Stripe-Signature"

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        price_id: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> None:
        self.api_key = api_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.price_id = price_id or os.getenv("STRIPE_PRICE_ID")
        self.success_url = success_url or os.getenv(
            "CHECKOUT_SUCCESS_URL", "http://localhost:3000/premium/success"
        )
        self.cancel_url = cancel_url or os.getenv(
            "CHECKOUT_CANCEL_URL", "http://localhost:3000/premium"
        )

    def verify(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return allow_unsigned(self.name)
        signature = header(headers, self.signature_header)
        if not signature:
            logger.warning("Missing Stripe-Signature header")
            return False
        try:
            stripe.WebhookSignature.verify_header(
                body.decode("utf-8"),
                signature,
                self.webhook_secret,
                tolerance=SIGNATURE_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("Stripe signature rejected: %s", exc)
            return False
        return True

    def parse(self, body: bytes) -> CanonicalEvent:
        event = load_json(body)
        event_type = event.get("type")
        obj = dig(event, "data", "object")
        if not event_type or not isinstance(obj, dict):
            raise MalformedPayload("Stripe event missing type or data.object")

        occurred_at = parse_timestamp(event.get("created"))
        intent = EntitlementIntent.UNKNOWN

        if event_type == "checkout.session.completed":
            return CanonicalEvent(
                intent=EntitlementIntent.ACTIVATE,
                event_type=event_type,
                subscription_id=obj.get("subscription"),
                user_id=dig(obj, "metadata", USER_ID_KEY) or obj.get("client_reference_id"),
                email=dig(obj, "customer_details", "email") or obj.get("customer_email"),
                customer_id=obj.get("customer"),
                status="active",
                occurred_at=occurred_at,
            )

        if event_type.startswith("customer.subscription."):
            status = obj.get("status")
            if event_type in ("customer.subscription.deleted", "customer.subscription.paused"):
                intent = EntitlementIntent.DEACTIVATE
            elif status in _ACTIVE_STATUSES:
                intent = EntitlementIntent.ACTIVATE
            elif status in _ENDED_STATUSES:
                intent = EntitlementIntent.DEACTIVATE
            return CanonicalEvent(
                intent=intent,
                event_type=event_type,
                subscription_id=obj.get("id"),
                user_id=dig(obj, "metadata", USER_ID_KEY),
                customer_id=obj.get("customer"),
                status=status,
                occurred_at=occurred_at,
            )

        if event_type in ("invoice.paid", "invoice.payment_succeeded"):
            return CanonicalEvent(
                intent=EntitlementIntent.PAYMENT_CONFIRMED,
                event_type=event_type,
                subscription_id=_invoice_subscription(obj),
                user_id=dig(obj, "subscription_details", "metadata", USER_ID_KEY),
                email=obj.get("customer_email"),
                customer_id=obj.get("customer"),
                occurred_at=occurred_at,
            )

        return CanonicalEvent(intent=intent, event_type=event_type, occurred_at=occurred_at)

    def create_checkout(self, user_id: str, email: str) -> CheckoutSession:
        if not self.api_key or not self.price_id:
            raise ProviderApiUnavailable("STRIPE_SECRET_KEY and STRIPE_PRICE_ID must be set")
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="subscription",
                line_items=[{"price": self.price_id, "quantity": 1}],
                customer_email=email,
                client_reference_id=user_id,
                metadata={USER_ID_KEY: user_id},
                subscription_data={"metadata": {USER_ID_KEY: user_id}},
                success_url=self.success_url,
                cancel_url=self.cancel_url,
            )
        except stripe.StripeError as exc:
            raise ProviderApiUnavailable(f"Stripe checkout failed: {exc}") from exc
        return CheckoutSession(url=session.url, session_id=session.id, provider=self.name)


def _invoice_subscription(invoice: dict[str, Any]) -> str | None:
    # Newer API versions moved the subscription under parent.subscription_details
    return invoice.get("subscription") or dig(
        invoice, "parent", "subscription_details", "subscription"
    )
