from __future__ import annotations

import logging
import os
from typing import Mapping

from src.domain.entities.entitlement_event import CanonicalEvent, EntitlementIntent
from src.domain.errors import MalformedPayload, ProviderApiUnavailable
from src.infrastructure.payments.base import (
    CheckoutSession,
    PaymentProvider,
    allow_unsigned,
    dig,
    header,
    load_json,
    parse_timestamp,
)
from src.infrastructure.payments.paypal_api import PayPalApi, PayPalApiError

logger = logging.getLogger(__name__)

_TRANSMISSION_HEADERS = {
    "transmission_id": "PayPal-Transmission-Id",
    "transmission_time": "PayPal-Transmission-Time",
    "cert_url": "PayPal-Cert-Url",
    "auth_algo": "PayPal-Auth-Algo",
    "transmission_sig": "PayPal-Transmission-Sig",
}

_EVENT_INTENTS = {
    "BILLING.SUBSCRIPTION.ACTIVATED": EntitlementIntent.ACTIVATE,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": EntitlementIntent.ACTIVATE,
    "BILLING.SUBSCRIPTION.CANCELLED": EntitlementIntent.DEACTIVATE,
    "BILLING.SUBSCRIPTION.SUSPENDED": EntitlementIntent.DEACTIVATE,
    "BILLING.SUBSCRIPTION.EXPIRED": EntitlementIntent.DEACTIVATE,
    "PAYMENT.SALE.COMPLETED": EntitlementIntent.PAYMENT_CONFIRMED,
}


class PayPalProvider(PaymentProvider):
    """PayPal subscriptions.

    Webhooks are not HMAC-signed; PayPal verifies them for us through its
    REST API, which needs an OAuth token first. In sandbox mode an
    unreachable verification API is tolerated (sandbox is flaky); in live
    mode it rejects the delivery so PayPal retries later.
    """

    name = "paypal"
    signature_header = "PayPal-Transmission-Sig"

    def __init__(
        self,
        api: PayPalApi | None = None,
        webhook_id: str | None = None,
        plan_id: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> None:
        self.api = api or PayPalApi()
        self.webhook_id = webhook_id or os.getenv("PAYPAL_WEBHOOK_ID")
        self.plan_id = plan_id or os.getenv("PAYPAL_PLAN_ID")
        self.success_url = success_url or os.getenv(
            "CHECKOUT_SUCCESS_URL", "http://localhost:3000/premium/success"
        )
        self.cancel_url = cancel_url or os.getenv(
            "CHECKOUT_CANCEL_URL", "http://localhost:3000/premium"
        )

    def verify(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_id or not self.api.configured:
            return allow_unsigned(self.name)
        transmission = {key: header(headers, name) for key, name in _TRANSMISSION_HEADERS.items()}
        if not transmission["transmission_sig"]:
            logger.warning("Missing PayPal transmission headers")
            return False
        try:
            event = load_json(body)
        except MalformedPayload:
            return False

        try:
            status = self.api.verify_webhook_signature(transmission, self.webhook_id, event)
        except PayPalApiError as exc:
            if exc.is_outage and self.api.is_sandbox:
                logger.warning("PayPal verification unavailable, continuing in sandbox: %s", exc)
                return True
            logger.error("PayPal verification call failed: %s", exc)
            return False

        if status != "SUCCESS":
            logger.warning("PayPal verification status %s", status)
            return False
        return True

    def parse(self, body: bytes) -> CanonicalEvent:
        event = load_json(body)
        event_type = event.get("event_type")
        resource = event.get("resource")
        if not event_type or not isinstance(resource, dict):
            raise MalformedPayload("PayPal event missing event_type or resource")

        intent = _EVENT_INTENTS.get(event_type, EntitlementIntent.UNKNOWN)
        occurred_at = parse_timestamp(event.get("create_time"))

        if intent is EntitlementIntent.PAYMENT_CONFIRMED:
            return CanonicalEvent(
                intent=intent,
                event_type=event_type,
                subscription_id=resource.get("billing_agreement_id"),
                user_id=resource.get("custom") or None,
                occurred_at=occurred_at,
            )

        return CanonicalEvent(
            intent=intent,
            event_type=event_type,
            subscription_id=resource.get("id"),
            user_id=resource.get("custom_id") or None,
            email=dig(resource, "subscriber", "email_address"),
            customer_id=dig(resource, "subscriber", "payer_id"),
            status=resource.get("status"),
            occurred_at=occurred_at,
        )

    def create_checkout(self, user_id: str, email: str) -> CheckoutSession:
        if not self.plan_id:
            raise ProviderApiUnavailable("PAYPAL_PLAN_ID must be set")
        subscription = self.api.create_subscription(
            plan_id=self.plan_id,
            user_id=user_id,
            email=email,
            return_url=self.success_url,
            cancel_url=self.cancel_url,
        )
        approve = next(
            (link["href"] for link in subscription.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not approve:
            raise ProviderApiUnavailable("PayPal subscription has no approve link")
        return CheckoutSession(url=approve, session_id=subscription.get("id"), provider=self.name)

    def close(self) -> None:
        self.api.close()
