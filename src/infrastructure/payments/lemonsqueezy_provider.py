from __future__ import annotations

import logging
import os
from typing import Mapping

import httpx

from src.domain.entities.entitlement_event import CanonicalEvent, EntitlementIntent
from src.domain.errors import MalformedPayload, ProviderApiUnavailable
from src.infrastructure.payments.base import (
    HTTP_TIMEOUT_SECONDS,
    USER_ID_KEY,
    CheckoutSession,
    PaymentProvider,
    allow_unsigned,
    dig,
    header,
    hmac_sha256_hex_matches,
    load_json,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

API_URL = "https://api.lemonsqueezy.com/v1"

_EVENT_INTENTS = {
    "subscription_created": EntitlementIntent.ACTIVATE,
    "subscription_resumed": EntitlementIntent.ACTIVATE,
    "subscription_unpaused": EntitlementIntent.ACTIVATE,
    "subscription_cancelled": EntitlementIntent.DEACTIVATE,
    "subscription_expired": EntitlementIntent.DEACTIVATE,
    "subscription_paused": EntitlementIntent.DEACTIVATE,
    "subscription_payment_success": EntitlementIntent.PAYMENT_CONFIRMED,
}

_STATUS_INTENTS = {
    "active": EntitlementIntent.ACTIVATE,
    "on_trial": EntitlementIntent.ACTIVATE,
    "cancelled": EntitlementIntent.DEACTIVATE,
    "expired": EntitlementIntent.DEACTIVATE,
    "paused": EntitlementIntent.DEACTIVATE,
}


class LemonSqueezyProvider(PaymentProvider):
    name = "lemonsqueezy"
    signature_header = "X-Signature"

    def __init__(
        self,
        webhook_secret: str | None = None,
        api_key: str | None = None,
        store_id: str | None = None,
        variant_id: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.webhook_secret = webhook_secret or os.getenv("LEMONSQUEEZY_WEBHOOK_SECRET")
        self.api_key = api_key or os.getenv("LEMONSQUEEZY_API_KEY")
        self.store_id = store_id or os.getenv("LEMONSQUEEZY_STORE_ID")
        self.variant_id = variant_id or os.getenv("LEMONSQUEEZY_VARIANT_ID")
        self._http = http_client or httpx.Client(timeout=HTTP_TIMEOUT_SECONDS)

    def verify(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return allow_unsigned(self.name)
        return hmac_sha256_hex_matches(
            self.webhook_secret, body, header(headers, self.signature_header)
        )

    def parse(self, body: bytes) -> CanonicalEvent:
        event = load_json(body)
        event_name = dig(event, "meta", "event_name")
        data = event.get("data")
        if not event_name or not isinstance(data, dict):
            raise MalformedPayload("Lemon Squeezy event missing meta.event_name or data")

        attributes = data.get("attributes") or {}
        status = attributes.get("status")
        if event_name == "subscription_updated":
            intent = _STATUS_INTENTS.get(status, EntitlementIntent.UNKNOWN)
        else:
            intent = _EVENT_INTENTS.get(event_name, EntitlementIntent.UNKNOWN)

        # Invoices carry the subscription as an attribute; subscriptions are the resource
        if intent is EntitlementIntent.PAYMENT_CONFIRMED:
            subscription_id = attributes.get("subscription_id")
        elif data.get("type") == "subscriptions":
            subscription_id = data.get("id")
        else:
            subscription_id = None

        return CanonicalEvent(
            intent=intent,
            event_type=event_name,
            subscription_id=str(subscription_id) if subscription_id is not None else None,
            user_id=dig(event, "meta", "custom_data", USER_ID_KEY),
            email=attributes.get("user_email"),
            customer_id=(
                str(attributes["customer_id"]) if attributes.get("customer_id") is not None else None
            ),
            status=status,
            occurred_at=parse_timestamp(attributes.get("updated_at")),
        )

    def create_checkout(self, user_id: str, email: str) -> CheckoutSession:
        if not (self.api_key and self.store_id and self.variant_id):
            raise ProviderApiUnavailable(
                "LEMONSQUEEZY_API_KEY, LEMONSQUEEZY_STORE_ID and LEMONSQUEEZY_VARIANT_ID must be set"
            )
        payload = {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "checkout_data": {"email": email, "custom": {USER_ID_KEY: user_id}},
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": str(self.store_id)}},
                    "variant": {"data": {"type": "variants", "id": str(self.variant_id)}},
                },
            }
        }
        try:
            response = self._http.post(
                f"{API_URL}/checkouts",
                json=payload,
                headers={
                    "Accept": "application/vnd.api+json",
                    "Content-Type": "application/vnd.api+json",
                    "Authorization": f"Bearer {self.api_key}",
                },
            )
            response.raise_for_status()
            data = response.json().get("data") or {}
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderApiUnavailable(f"Lemon Squeezy checkout failed: {exc}") from exc

        url = dig(data, "attributes", "url")
        if not url:
            raise ProviderApiUnavailable("Lemon Squeezy checkout has no url")
        return CheckoutSession(url=url, session_id=data.get("id"), provider=self.name)

    def close(self) -> None:
        self._http.close()
