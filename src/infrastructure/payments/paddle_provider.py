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

LIVE_API_URL = "https://api.paddle.com"
SANDBOX_API_URL = "https://sandbox-api.paddle.com"


def extract_signature_field(signature: str, field: str = "h1") -> str | None:
    """Pull one ``key=value`` field out of a ``ts=...;h1=...`` header."""
    for part in signature.split(";"):
        key, sep, value = part.strip().partition("=")
        if sep and key == field:
            return value
    return None


class PaddleProvider(PaymentProvider):
    name = "paddle"
    signature_header = "Paddle-Signature"

    def __init__(
        self,
        webhook_secret: str | None = None,
        api_key: str | None = None,
        price_id: str | None = None,
        environment: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.webhook_secret = webhook_secret or os.getenv("PADDLE_WEBHOOK_SECRET")
        self.api_key = api_key or os.getenv("PADDLE_API_KEY")
        self.price_id = price_id or os.getenv("PADDLE_PRICE_ID")
        env = (environment or os.getenv("PADDLE_ENV", "sandbox")).lower()
        self.api_url = LIVE_API_URL if env in ("live", "production") else SANDBOX_API_URL
        self._http = http_client or httpx.Client(timeout=HTTP_TIMEOUT_SECONDS)

    def verify(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return allow_unsigned(self.name)
        signature = header(headers, self.signature_header)
        if not signature:
            logger.warning("Missing Paddle-Signature header")
            return False
        return hmac_sha256_hex_matches(
            self.webhook_secret, body, extract_signature_field(signature, "h1")
        )

    def parse(self, body: bytes) -> CanonicalEvent:
        event = load_json(body)
        event_type = event.get("event_type")
        data = event.get("data")
        if not event_type or not isinstance(data, dict):
            raise MalformedPayload("Paddle event missing event_type or data")

        status = data.get("status")
        occurred_at = parse_timestamp(event.get("occurred_at"))
        user_id = dig(data, "custom_data", USER_ID_KEY)

        if event_type == "transaction.completed":
            return CanonicalEvent(
                intent=EntitlementIntent.PAYMENT_CONFIRMED,
                event_type=event_type,
                subscription_id=data.get("subscription_id"),
                user_id=user_id,
                customer_id=data.get("customer_id"),
                occurred_at=occurred_at,
            )

        if event_type in ("subscription.activated", "subscription.created"):
            intent = EntitlementIntent.ACTIVATE
        elif event_type in ("subscription.canceled", "subscription.paused"):
            intent = EntitlementIntent.DEACTIVATE
        elif event_type in ("subscription.resumed", "subscription.updated"):
            if status == "active":
                intent = EntitlementIntent.ACTIVATE
            elif status in ("canceled", "paused"):
                intent = EntitlementIntent.DEACTIVATE
            else:
                intent = EntitlementIntent.UNKNOWN
        else:
            return CanonicalEvent(
                intent=EntitlementIntent.UNKNOWN, event_type=event_type, occurred_at=occurred_at
            )

        return CanonicalEvent(
            intent=intent,
            event_type=event_type,
            subscription_id=data.get("id"),
            user_id=user_id,
            email=dig(data, "customer", "email"),
            customer_id=data.get("customer_id"),
            status=status,
            occurred_at=occurred_at,
        )

    def create_checkout(self, user_id: str, email: str) -> CheckoutSession:
        if not self.api_key or not self.price_id:
            raise ProviderApiUnavailable("PADDLE_API_KEY and PADDLE_PRICE_ID must be set")
        payload = {
            "items": [{"price_id": self.price_id, "quantity": 1}],
            "custom_data": {USER_ID_KEY: user_id, "email": email},
        }
        try:
            response = self._http.post(
                f"{self.api_url}/transactions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json().get("data") or {}
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderApiUnavailable(f"Paddle checkout failed: {exc}") from exc

        url = dig(data, "checkout", "url")
        if not url:
            raise ProviderApiUnavailable("Paddle transaction has no checkout url")
        return CheckoutSession(url=url, session_id=data.get("id"), provider=self.name)

    def close(self) -> None:
        self._http.close()
