from __future__ import annotations

import hmac
import logging
import os
from typing import Mapping
from urllib.parse import parse_qsl, urlencode

from src.domain.entities.entitlement_event import CanonicalEvent, EntitlementIntent
from src.domain.errors import MalformedPayload, ProviderApiUnavailable
from src.infrastructure.payments.base import (
    USER_ID_KEY,
    CheckoutSession,
    PaymentProvider,
    allow_unsigned,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

_ACTIVATE = {"sale", "ping", "subscription_restarted"}
_DEACTIVATE = {"subscription_cancelled", "cancellation", "subscription_ended"}


def parse_form(body: bytes) -> dict[str, str]:
    try:
        return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    except UnicodeDecodeError as exc:
        raise MalformedPayload(f"Invalid form body: {exc}") from exc


class GumroadProvider(PaymentProvider):
    """Gumroad ping webhooks (form-urlencoded, no signature header).

    The only authenticity check Gumroad offers is the seller id echoed in
    every ping, compared against ``GUMROAD_SELLER_ID``.
    """

    name = "gumroad"
    tracks_trial_state = True

    def __init__(self, seller_id: str | None = None, product_url: str | None = None) -> None:
        self.seller_id = seller_id or os.getenv("GUMROAD_SELLER_ID")
        self.product_url = product_url or os.getenv("GUMROAD_PRODUCT_URL")

    def verify(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.seller_id:
            return allow_unsigned(self.name)
        try:
            sent = parse_form(body).get("seller_id", "")
        except MalformedPayload:
            return False
        if not hmac.compare_digest(sent.encode("utf-8"), self.seller_id.encode("utf-8")):
            logger.warning("Gumroad seller id mismatch (got %r)", sent)
            return False
        return True

    def parse(self, body: bytes) -> CanonicalEvent:
        data = parse_form(body)
        email = data.get("email") or data.get("purchaser_id")
        if not email:
            raise MalformedPayload("No customer email in Gumroad ping")

        resource = data.get("resource_name") or "sale"
        trial_ends_at = parse_timestamp(data.get("free_trial_ends_on"))
        occurred_at = parse_timestamp(data.get("sale_timestamp"))
        user_id = data.get(f"url_params[{USER_ID_KEY}]") or data.get(USER_ID_KEY) or None

        if resource in _ACTIVATE:
            recurring = data.get("is_recurring_charge", "").lower() == "true"
            intent = (
                EntitlementIntent.PAYMENT_CONFIRMED
                if recurring and resource != "subscription_restarted"
                else EntitlementIntent.ACTIVATE
            )
            status = "trialing" if trial_ends_at else "active"
        elif resource in _DEACTIVATE:
            intent = EntitlementIntent.DEACTIVATE
            status = "ended" if resource == "subscription_ended" else "cancelled"
        else:
            return CanonicalEvent(
                intent=EntitlementIntent.UNKNOWN,
                event_type=resource,
                email=email,
                occurred_at=occurred_at,
            )

        subscription_id = data.get("subscription_id")
        if intent is not EntitlementIntent.DEACTIVATE:
            subscription_id = subscription_id or data.get("sale_id")

        return CanonicalEvent(
            intent=intent,
            event_type=resource,
            subscription_id=subscription_id or None,
            user_id=user_id,
            email=email,
            customer_id=data.get("purchaser_id") or None,
            status=status,
            trial_ends_at=trial_ends_at,
            occurred_at=occurred_at,
        )

    def create_checkout(self, user_id: str, email: str) -> CheckoutSession:
        # Gumroad checkout is an overlay on the product page; no API call.
        if not self.product_url:
            raise ProviderApiUnavailable("GUMROAD_PRODUCT_URL must be set")
        query = urlencode({"wanted": "true", "email": email, USER_ID_KEY: user_id})
        sep = "&" if "?" in self.product_url else "?"
        return CheckoutSession(
            url=f"{self.product_url}{sep}{query}", session_id=None, provider=self.name
        )
