"""Thin PayPal REST client.

Covers what the billing integration needs: the client-credentials token
exchange, webhook signature verification, subscription creation for
checkout, and the catalog/plan calls used once to bootstrap the plan.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Any

import httpx

from src.domain.errors import ProviderApiUnavailable
from src.infrastructure.payments.base import HTTP_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://api-m.sandbox.paypal.com"
LIVE_BASE_URL = "https://api-m.paypal.com"


class PayPalApiError(ProviderApiUnavailable):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_outage(self) -> bool:
        """True for transport failures and 5xx answers."""
        return self.status_code is None or self.status_code >= 500


class PayPalApi:
    def __init__(
        self,
        client_id: str | None = None,
        secret: str | None = None,
        mode: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.client_id = client_id or os.getenv("PAYPAL_CLIENT_ID")
        self.secret = secret or os.getenv("PAYPAL_SECRET")
        self.mode = (mode or os.getenv("PAYPAL_MODE", "sandbox")).lower()
        self.base_url = LIVE_BASE_URL if self.mode == "live" else SANDBOX_BASE_URL
        self._http = http_client or httpx.Client(timeout=HTTP_TIMEOUT_SECONDS)

    @property
    def is_sandbox(self) -> bool:
        return self.mode != "live"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.secret)

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._http.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            raise PayPalApiError(f"PayPal {method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise PayPalApiError(
                f"PayPal {method} {path} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise PayPalApiError(
                f"PayPal {method} {path} returned invalid JSON: {exc}",
                status_code=response.status_code,
            ) from exc

    def get_access_token(self) -> str:
        if not self.configured:
            raise PayPalApiError("PAYPAL_CLIENT_ID and PAYPAL_SECRET must be set")
        data = self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(self.client_id, self.secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        token = data.get("access_token")
        if not token:
            raise PayPalApiError("PayPal token response has no access_token")
        return token

    def _authed(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        token = self.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            **kwargs.pop("headers", {}),
        }
        return self._request(method, path, headers=headers, **kwargs)

    def verify_webhook_signature(
        self, transmission: dict[str, str | None], webhook_id: str, event: dict[str, Any]
    ) -> str:
        """Ask PayPal whether a webhook delivery is genuine.

        Returns the ``verification_status`` string (``SUCCESS`` or ``FAILURE``).
        """
        payload = {
            "transmission_id": transmission.get("transmission_id"),
            "transmission_time": transmission.get("transmission_time"),
            "cert_url": transmission.get("cert_url"),
            "auth_algo": transmission.get("auth_algo"),
            "transmission_sig": transmission.get("transmission_sig"),
            "webhook_id": webhook_id,
            "webhook_event": event,
        }
        data = self._authed("POST", "/v1/notifications/verify-webhook-signature", json=payload)
        return data.get("verification_status", "FAILURE")

    def create_subscription(
        self, plan_id: str, user_id: str, email: str, return_url: str, cancel_url: str
    ) -> dict[str, Any]:
        payload = {
            "plan_id": plan_id,
            "custom_id": user_id,
            "subscriber": {"email_address": email},
            "application_context": {
                "brand_name": "AeroScout Pro",
                "user_action": "SUBSCRIBE_NOW",
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        return self._authed("POST", "/v1/billing/subscriptions", json=payload)

    def create_product(self, name: str, description: str) -> str:
        data = self._authed(
            "POST",
            "/v1/catalogs/products",
            json={
                "name": name,
                "description": description,
                "type": "SERVICE",
                "category": "SOFTWARE",
            },
            headers={"PayPal-Request-Id": f"product-{int(time.time() * 1000)}"},
        )
        logger.info("PayPal product created: %s", data["id"])
        return data["id"]

    def create_plan(
        self,
        product_id: str,
        name: str,
        description: str,
        price: str,
        currency: str = "USD",
    ) -> str:
        """Create a monthly plan that bills until cancelled."""
        data = self._authed(
            "POST",
            "/v1/billing/plans",
            json={
                "product_id": product_id,
                "name": name,
                "description": description,
                "status": "ACTIVE",
                "billing_cycles": [
                    {
                        "frequency": {"interval_unit": "MONTH", "interval_count": 1},
                        "tenure_type": "REGULAR",
                        "sequence": 1,
                        "total_cycles": 0,  # 0 = until cancelled
                        "pricing_scheme": {
                            "fixed_price": {"value": price, "currency_code": currency}
                        },
                    }
                ],
                "payment_preferences": {
                    "auto_bill_outstanding": True,
                    "setup_fee": {"value": "0", "currency_code": currency},
                    "setup_fee_failure_action": "CONTINUE",
                    "payment_failure_threshold": 3,
                },
            },
            headers={"PayPal-Request-Id": f"plan-{int(time.time() * 1000)}"},
        )
        logger.info("PayPal plan created: %s", data["id"])
        return data["id"]

    def close(self) -> None:
        self._http.close()
