"""Payment provider interface shared by the five billing integrations.

Only one provider is active per deployment (``PAYMENT_PROVIDER``). Each one
knows how to check that an inbound webhook really came from it, how to turn
its event vocabulary into a ``CanonicalEvent``, and how to start a hosted
checkout that carries our user id back to us in later webhooks.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Mapping

from src.domain.entities.entitlement_event import CanonicalEvent
from src.domain.errors import MalformedPayload

logger = logging.getLogger(__name__)

# Metadata key used by every provider to echo our user id back
USER_ID_KEY = "supabase_user_id"

HTTP_TIMEOUT_SECONDS = 5.0

_PERMISSIVE_ENVS = ("development", "staging", "test")


@dataclass(frozen=True)
class CheckoutSession:
    url: str
    session_id: str | None
    provider: str


def header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def hmac_sha256_hex_matches(secret: str, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    candidate = signature.strip().lower().encode("utf-8", "replace")
    return hmac.compare_digest(expected.encode("ascii"), candidate)


def allow_unsigned(provider: str) -> bool:
    """Decide what to do when a provider's webhook secret is not configured.

    Outside development/staging/test the webhook fails closed.
    """
    env = os.getenv("ENV", "development")
    if env in _PERMISSIVE_ENVS:
        logger.warning("%s webhook secret not set; skipping verification (ENV=%s)", provider, env)
        return True
    logger.error("%s webhook secret not set; rejecting webhook (ENV=%s)", provider, env)
    return False


def load_json(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayload(f"Invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedPayload("Event body must be a JSON object")
    return payload


def parse_timestamp(value: Any) -> datetime | None:
    """Accept epoch seconds or ISO-8601 strings; anything else is None."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def dig(d: Any, *keys: str) -> Any:
    cur = d
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


class PaymentProvider(ABC):
    name: str
    signature_header: str | None = None
    tracks_trial_state: bool = False

    @abstractmethod
    def verify(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Check the raw, unparsed body against the provider's signature scheme."""

    @abstractmethod
    def parse(self, body: bytes) -> CanonicalEvent:
        """Parse a verified body. Raises MalformedPayload."""

    @abstractmethod
    def create_checkout(self, user_id: str, email: str) -> CheckoutSession:
        """Start a hosted checkout. Raises ProviderApiUnavailable."""

    def close(self) -> None:
        """Release HTTP clients held by the provider."""
