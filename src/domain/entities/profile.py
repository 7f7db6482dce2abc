from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

PROVIDER_NAMES = ("stripe", "paypal", "paddle", "gumroad", "lemonsqueezy")


@dataclass(frozen=True)
class ProfileEntity:
    id: str | None  # user id from Supabase auth, generated for pending rows
    email: str | None
    is_premium: bool = False
    premium_since: datetime | None = None
    premium_ended: datetime | None = None
    # Trial state, only written by providers that report it (Gumroad)
    is_trial: bool = False
    trial_ends_at: datetime | None = None
    subscription_status: str | None = None
    is_pending: bool = False  # purchase arrived before signup, keyed by email
    billing: dict[str, Any] = field(default_factory=dict)  # {provider}_* columns
    created_at: datetime | None = None

    def subscription_id(self, provider: str) -> str | None:
        return self.billing.get(f"{provider}_subscription_id")


def billing_columns() -> list[str]:
    return [
        f"{provider}_{suffix}"
        for provider in PROVIDER_NAMES
        for suffix in ("subscription_id", "customer_id", "customer_email")
    ]
