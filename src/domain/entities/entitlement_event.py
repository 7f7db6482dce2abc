from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class EntitlementIntent(str, Enum):
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"
    PAYMENT_CONFIRMED = "payment_confirmed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CanonicalEvent:
    """Provider event normalized to what the reconciler needs."""

    intent: EntitlementIntent
    event_type: str  # provider vocabulary, kept for logging
    subscription_id: str | None = None
    user_id: str | None = None  # trusted id echoed back from checkout metadata
    email: str | None = None
    customer_id: str | None = None
    status: str | None = None
    trial_ends_at: datetime | None = None
    occurred_at: datetime | None = None
