from __future__ import annotations

import logging
import os
from typing import Callable

from src.infrastructure.payments.base import PaymentProvider
from src.infrastructure.payments.gumroad_provider import GumroadProvider
from src.infrastructure.payments.lemonsqueezy_provider import LemonSqueezyProvider
from src.infrastructure.payments.paddle_provider import PaddleProvider
from src.infrastructure.payments.paypal_provider import PayPalProvider
from src.infrastructure.payments.stripe_provider import StripeProvider

logger = logging.getLogger(__name__)

PROVIDERS: dict[str, Callable[[], PaymentProvider]] = {
    "stripe": StripeProvider,
    "paypal": PayPalProvider,
    "paddle": PaddleProvider,
    "gumroad": GumroadProvider,
    "lemonsqueezy": LemonSqueezyProvider,
}


def build_provider(name: str | None = None) -> PaymentProvider:
    """Instantiate the payment provider active for this deployment."""
    key = (name or os.getenv("PAYMENT_PROVIDER", "stripe")).strip().lower()
    try:
        factory = PROVIDERS[key]
    except KeyError:
        raise ValueError(
            f"Unknown PAYMENT_PROVIDER {key!r}; expected one of {sorted(PROVIDERS)}"
        ) from None
    logger.info("Payment provider: %s", key)
    return factory()
