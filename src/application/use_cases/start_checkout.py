from __future__ import annotations

import logging
from dataclasses import dataclass

from src.infrastructure.payments.base import CheckoutSession, PaymentProvider

logger = logging.getLogger(__name__)


@dataclass
class StartCheckoutUseCase:
    """Open a provider-hosted checkout for a signed-in user.

    Nothing is stored here: the user id embedded in the checkout metadata is
    the only link between this call and the webhook that follows.
    """

    provider: PaymentProvider

    def execute(self, user_id: str, email: str) -> CheckoutSession:
        if not user_id or not email:
            raise ValueError("userId and userEmail are required")
        session = self.provider.create_checkout(user_id, email)
        logger.info(
            "Created %s checkout %s for user %s", self.provider.name, session.session_id, user_id
        )
        return session
