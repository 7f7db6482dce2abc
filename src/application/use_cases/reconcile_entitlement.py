from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Mapping

from src.domain.entities.entitlement_event import CanonicalEvent, EntitlementIntent
from src.domain.entities.profile import ProfileEntity
from src.domain.errors import MalformedPayload, SignatureInvalid, StoreWriteFailed
from src.infrastructure.database.repositories.profile_repository import ProfileRepository
from src.infrastructure.payments.base import PaymentProvider

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class WebhookResult:
    status_code: int
    body: dict[str, Any]


RECEIVED = WebhookResult(200, {"received": True})


@dataclass
class ReconcileEntitlementUseCase:
    """
    Apply one inbound payment webhook to the profile it concerns.

    The provider verifies and normalizes the event; this class resolves the
    target profile and writes the entitlement change. Every write is an
    upsert or keyed update carrying absolute values, so a re-delivered event
    rewrites the same fields and nothing else.

    Once an event is verified and parsed the answer is always 200, even when
    no profile matched or the store write failed: providers redeliver on
    anything else, and an unmatchable event would be redelivered forever.
    """

    provider: PaymentProvider
    profiles: ProfileRepository
    clock: Callable[[], datetime] = field(default=_utcnow)

    def execute(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """
        Handle one webhook delivery.

        Args:
            raw_body: The request body exactly as received
            headers: Request headers

        Returns:
            Status code and JSON body for the HTTP response
        """
        try:
            self._authenticate(raw_body, headers)
            # parse only ever sees bodies that passed verification
            event = self.provider.parse(raw_body)
        except SignatureInvalid:
            logger.warning("Invalid %s webhook signature", self.provider.name)
            return WebhookResult(400, {"error": "Invalid signature"})
        except MalformedPayload as exc:
            logger.error("Malformed %s webhook: %s", self.provider.name, exc)
            return WebhookResult(400, {"error": str(exc)})

        logger.info(
            "Received %s event %s (subscription=%s, email=%s)",
            self.provider.name,
            event.event_type,
            event.subscription_id,
            event.email,
        )

        handlers = {
            EntitlementIntent.ACTIVATE: self._activate,
            EntitlementIntent.DEACTIVATE: self._deactivate,
            EntitlementIntent.PAYMENT_CONFIRMED: self._confirm_payment,
        }
        handler = handlers.get(event.intent)
        if handler is None:
            logger.info("Unhandled %s event type: %s", self.provider.name, event.event_type)
            return RECEIVED

        try:
            handler(event)
        except StoreWriteFailed as exc:
            # Acknowledged anyway; the log line is the only record of the lost change
            logger.error(
                "Failed to apply %s event %s (subscription=%s, user=%s, email=%s): %s",
                self.provider.name,
                event.event_type,
                event.subscription_id,
                event.user_id,
                event.email,
                exc,
            )
        return RECEIVED

    def _authenticate(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if not self.provider.verify(raw_body, headers):
            raise SignatureInvalid(f"{self.provider.name} signature rejected")

    # -- resolution -------------------------------------------------------

    def _find_by_subscription(self, event: CanonicalEvent) -> ProfileEntity | None:
        if not event.subscription_id:
            return None
        return self.profiles.find_one(
            f"{self.provider.name}_subscription_id", event.subscription_id
        )

    def _resolve_for_activation(self, event: CanonicalEvent) -> ProfileEntity | None:
        if event.user_id:
            profile = self.profiles.get(event.user_id)
            if profile is not None:
                return profile
        profile = self._find_by_subscription(event)
        if profile is None and event.email:
            profile = self.profiles.find_one("email", event.email)
        return profile

    def _signed_up_user_id(self, event: CanonicalEvent) -> str | None:
        # Registered through auth but no profile row matched the email
        if not event.email:
            return None
        return self.profiles.find_auth_user_id(event.email)

    def _resolve_existing(self, event: CanonicalEvent) -> ProfileEntity | None:
        if event.user_id:
            profile = self.profiles.get(event.user_id)
            if profile is not None:
                return profile
        profile = self._find_by_subscription(event)
        if profile is None and event.email and not event.subscription_id:
            profile = self.profiles.find_one(f"{self.provider.name}_customer_email", event.email)
        return profile

    # -- intents ----------------------------------------------------------

    def _billing_fields(self, event: CanonicalEvent) -> dict[str, Any]:
        prefix = self.provider.name
        fields: dict[str, Any] = {}
        if event.subscription_id:
            fields[f"{prefix}_subscription_id"] = event.subscription_id
        if event.customer_id:
            fields[f"{prefix}_customer_id"] = event.customer_id
        if event.email:
            fields[f"{prefix}_customer_email"] = event.email
        return fields

    def _activate(self, event: CanonicalEvent) -> None:
        now = event.occurred_at or self.clock()
        fields: dict[str, Any] = {
            "is_premium": True,
            "premium_ended": None,
            **self._billing_fields(event),
        }
        if self.provider.tracks_trial_state:
            fields["is_trial"] = event.trial_ends_at is not None
            fields["trial_ends_at"] = event.trial_ends_at
            fields["subscription_status"] = event.status

        target = self._resolve_for_activation(event)
        user_id = target.id if target is not None else self._signed_up_user_id(event)
        if user_id is not None:
            already = target is not None and target.is_premium and target.premium_since is not None
            fields["premium_since"] = target.premium_since if already else now
            self.profiles.upsert({"id": user_id, **fields})
            logger.info(
                "User %s upgraded to premium (subscription: %s)", user_id, event.subscription_id
            )
            return

        fields["premium_since"] = now
        if event.email:
            # Bought before signing up; signup links the row by email later
            self.profiles.upsert(
                {"email": event.email, "is_pending": True, **fields}, on_conflict="email"
            )
            logger.info("No user found for email %s, stored pending subscription", event.email)
        elif event.user_id:
            self.profiles.upsert({"id": event.user_id, **fields})
            logger.info(
                "User %s upgraded to premium (subscription: %s)",
                event.user_id,
                event.subscription_id,
            )
        else:
            logger.warning(
                "No user id or email on %s %s (subscription: %s); nothing to activate",
                self.provider.name,
                event.event_type,
                event.subscription_id,
            )

    def _deactivate(self, event: CanonicalEvent) -> None:
        target = self._resolve_existing(event)
        if target is None:
            logger.info(
                "No user found for %s subscription %s (email=%s)",
                self.provider.name,
                event.subscription_id,
                event.email,
            )
            return

        stored = target.subscription_id(self.provider.name)
        if event.subscription_id and stored and stored != event.subscription_id:
            logger.info(
                "Ignoring %s for old subscription %s; user %s is on %s",
                event.event_type,
                event.subscription_id,
                target.id,
                stored,
            )
            return

        already_ended = not target.is_premium and target.premium_ended is not None
        fields: dict[str, Any] = {
            "is_premium": False,
            "premium_ended": (
                target.premium_ended if already_ended else event.occurred_at or self.clock()
            ),
        }
        if self.provider.tracks_trial_state:
            fields["is_trial"] = False
            fields["subscription_status"] = event.status
        self.profiles.update(target.id, fields)
        logger.info("User %s subscription %s (%s)", target.id, event.subscription_id, event.event_type)

    def _confirm_payment(self, event: CanonicalEvent) -> None:
        if not event.subscription_id:
            logger.info(
                "Ignoring %s %s with no subscription (email=%s)",
                self.provider.name,
                event.event_type,
                event.email,
            )
            return
        target = self._resolve_existing(event)
        if target is not None and target.is_premium:
            logger.info("Payment confirmed for user %s, already premium", target.id)
            return
        if target is None and not (event.user_id or event.email):
            logger.info(
                "No user found for %s payment on subscription %s",
                self.provider.name,
                event.subscription_id,
            )
            return
        self._activate(event)
