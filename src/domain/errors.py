"""Error types shared by the payment providers, the reconciler and the store."""
from __future__ import annotations


class SignatureInvalid(ValueError):
    """Inbound webhook failed authenticity verification."""


class MalformedPayload(ValueError):
    """Webhook body could not be parsed into an event."""


class ProviderApiUnavailable(RuntimeError):
    """A call to the payment provider's API failed or timed out."""


class StoreWriteFailed(RuntimeError):
    """The profile store rejected a read or write."""
