import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure project root is on sys.path so 'src' is importable during tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("SUPABASE_DISABLED", "1")
os.environ.setdefault("ENV", "test")

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture()
def profiles():
    from src.infrastructure.database.repositories.profile_repository import ProfileRepository

    return ProfileRepository(client=None)


@pytest.fixture()
def stripe_provider():
    from src.infrastructure.payments.stripe_provider import StripeProvider

    return StripeProvider(
        api_key="sk_test_123",
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        price_id="price_123",
    )


@pytest.fixture()
def sign_stripe():
    """Stripe-Signature headers for an arbitrary body."""

    def _sign(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET) -> dict[str, str]:
        ts = int(time.time())
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
        return {"Stripe-Signature": f"t={ts},v1={digest}"}

    return _sign


@pytest.fixture()
def stripe_delivery(sign_stripe):
    """Build (body, headers) for a signed Stripe event."""

    def _build(event_type: str, obj: dict, created: int = 1_700_000_000) -> tuple[bytes, dict]:
        body = json.dumps(
            {"id": "evt_1", "type": event_type, "created": created, "data": {"object": obj}}
        ).encode()
        return body, sign_stripe(body)

    return _build


@pytest.fixture()
def make_client(profiles):
    """Start the app around injected collaborators."""
    from src.main import create_app

    clients = []

    def _make(provider, store=None) -> TestClient:
        client = TestClient(create_app(profiles=store or profiles, provider=provider))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture()
def client(make_client, stripe_provider) -> TestClient:
    return make_client(stripe_provider)
