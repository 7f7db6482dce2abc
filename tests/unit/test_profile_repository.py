from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from src.domain.errors import StoreWriteFailed
from src.infrastructure.database.repositories.profile_repository import ProfileRepository


def test_upsert_by_id_merges_fields(profiles):
    profiles.upsert({"id": "u1", "email": "pilot@example.com"})
    prof = profiles.upsert({"id": "u1", "is_premium": True, "stripe_subscription_id": "sub_1"})

    assert prof.email == "pilot@example.com"
    assert prof.is_premium is True
    assert prof.subscription_id("stripe") == "sub_1"
    assert prof.subscription_id("paddle") is None


def test_upsert_by_email_generates_id_once(profiles):
    first = profiles.upsert({"email": "new@example.com", "is_pending": True}, on_conflict="email")
    second = profiles.upsert({"email": "new@example.com", "is_premium": True}, on_conflict="email")

    assert first.id
    assert second.id == first.id
    assert second.is_pending is True
    assert len(profiles._mem) == 1


def test_find_one_by_provider_column(profiles):
    profiles.upsert({"id": "u1", "gumroad_subscription_id": "g1"})
    profiles.upsert({"id": "u2", "gumroad_subscription_id": "g2"})

    assert profiles.find_one("gumroad_subscription_id", "g2").id == "u2"
    assert profiles.find_one("gumroad_subscription_id", "g3") is None


def test_update_only_touches_existing_rows(profiles):
    assert profiles.update("ghost", {"is_premium": False}) is None

    ended = datetime(2026, 1, 1, tzinfo=UTC)
    profiles.upsert({"id": "u1", "is_premium": True})
    prof = profiles.update("u1", {"is_premium": False, "premium_ended": ended})
    assert prof.is_premium is False
    assert prof.premium_ended == ended


def test_rejects_unknown_columns(profiles):
    with pytest.raises(ValueError):
        profiles.upsert({"id": "u1", "display_name": "x"})
    with pytest.raises(ValueError):
        profiles.find_one("password", "x")


def test_upsert_requires_conflict_key(profiles):
    with pytest.raises(ValueError):
        profiles.upsert({"is_premium": True}, on_conflict="email")


def test_iso_strings_become_datetimes(profiles):
    entity = profiles._row_to_entity(
        {"id": "u1", "email": None, "premium_since": "2026-01-01T00:00:00Z", "is_premium": True}
    )
    assert entity.premium_since == datetime(2026, 1, 1, tzinfo=UTC)
    assert profiles.mode == "memory"


def test_auth_lookup_in_memory(profiles):
    profiles.auth_users["pilot@example.com"] = "u1"

    assert profiles.find_auth_user_id(" Pilot@Example.com ") == "u1"
    assert profiles.find_auth_user_id("nobody@example.com") is None


def test_auth_lookup_pages_through_supabase_users():
    pages = {
        1: [SimpleNamespace(id=f"u{i}", email=f"user{i}@example.com") for i in range(1000)],
        2: [SimpleNamespace(id="late", email="Late@Example.com"), SimpleNamespace(id="x", email=None)],
    }
    client = MagicMock()
    client.auth.admin.list_users.side_effect = lambda page, per_page: pages.get(page, [])
    repo = ProfileRepository(client)

    assert repo.find_auth_user_id("late@example.com") == "late"
    assert repo.find_auth_user_id("missing@example.com") is None
    assert client.auth.admin.list_users.call_args.kwargs == {"page": 2, "per_page": 1000}


def test_auth_lookup_failure_is_wrapped():
    client = MagicMock()
    client.auth.admin.list_users.side_effect = RuntimeError("401 not admin")

    with pytest.raises(StoreWriteFailed):
        ProfileRepository(client).find_auth_user_id("pilot@example.com")
