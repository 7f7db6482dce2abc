from __future__ import annotations

import logging
import os

from supabase import Client, create_client

logger = logging.getLogger(__name__)


def supabase_disabled() -> bool:
    return os.getenv("SUPABASE_DISABLED", "0") == "1"


def create_supabase_client() -> Client | None:
    """Build the Supabase client used for profile writes.

    Webhooks write to other users' rows, so the service-role key is
    preferred over the anon key. Returns None when Supabase is disabled or
    not configured; callers then fall back to the in-memory store.
    """
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_ANON_KEY")
    if supabase_disabled():
        return None
    if not url or not key:
        logger.warning("SUPABASE_URL or SUPABASE_SERVICE_KEY not set; using in-memory profiles")
        return None
    return create_client(url, key)
