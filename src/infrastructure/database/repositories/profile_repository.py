from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from psycopg2 import sql
from supabase import Client

from src.domain.entities.profile import ProfileEntity, billing_columns
from src.domain.errors import StoreWriteFailed
from src.infrastructure.database.postgres_client import PostgresClient


_DATETIME_COLUMNS = ("premium_since", "premium_ended", "trial_ends_at", "created_at")
_AUTH_PAGE_SIZE = 1000

PROFILE_COLUMNS = frozenset(
    [
        "id",
        "email",
        "is_premium",
        "is_trial",
        "subscription_status",
        "is_pending",
        *_DATETIME_COLUMNS,
        *billing_columns(),
    ]
)


class ProfileRepository:
    """Access to the ``profiles`` table.

    Three backends, picked from the handles passed in at startup: a local
    PostgreSQL pool, the Supabase client, or an in-memory dict when neither
    is available (tests and ``SUPABASE_DISABLED=1``).
    """

    def __init__(self, client: Client | None, pg_client: PostgresClient | None = None) -> None:
        self.client = client
        self.pg_client = pg_client
        self._mem: dict[str, dict[str, Any]] = {}
        # email -> auth user id, standing in for Supabase auth in memory mode
        self.auth_users: dict[str, str] = {}

    @property
    def mode(self) -> str:
        if self.pg_client is not None:
            return "postgres"
        if self.client is None:
            return "memory"
        return "supabase"

    def _row_to_entity(self, row: dict) -> ProfileEntity:
        """Convert database row to ProfileEntity."""
        values = dict(row)
        for column in _DATETIME_COLUMNS:
            if isinstance(values.get(column), str):
                values[column] = datetime.fromisoformat(values[column].replace("Z", "+00:00"))

        return ProfileEntity(
            id=values.get("id"),
            email=values.get("email"),
            is_premium=bool(values.get("is_premium")),
            premium_since=values.get("premium_since"),
            premium_ended=values.get("premium_ended"),
            is_trial=bool(values.get("is_trial")),
            trial_ends_at=values.get("trial_ends_at"),
            subscription_status=values.get("subscription_status"),
            is_pending=bool(values.get("is_pending")),
            billing={k: values.get(k) for k in billing_columns() if values.get(k) is not None},
            created_at=values.get("created_at"),
        )

    @staticmethod
    def _check_columns(fields: dict[str, Any]) -> None:
        unknown = set(fields) - PROFILE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown profile columns: {sorted(unknown)}")

    @staticmethod
    def _serialize(fields: dict[str, Any]) -> dict[str, Any]:
        # PostgREST wants JSON, so datetimes travel as ISO strings
        return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in fields.items()}

    def get(self, user_id: str) -> ProfileEntity | None:
        return self.find_one("id", user_id)

    def find_one(self, column: str, value: str) -> ProfileEntity | None:
        """Return the first profile whose ``column`` equals ``value``."""
        self._check_columns({column: value})

        # PostgreSQL mode
        if self.pg_client is not None:
            query = sql.SQL("SELECT * FROM profiles WHERE {} = %s LIMIT 1").format(
                sql.Identifier(column)
            )
            try:
                row = self.pg_client.fetch_one(query, (value,))
            except Exception as exc:
                raise StoreWriteFailed(f"PostgreSQL profile lookup failed: {exc}") from exc
            return self._row_to_entity(row) if row else None

        # In-memory mode
        if self.client is None:
            for row in self._mem.values():
                if row.get(column) == value:
                    return self._row_to_entity(row)
            return None

        # Supabase mode
        try:  # pragma: no cover - network
            res = self.client.table("profiles").select("*").eq(column, value).limit(1).execute()
        except Exception as exc:  # pragma: no cover - network
            raise StoreWriteFailed(f"DB profile lookup failed: {exc}") from exc
        rows = res.data or []
        return self._row_to_entity(rows[0]) if rows else None

    def upsert(self, fields: dict[str, Any], on_conflict: str = "id") -> ProfileEntity:
        """Insert or update a profile keyed by ``id`` or, for pending rows, ``email``.

        Only the supplied columns are written on conflict, so re-applying the
        same fields is a no-op beyond the redundant write.
        """
        if on_conflict not in ("id", "email"):
            raise ValueError(f"Unsupported conflict key: {on_conflict}")
        if not fields.get(on_conflict):
            raise ValueError(f"Upsert requires a value for {on_conflict}")
        self._check_columns(fields)

        # PostgreSQL mode
        if self.pg_client is not None:
            columns = list(fields)
            updates = [c for c in columns if c != on_conflict]
            query = sql.SQL(
                "INSERT INTO profiles ({cols}) VALUES ({vals}) "
                "ON CONFLICT ({key}) DO UPDATE SET {sets} RETURNING *"
            ).format(
                cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
                vals=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
                key=sql.Identifier(on_conflict),
                sets=sql.SQL(", ").join(
                    sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
                ),
            )
            try:
                row = self.pg_client.execute_returning(query, tuple(fields[c] for c in columns))
            except Exception as exc:
                raise StoreWriteFailed(f"PostgreSQL upsert profile failed: {exc}") from exc
            return self._row_to_entity(row)

        # In-memory mode
        if self.client is None:
            key = fields[on_conflict]
            current = next(
                (row for row in self._mem.values() if row.get(on_conflict) == key), None
            )
            if current is None:
                current = {"id": fields.get("id") or str(uuid.uuid4())}
            merged = {**current, **fields}
            self._mem[merged["id"]] = merged
            return self._row_to_entity(merged)

        # Supabase mode
        try:  # pragma: no cover - network
            res = (
                self.client.table("profiles")
                .upsert(self._serialize(fields), on_conflict=on_conflict)
                .execute()
            )
            return self._row_to_entity(res.data[0])
        except Exception as exc:  # pragma: no cover - network
            raise StoreWriteFailed(f"DB upsert profile failed: {exc}") from exc

    def update(self, user_id: str, fields: dict[str, Any]) -> ProfileEntity | None:
        """Partially update an existing profile. Returns None if no row matched."""
        self._check_columns(fields)

        # PostgreSQL mode
        if self.pg_client is not None:
            query = sql.SQL("UPDATE profiles SET {sets} WHERE id = %s RETURNING *").format(
                sets=sql.SQL(", ").join(
                    sql.SQL("{} = %s").format(sql.Identifier(c)) for c in fields
                )
            )
            try:
                row = self.pg_client.fetch_one(query, (*fields.values(), user_id))
            except Exception as exc:
                raise StoreWriteFailed(f"PostgreSQL update profile failed: {exc}") from exc
            return self._row_to_entity(row) if row else None

        # In-memory mode
        if self.client is None:
            current = self._mem.get(user_id)
            if current is None:
                return None
            current.update(fields)
            return self._row_to_entity(current)

        # Supabase mode
        try:  # pragma: no cover - network
            res = (
                self.client.table("profiles")
                .update(self._serialize(fields))
                .eq("id", user_id)
                .execute()
            )
        except Exception as exc:  # pragma: no cover - network
            raise StoreWriteFailed(f"DB update profile failed: {exc}") from exc
        rows = res.data or []
        return self._row_to_entity(rows[0]) if rows else None

    def find_auth_user_id(self, email: str) -> str | None:
        """Look up a signed-up auth user by email.

        Covers users who registered but whose ``profiles`` row carries no
        email yet. The local PostgreSQL database has no auth schema, so
        that mode always returns None.
        """
        wanted = email.strip().lower()

        if self.pg_client is not None:
            return None

        if self.client is None:
            return next(
                (uid for addr, uid in self.auth_users.items() if addr.lower() == wanted), None
            )

        page = 1
        while True:
            try:
                users = self.client.auth.admin.list_users(page=page, per_page=_AUTH_PAGE_SIZE)
            except Exception as exc:
                raise StoreWriteFailed(f"Auth user lookup failed: {exc}") from exc
            for user in users:
                if (user.email or "").lower() == wanted:
                    return user.id
            if len(users) < _AUTH_PAGE_SIZE:
                return None
            page += 1
