from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from errors import StorageError

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        business_name TEXT,
        subscription_plan TEXT NOT NULL DEFAULT 'free',
        subscription_status TEXT NOT NULL DEFAULT 'active',
        subscription_expires_at TIMESTAMPTZ,
        monthly_limit INTEGER NOT NULL DEFAULT 10,
        stripe_customer_id TEXT UNIQUE,
        stripe_subscription_id TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_periods (
        user_id TEXT NOT NULL REFERENCES users(id),
        month SMALLINT NOT NULL CHECK (month BETWEEN 0 AND 11),
        year INTEGER NOT NULL,
        request_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, month, year)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS generation_records (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        review_text TEXT NOT NULL,
        response_text TEXT NOT NULL,
        language TEXT NOT NULL,
        tone TEXT NOT NULL,
        business_type TEXT NOT NULL,
        model TEXT NOT NULL,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        cost NUMERIC(12, 6) NOT NULL DEFAULT 0,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        success BOOLEAN NOT NULL,
        error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS generation_records_user_created_idx
    ON generation_records (user_id, created_at DESC);
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id TEXT PRIMARY KEY,
        provider TEXT NOT NULL,
        event_type TEXT,
        status TEXT NOT NULL,
        raw JSONB NOT NULL,
        error TEXT,
        processed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS unmatched_webhooks (
        id TEXT PRIMARY KEY,
        event_id TEXT,
        event_type TEXT,
        customer_id TEXT,
        reason TEXT NOT NULL,
        raw JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        key TEXT NOT NULL,
        window_start TIMESTAMPTZ NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (key, window_start)
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS rate_limits_window_idx ON rate_limits (window_start);
    """,
    """
    CREATE TABLE IF NOT EXISTS business_profiles (
        user_id TEXT PRIMARY KEY REFERENCES users(id),
        business_type TEXT NOT NULL,
        business_name TEXT NOT NULL,
        description TEXT,
        brand_voice TEXT NOT NULL,
        response_length TEXT NOT NULL,
        special_instructions TEXT,
        custom_keywords JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS response_templates (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        name TEXT NOT NULL,
        category TEXT NOT NULL,
        template TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
)

USER_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "business_name",
        "subscription_plan",
        "subscription_status",
        "subscription_expires_at",
        "monthly_limit",
        "stripe_customer_id",
        "stripe_subscription_id",
        "is_active",
        "last_login_at",
    }
)

GENERATION_COLUMNS = (
    "id",
    "user_id",
    "review_text",
    "response_text",
    "language",
    "tone",
    "business_type",
    "model",
    "input_tokens",
    "output_tokens",
    "tokens_used",
    "cost",
    "duration_ms",
    "success",
    "error",
)

_INCREMENT_USAGE_SQL = """
    INSERT INTO usage_periods (user_id, month, year, request_count)
    VALUES (%s, %s, %s, %s)
    ON CONFLICT (user_id, month, year)
    DO UPDATE SET request_count = usage_periods.request_count + EXCLUDED.request_count
    RETURNING user_id, month, year, request_count
"""

_INSERT_GENERATION_SQL = f"""
    INSERT INTO generation_records ({", ".join(GENERATION_COLUMNS)})
    VALUES ({", ".join(["%s"] * len(GENERATION_COLUMNS))})
"""


class Database:
    """PostgreSQL storage collaborator.

    Every call opens its own connection; the ``with`` block commits on
    success and rolls back on error, so each public method is one
    transaction.
    """

    def __init__(self, url: str | None) -> None:
        self._url = url
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _connect(self) -> psycopg.Connection:
        if not self._url:
            raise RuntimeError("DATABASE_URL is not set.")
        return psycopg.connect(self._url, row_factory=dict_row)

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            with self._connect() as conn:
                with conn.cursor() as cur:
                    for statement in SCHEMA:
                        cur.execute(statement)
            self._schema_ready = True

    def _fetchone(self, query: str, params: tuple[Any, ...]) -> dict[str, Any] | None:
        self.ensure_schema()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
                return dict(row) if row else None

    def _fetchall(self, query: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        self.ensure_schema()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return [dict(row) for row in cur.fetchall()]

    def _execute(self, query: str, params: tuple[Any, ...]) -> int:
        self.ensure_schema()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount

    # users

    def create_user(
        self,
        *,
        user_id: str,
        email: str,
        password_hash: str,
        name: str,
        business_name: str | None,
        plan: str,
        status: str,
        monthly_limit: int,
        month: int,
        year: int,
    ) -> dict[str, Any]:
        """Insert a user together with its zero-count usage row for the period."""
        self.ensure_schema()
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        INSERT INTO users (
                            id, email, password_hash, name, business_name,
                            subscription_plan, subscription_status, monthly_limit
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (user_id, email, password_hash, name, business_name, plan, status, monthly_limit),
                    )
                    user = dict(cur.fetchone())
                    cur.execute(_INCREMENT_USAGE_SQL, (user_id, month, year, 0))
                    return user
        except psycopg.errors.UniqueViolation as exc:
            raise StorageError("Email already registered.") from exc

    def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        return self._fetchone("SELECT * FROM users WHERE id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        return self._fetchone("SELECT * FROM users WHERE email = %s", (email,))

    def get_user_by_stripe_customer(self, customer_id: str) -> dict[str, Any] | None:
        return self._fetchone("SELECT * FROM users WHERE stripe_customer_id = %s", (customer_id,))

    def update_user(self, user_id: str, **fields: Any) -> dict[str, Any] | None:
        unknown = set(fields) - USER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user_by_id(user_id)
        assignments = ", ".join(f"{column} = %s" for column in fields)
        return self._fetchone(
            f"UPDATE users SET {assignments} WHERE id = %s RETURNING *",
            (*fields.values(), user_id),
        )

    # usage

    def increment_usage(self, user_id: str, month: int, year: int, amount: int) -> dict[str, Any]:
        """Upsert-increment the (user, month, year) counter and return the row.

        ``amount=0`` is the get-or-create primitive.
        """
        try:
            row = self._fetchone(_INCREMENT_USAGE_SQL, (user_id, month, year, amount))
        except psycopg.Error as exc:
            raise StorageError(f"Could not update usage: {exc}") from exc
        if row is None:
            raise StorageError("Usage upsert returned no row.")
        return row

    def get_usage_count(self, user_id: str, month: int, year: int) -> int:
        row = self._fetchone(
            "SELECT request_count FROM usage_periods WHERE user_id = %s AND month = %s AND year = %s",
            (user_id, month, year),
        )
        return int(row["request_count"]) if row else 0

    def record_generation(
        self,
        *,
        month: int,
        year: int,
        record: dict[str, Any],
    ) -> dict[str, Any]:
        """Increment usage and append the audit row in one transaction."""
        self.ensure_schema()
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(_INCREMENT_USAGE_SQL, (record["user_id"], month, year, 1))
                    usage = dict(cur.fetchone())
                    cur.execute(
                        _INSERT_GENERATION_SQL,
                        tuple(record.get(column) for column in GENERATION_COLUMNS),
                    )
                    return usage
        except psycopg.Error as exc:
            raise StorageError(f"Could not record generation: {exc}") from exc

    def fetch_generation_records(self, user_id: str, limit: int, offset: int) -> list[dict[str, Any]]:
        return self._fetchall(
            """
            SELECT id, review_text, response_text, language, tone, business_type, success, created_at
            FROM generation_records
            WHERE user_id = %s
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            (user_id, limit, offset),
        )

    def count_generation_records(self, user_id: str, success_only: bool = False) -> int:
        query = "SELECT COUNT(*) AS total FROM generation_records WHERE user_id = %s"
        if success_only:
            query += " AND success"
        row = self._fetchone(query, (user_id,))
        return int(row["total"]) if row else 0

    def increment_rate_limit(self, key: str, window_start: datetime) -> int:
        """Count one hit for ``key`` in the window and return the window total."""
        row = self._fetchone(
            """
            INSERT INTO rate_limits (key, window_start, count)
            VALUES (%s, %s, 1)
            ON CONFLICT (key, window_start)
            DO UPDATE SET count = rate_limits.count + 1
            RETURNING count
            """,
            (key, window_start),
        )
        return int(row["count"]) if row else 1

    # webhooks

    def record_webhook_event(
        self,
        *,
        event_id: str,
        provider: str,
        event_type: str | None,
        raw: dict[str, Any],
    ) -> bool:
        """Store the event if new; return True when it was already processed."""
        row = self._fetchone(
            """
            INSERT INTO webhook_events (id, provider, event_type, status, raw)
            VALUES (%s, %s, %s, 'received', %s)
            ON CONFLICT (id) DO UPDATE SET status = webhook_events.status
            RETURNING processed_at
            """,
            (event_id, provider, event_type, Jsonb(raw)),
        )
        return bool(row and row.get("processed_at"))

    def mark_webhook_event(
        self,
        event_id: str,
        *,
        status: str,
        processed_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        self._execute(
            "UPDATE webhook_events SET status = %s, processed_at = %s, error = %s WHERE id = %s",
            (status, processed_at, error, event_id),
        )

    def insert_unmatched_webhook(
        self,
        *,
        entry_id: str,
        event_id: str | None,
        event_type: str | None,
        customer_id: str | None,
        reason: str,
        raw: dict[str, Any],
    ) -> None:
        self._execute(
            """
            INSERT INTO unmatched_webhooks (id, event_id, event_type, customer_id, reason, raw)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (entry_id, event_id, event_type, customer_id, reason, Jsonb(raw)),
        )

    # business profiles and templates

    def get_business_profile(self, user_id: str) -> dict[str, Any] | None:
        return self._fetchone("SELECT * FROM business_profiles WHERE user_id = %s", (user_id,))

    def upsert_business_profile(self, user_id: str, profile: dict[str, Any]) -> dict[str, Any]:
        row = self._fetchone(
            """
            INSERT INTO business_profiles (
                user_id, business_type, business_name, description, brand_voice,
                response_length, special_instructions, custom_keywords
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id) DO UPDATE SET
                business_type = EXCLUDED.business_type,
                business_name = EXCLUDED.business_name,
                description = EXCLUDED.description,
                brand_voice = EXCLUDED.brand_voice,
                response_length = EXCLUDED.response_length,
                special_instructions = EXCLUDED.special_instructions,
                custom_keywords = EXCLUDED.custom_keywords,
                updated_at = now()
            RETURNING *
            """,
            (
                user_id,
                profile["business_type"],
                profile["business_name"],
                profile.get("description"),
                profile["brand_voice"],
                profile["response_length"],
                profile.get("special_instructions"),
                Jsonb(list(profile.get("custom_keywords") or [])),
            ),
        )
        if row is None:
            raise StorageError("Business profile upsert returned no row.")
        return row

    def list_templates(self, user_id: str) -> list[dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM response_templates WHERE user_id = %s ORDER BY created_at DESC",
            (user_id,),
        )

    def insert_template(self, *, template_id: str, user_id: str, template: dict[str, Any]) -> dict[str, Any]:
        row = self._fetchone(
            """
            INSERT INTO response_templates (id, user_id, name, category, template, description)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                template_id,
                user_id,
                template["name"],
                template["category"],
                template["template"],
                template.get("description"),
            ),
        )
        if row is None:
            raise StorageError("Template insert returned no row.")
        return row

    def update_template(self, user_id: str, template_id: str, template: dict[str, Any]) -> dict[str, Any] | None:
        return self._fetchone(
            """
            UPDATE response_templates
            SET name = %s, category = %s, template = %s, description = %s, updated_at = now()
            WHERE id = %s AND user_id = %s
            RETURNING *
            """,
            (
                template["name"],
                template["category"],
                template["template"],
                template.get("description"),
                template_id,
                user_id,
            ),
        )

    def delete_template(self, user_id: str, template_id: str) -> bool:
        return (
            self._execute(
                "DELETE FROM response_templates WHERE id = %s AND user_id = %s",
                (template_id, user_id),
            )
            > 0
        )
