from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

from quillpress.logging import get_logger
from quillpress.storage.models import GitHubIdentity, User

_USERS_DDL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    github_id BIGINT UNIQUE,
    username TEXT NOT NULL DEFAULT '',
    email TEXT NOT NULL,
    name TEXT,
    avatar_url TEXT,
    role TEXT NOT NULL DEFAULT 'user',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_login_at TIMESTAMPTZ
)
"""


def _user_from_row(row: dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        username=row.get("username") or "",
        github_id=row.get("github_id"),
        name=row.get("name"),
        avatar_url=row.get("avatar_url"),
        role=row.get("role", "user"),
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or datetime.utcnow(),
        updated_at=row.get("updated_at") or datetime.utcnow(),
        last_login_at=row.get("last_login_at"),
    )


class PostgresUserDirectory:
    """Postgres-backed user directory."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``users`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(_USERS_DDL)

    def close(self) -> None:
        self.pool.close()

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_github_id(self, github_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE github_id = %s", (github_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def upsert_github_user(self, identity: GitHubIdentity, *, role: str) -> User:
        # role only applies on insert; profile fields refresh on every login
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO users (id, github_id, username, email, name, avatar_url, role, last_login_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, now())
                ON CONFLICT (github_id) DO UPDATE SET
                    username = EXCLUDED.username,
                    email = EXCLUDED.email,
                    name = EXCLUDED.name,
                    avatar_url = EXCLUDED.avatar_url,
                    updated_at = now(),
                    last_login_at = now()
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    identity.github_id,
                    identity.username,
                    identity.email,
                    identity.name,
                    identity.avatar_url,
                    role,
                ),
            ).fetchone()
        return _user_from_row(row)

    def list_users(
        self, *, limit: int = 50, offset: int = 0, role: Optional[str] = None
    ) -> List[User]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    "SELECT * FROM users WHERE role = %s ORDER BY created_at DESC LIMIT %s OFFSET %s",
                    (role, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM users ORDER BY created_at DESC LIMIT %s OFFSET %s",
                    (limit, offset),
                ).fetchall()
        return [_user_from_row(row) for row in rows]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None
