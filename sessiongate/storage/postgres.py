from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessiongate.logging import get_logger
from sessiongate.storage.errors import ConstraintViolation, StoreUnavailable
from sessiongate.storage.models import Session, ensure_utc

_SESSION_COLUMNS = (
    "id, user_id, device_fingerprint, access_token, refresh_token, ip_addr, "
    "user_agent, created_at, updated_at, expires_at"
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        device_fingerprint TEXT NOT NULL,
        access_token TEXT NOT NULL,
        refresh_token TEXT,
        ip_addr TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_session_user_token_uq "
    "ON auth_session (user_id, access_token)",
    "CREATE INDEX IF NOT EXISTS auth_session_user_device_idx "
    "ON auth_session (user_id, device_fingerprint)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
)


class PostgresStore:
    """Postgres-backed session store."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            # Covers pool timeouts, dropped connections and statement_timeout
            raise StoreUnavailable(
                "session store unavailable", {"error_type": type(exc).__name__}
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``auth_session`` table and its indexes if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        created_at = ensure_utc(row["created_at"])
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            device_fingerprint=row.get("device_fingerprint") or "",
            access_token=row["access_token"],
            refresh_token=row.get("refresh_token") or None,
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            created_at=created_at,
            updated_at=ensure_utc(row.get("updated_at") or created_at),
            expires_at=ensure_utc(row["expires_at"]),
        )

    @staticmethod
    def _insert_params(session: Session) -> tuple:
        return (
            session.id,
            session.user_id,
            session.device_fingerprint,
            session.access_token,
            session.refresh_token,
            session.ip_addr,
            session.user_agent,
            session.created_at,
            session.updated_at,
            session.expires_at,
        )

    def _insert(self, conn, session: Session) -> None:
        conn.execute(
            f"INSERT INTO auth_session ({_SESSION_COLUMNS}) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            self._insert_params(session),
        )

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                self._insert(conn, session)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session already exists for credential", {"user_id": session.user_id}
            )
        return session

    def replace_session(self, session: Session, *, clear_user: bool = False) -> Session:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    if clear_user:
                        conn.execute(
                            "DELETE FROM auth_session WHERE user_id = %s",
                            (session.user_id,),
                        )
                    else:
                        conn.execute(
                            "DELETE FROM auth_session WHERE user_id = %s AND access_token = %s",
                            (session.user_id, session.access_token),
                        )
                    self._insert(conn, session)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session already exists for credential", {"user_id": session.user_id}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_token(self, user_id: str, access_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session "
                "WHERE user_id = %s AND access_token = %s LIMIT 1",
                (user_id, access_token),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_device(
        self, user_id: str, device_fingerprint: str
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session "
                "WHERE user_id = %s AND device_fingerprint = %s "
                "ORDER BY updated_at DESC LIMIT 1",
                (user_id, device_fingerprint),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def find_sessions(
        self, user_id: str, device_fingerprint: str | None = None
    ) -> List[Session]:
        """All rows of a user, expired included, optionally for one device."""

        with self._connect() as conn:
            if device_fingerprint is None:
                rows = conn.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE user_id = %s",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM auth_session "
                    "WHERE user_id = %s AND device_fingerprint = %s",
                    (user_id, device_fingerprint),
                ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def list_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session "
                "WHERE user_id = %s AND expires_at > %s ORDER BY updated_at DESC",
                (user_id, now),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def get_latest_session(self, user_id: str, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session "
                "WHERE user_id = %s AND expires_at > %s "
                "ORDER BY updated_at DESC LIMIT 1",
                (user_id, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def update_session_expiry(
        self, session_id: str, expires_at: datetime, updated_at: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session "
                "SET expires_at = GREATEST(expires_at, %s), updated_at = %s "
                f"WHERE id = %s RETURNING {_SESSION_COLUMNS}",
                (expires_at, updated_at, session_id),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def _delete(self, sql: str, params: tuple) -> int:
        with self._connect() as conn:
            result = conn.execute(sql, params)
            return max(result.rowcount or 0, 0)

    def delete_session(self, session_id: str) -> int:
        return self._delete("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def delete_session_by_token(self, user_id: str, access_token: str) -> int:
        return self._delete(
            "DELETE FROM auth_session WHERE user_id = %s AND access_token = %s",
            (user_id, access_token),
        )

    def delete_sessions_by_device(self, user_id: str, device_fingerprint: str) -> int:
        return self._delete(
            "DELETE FROM auth_session WHERE user_id = %s AND device_fingerprint = %s",
            (user_id, device_fingerprint),
        )

    def delete_user_sessions(self, user_id: str) -> int:
        return self._delete("DELETE FROM auth_session WHERE user_id = %s", (user_id,))

    def delete_expired_sessions(self, before: datetime) -> List[Tuple[str, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s"
                " RETURNING user_id, access_token",
                (before,),
            ).fetchall()
        return [(row["user_id"], row["access_token"]) for row in rows]

    def count_expired_sessions(self, before: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS expired FROM auth_session WHERE expires_at <= %s",
                (before,),
            ).fetchone()
        return int(row["expired"]) if row else 0
