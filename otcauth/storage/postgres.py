from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from otcauth.logging import get_logger
from otcauth.storage.errors import ConstraintViolation, StoreUnavailable
from otcauth.storage.models import OTPChallenge, User

_CHALLENGE_COLUMNS = (
    "id, phone_number, code, session_handle, expires_at, is_used, created_at, used_at"
)
_USER_COLUMNS = "id, phone_number, registered_at, last_login_at, is_active"


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresStore:
    """Durable store for users and OTP challenges on psycopg 3."""

    REQUIRED_TABLES = ("app_user", "otp_challenge")

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_ms}",
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_operation_failed", error=str(exc))
            raise StoreUnavailable("postgres", str(exc)) from exc

    def _verify_required_schema(self) -> None:
        """Refuse to serve until the tables from scripts/schema.sql exist."""
        with self._connect() as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            phone_number=row["phone_number"],
            registered_at=row["registered_at"],
            last_login_at=row["last_login_at"],
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> OTPChallenge:
        return OTPChallenge(
            id=int(row["id"]),
            phone_number=row["phone_number"],
            code=row["code"],
            session_handle=row["session_handle"],
            expires_at=row["expires_at"],
            is_used=bool(row["is_used"]),
            created_at=row["created_at"],
            used_at=row.get("used_at"),
        )

    # ===== users =====

    def create_user(self, phone_number: str, *, now: Optional[datetime] = None) -> User:
        user = User.new(phone_number, now=now)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, phone_number, registered_at, last_login_at, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.phone_number,
                        user.registered_at,
                        user.last_login_at,
                        user.is_active,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "phone number already registered", {"field": "phone_number"}
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_phone(self, phone_number: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE phone_number = %s",
                (phone_number,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, user_id: str, at: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user SET last_login_at = %s
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self, *, offset: int = 0, limit: int = 20, search: Optional[str] = None
    ) -> Tuple[List[User], int]:
        where = ""
        params: List[Any] = []
        if search:
            where = "WHERE phone_number LIKE %s"
            params.append(f"%{_escape_like(search)}%")
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user {where}", tuple(params)
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT {_USER_COLUMNS} FROM app_user {where}
                ORDER BY registered_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params + [limit, offset]),
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._user_from_row(row) for row in rows], total

    # ===== challenges =====

    def create_challenge(
        self,
        phone_number: str,
        code: str,
        session_handle: str,
        expires_at: datetime,
        *,
        created_at: Optional[datetime] = None,
    ) -> OTPChallenge:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO otp_challenge (phone_number, code, session_handle, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, COALESCE(%s, now()))
                    RETURNING {_CHALLENGE_COLUMNS}
                    """,
                    (phone_number, code, session_handle, expires_at, created_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session handle already exists", {"field": "session_handle"}
            )
        return self._challenge_from_row(row)

    def find_active_challenge(
        self, session_handle: str, code: str, now: datetime
    ) -> Optional[OTPChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_CHALLENGE_COLUMNS} FROM otp_challenge
                WHERE session_handle = %s AND code = %s AND is_used = FALSE AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (session_handle, code, now),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def consume_challenge(self, challenge_id: int, used_at: datetime) -> bool:
        """Flip ``is_used`` if it is still false; False when no row changed."""
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE otp_challenge SET is_used = TRUE, used_at = %s
                WHERE id = %s AND is_used = FALSE
                """,
                (used_at, challenge_id),
            )
            return result.rowcount == 1

    def delete_expired_challenges(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM otp_challenge WHERE expires_at < %s", (now,)
            )
            return result.rowcount
