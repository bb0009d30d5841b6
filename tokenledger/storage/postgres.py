from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tokenledger.logging import get_logger
from tokenledger.storage.errors import (
    ConstraintViolation,
    MissingReference,
    StoreUnavailable,
)
from tokenledger.storage.models import RefreshRecord, User, utcnow

REQUIRED_TABLES = ("app_user", "user_auth_credential", "refresh_token")


class PostgresStore:
    """Postgres-backed credential store and refresh ledger.

    The atomic revoke relies on ``UPDATE ... WHERE revoked_at IS NULL``
    so concurrent rotations of one token serialize on the row lock.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        connect_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=connect_timeout,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=True,
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            raise StoreUnavailable("postgres", "connection pool exhausted") from exc
        except psycopg.OperationalError as exc:
            raise StoreUnavailable("postgres", str(exc)) from exc

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Fail fast when the tables from ``sql/schema.sql`` are missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _record_from_row(row: Dict[str, Any]) -> RefreshRecord:
        ip_addr = row.get("ip_addr")
        return RefreshRecord(
            token_id=row["token_id"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            user_agent=row.get("user_agent"),
            ip_addr=str(ip_addr) if ip_addr is not None else None,
        )

    # users
    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        is_active: bool = True,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, display_name, is_active)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email.strip().lower(), display_name, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_login_record(
        self, email: str
    ) -> Optional[Tuple[User, Optional[tuple[str, str]]]]:
        """User and password record in one round-trip, for login."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.*, c.password_hash, c.password_algo
                FROM app_user u
                LEFT JOIN user_auth_credential c ON c.user_id = u.id
                WHERE u.email = %s
                """,
                (email,),
            ).fetchone()
        if not row:
            return None
        password = None
        if row.get("password_hash") is not None:
            password = (str(row["password_hash"]), str(row["password_algo"]))
        return self._user_from_row(row), password

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s",
                (at, user_id),
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise MissingReference(
                "user not found for credentials", {"user_id": user_id}
            ) from exc

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh ledger
    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (token_id, user_id, created_at, expires_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.token_id,
                        record.user_id,
                        record.created_at,
                        record.expires_at,
                        record.user_agent,
                        record.ip_addr,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token id already exists", {"field": "token_id"}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise MissingReference(
                "user not found for refresh token", {"user_id": record.user_id}
            ) from exc
        return self._record_from_row(row)

    def get_refresh_record(self, token_id: str) -> Optional[RefreshRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_id = %s", (token_id,)
            ).fetchone()
        if not row:
            return None
        return self._record_from_row(row)

    def revoke_refresh_record(
        self, token_id: str, at: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s
                WHERE token_id = %s AND revoked_at IS NULL
                RETURNING token_id
                """,
                (at or utcnow(), token_id),
            ).fetchone()
        return row is not None

    def restore_refresh_record(self, token_id: str, revoked_at: datetime) -> bool:
        """Undo a revoke, but only the one that stamped ``revoked_at``."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = NULL
                WHERE token_id = %s AND revoked_at = %s
                RETURNING token_id
                """,
                (token_id, revoked_at),
            ).fetchone()
        return row is not None
