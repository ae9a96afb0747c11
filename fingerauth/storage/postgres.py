from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fingerauth.logging import get_logger
from fingerauth.storage.common import (
    merge_emails,
    normalize_email,
    parse_emails,
    safe_row_value,
    validate_otp_update_fields,
)
from fingerauth.storage.errors import ConstraintViolation
from fingerauth.storage.models import OtpRecord, Role, Session, User, utcnow


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        name TEXT,
        surname TEXT,
        phone TEXT,
        roles TEXT[] NOT NULL DEFAULT ARRAY['USER'],
        provider TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        fingerprint TEXT NOT NULL,
        access_token TEXT NOT NULL,
        refresh_token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS otp_record (
        id BIGSERIAL PRIMARY KEY,
        user_key TEXT NOT NULL UNIQUE,
        emails TEXT[] NOT NULL DEFAULT '{}',
        otp_code TEXT,
        fingerprint TEXT NOT NULL,
        mail_attempts INTEGER NOT NULL DEFAULT 1,
        code_attempts INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_record_mail_attempts_idx ON otp_record (mail_attempts)",
)


class PostgresStore:
    """Postgres-backed store for users, sessions and OTP records."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: Any) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            password_hash=safe_row_value(row, "password_hash"),
            name=safe_row_value(row, "name"),
            surname=safe_row_value(row, "surname"),
            phone=safe_row_value(row, "phone"),
            roles=list(safe_row_value(row, "roles") or [Role.USER.value]),
            provider=safe_row_value(row, "provider"),
            created_at=safe_row_value(row, "created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Any) -> Session:
        return Session(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            fingerprint=row["fingerprint"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            created_at=safe_row_value(row, "created_at") or utcnow(),
        )

    @staticmethod
    def _otp_from_row(row: Any) -> OtpRecord:
        return OtpRecord(
            id=int(row["id"]),
            user_key=row["user_key"],
            emails=parse_emails(safe_row_value(row, "emails")),
            otp_code=safe_row_value(row, "otp_code"),
            fingerprint=safe_row_value(row, "fingerprint", ""),
            mail_attempts=int(safe_row_value(row, "mail_attempts", 1)),
            code_attempts=int(safe_row_value(row, "code_attempts", 1)),
            created_at=safe_row_value(row, "created_at") or utcnow(),
            updated_at=safe_row_value(row, "updated_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        phone: Optional[str] = None,
        roles: Optional[List[str]] = None,
        provider: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, password_hash, name, surname, phone, roles, provider)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        normalize_email(email),
                        password_hash,
                        name,
                        surname,
                        phone,
                        list(roles or [Role.USER.value]),
                        provider,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="app_user_email_key"
            )
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_password(
        self, user_id: int, password_hash: Optional[str]
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s RETURNING *",
                (password_hash, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_roles(self, user_id: int, roles: List[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET roles = %s WHERE id = %s RETURNING *",
                (list(roles), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # sessions
    def create_session(
        self,
        user_id: int,
        fingerprint: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (user_id, fingerprint, access_token, refresh_token, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, fingerprint, access_token, refresh_token, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return self._session_from_row(row)

    def list_user_sessions(self, user_id: int) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at ASC, id ASC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def get_session(self, session_id: int) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session_tokens(
        self, session_id: int, access_token: str, refresh_token: str
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET access_token = %s, refresh_token = %s
                WHERE id = %s
                RETURNING *
                """,
                (access_token, refresh_token, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session(self, session_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    # otp records
    def get_otp_record_by_key(self, user_key: str) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_record WHERE user_key = %s", (user_key,)
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def get_otp_record(self, record_id: int) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM otp_record WHERE id = %s", (record_id,)
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def create_otp_record(
        self, user_key: str, email: str, otp_code: str, fingerprint: str
    ) -> OtpRecord:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO otp_record (user_key, emails, otp_code, fingerprint)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_key) DO NOTHING
                RETURNING *
                """,
                (user_key, [email], otp_code, fingerprint),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "otp record already exists",
                {"field": "user_key"},
                constraint="otp_record_user_key_key",
            )
        return self._otp_from_row(row)

    def update_otp_record(
        self,
        record_id: int,
        *,
        increment_mail_attempts: bool = False,
        increment_code_attempts: bool = False,
        **fields: Any,
    ) -> Optional[OtpRecord]:
        validate_otp_update_fields(fields)
        assignments: List[str] = []
        params: List[Any] = []
        for key, value in fields.items():
            if key == "emails":
                value = merge_emails(value, None)
            # column names come from OTP_MUTABLE_FIELDS only
            assignments.append(f"{key} = %s")
            params.append(value)
        if increment_mail_attempts:
            assignments.append("mail_attempts = mail_attempts + 1")
        if increment_code_attempts:
            assignments.append("code_attempts = code_attempts + 1")
        assignments.append("updated_at = now()")
        params.append(record_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE otp_record SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
        return self._otp_from_row(row) if row else None

    def list_otp_records(
        self,
        min_mail_attempts: int,
        email_contains: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        *,
        newest_first: bool = True,
    ) -> List[OtpRecord]:
        clauses = ["mail_attempts >= %s"]
        params: List[Any] = [min_mail_attempts]
        if email_contains:
            clauses.append("position(%s in array_to_string(emails, ' ')) > 0")
            params.append(email_contains)
        direction = "DESC" if newest_first else "ASC"
        query = (
            f"SELECT * FROM otp_record WHERE {' AND '.join(clauses)} "
            f"ORDER BY updated_at {direction}, id {direction}"
        )
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        if offset:
            query += " OFFSET %s"
            params.append(offset)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._otp_from_row(row) for row in rows]
