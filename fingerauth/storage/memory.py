from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fingerauth.logging import get_logger
from fingerauth.storage.common import (
    merge_emails,
    normalize_email,
    validate_otp_update_fields,
)
from fingerauth.storage.errors import ConstraintViolation
from fingerauth.storage.models import OtpRecord, Role, Session, User, utcnow


class MemoryStore:
    """In-memory backing store persisted as JSON under ``fs_root/state``.

    Every public method holds ``_data_lock`` for its whole duration, so each
    call behaves like a single atomic statement against a database. Returned
    objects are copies; mutate through the store methods.
    """

    def __init__(self, fs_root: str = "/tmp/fingerauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.sessions: Dict[int, Session] = {}
        self.otp_records: Dict[int, OtpRecord] = {}
        self._sequences: Dict[str, int] = {"user": 0, "session": 0, "otp": 0}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _next_id(self, kind: str) -> int:
        self._sequences[kind] += 1
        return self._sequences[kind]

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def ping(self) -> bool:
        with self._data_lock:
            return True

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
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="app_user_email_key"
                )
            user = User(
                id=self._next_id("user"),
                email=email,
                password_hash=password_hash,
                name=name,
                surname=surname,
                phone=phone,
                roles=list(roles or [Role.USER.value]),
                provider=provider,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user, roles=list(user.roles))

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user, roles=list(user.roles)) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user, roles=list(user.roles)) if user else None

    def update_user_password(
        self, user_id: int, password_hash: Optional[str]
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            self._persist_state()
            return replace(user, roles=list(user.roles))

    def update_user_roles(self, user_id: int, roles: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(roles)
            self._persist_state()
            return replace(user, roles=list(user.roles))

    # sessions
    def create_session(
        self,
        user_id: int,
        fingerprint: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session(
                id=self._next_id("session"),
                user_id=user_id,
                fingerprint=fingerprint,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def list_user_sessions(self, user_id: int) -> List[Session]:
        with self._data_lock:
            owned = [s for s in self.sessions.values() if s.user_id == user_id]
            owned.sort(key=lambda s: (s.created_at, s.id))
            return [replace(s) for s in owned]

    def get_session(self, session_id: int) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def update_session_tokens(
        self, session_id: int, access_token: str, refresh_token: str
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.access_token = access_token
            sess.refresh_token = refresh_token
            self._persist_state()
            return replace(sess)

    def delete_session(self, session_id: int) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    # otp records
    def get_otp_record_by_key(self, user_key: str) -> Optional[OtpRecord]:
        with self._data_lock:
            record = next(
                (r for r in self.otp_records.values() if r.user_key == user_key), None
            )
            return self._copy_record(record) if record else None

    def get_otp_record(self, record_id: int) -> Optional[OtpRecord]:
        with self._data_lock:
            record = self.otp_records.get(record_id)
            return self._copy_record(record) if record else None

    def create_otp_record(
        self, user_key: str, email: str, otp_code: str, fingerprint: str
    ) -> OtpRecord:
        with self._data_lock:
            if any(r.user_key == user_key for r in self.otp_records.values()):
                raise ConstraintViolation(
                    "otp record already exists",
                    {"field": "user_key"},
                    constraint="otp_record_user_key_key",
                )
            now = utcnow()
            record = OtpRecord(
                id=self._next_id("otp"),
                user_key=user_key,
                emails=[email],
                fingerprint=fingerprint,
                otp_code=otp_code,
                created_at=now,
                updated_at=now,
            )
            self.otp_records[record.id] = record
            self._persist_state()
            return self._copy_record(record)

    def update_otp_record(
        self,
        record_id: int,
        *,
        increment_mail_attempts: bool = False,
        increment_code_attempts: bool = False,
        **fields: Any,
    ) -> Optional[OtpRecord]:
        validate_otp_update_fields(fields)
        with self._data_lock:
            record = self.otp_records.get(record_id)
            if not record:
                return None
            for key, value in fields.items():
                if key == "emails":
                    value = merge_emails(value, None)
                setattr(record, key, value)
            if increment_mail_attempts:
                record.mail_attempts += 1
            if increment_code_attempts:
                record.code_attempts += 1
            record.updated_at = utcnow()
            self._persist_state()
            return self._copy_record(record)

    def list_otp_records(
        self,
        min_mail_attempts: int,
        email_contains: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        *,
        newest_first: bool = True,
    ) -> List[OtpRecord]:
        with self._data_lock:
            results = [
                r
                for r in self.otp_records.values()
                if r.mail_attempts >= min_mail_attempts
                and (
                    not email_contains
                    or any(email_contains in email for email in r.emails)
                )
            ]
            results.sort(key=lambda r: (r.updated_at, r.id), reverse=newest_first)
            end = offset + limit if limit is not None else None
            return [self._copy_record(r) for r in results[offset:end]]

    @staticmethod
    def _copy_record(record: OtpRecord) -> OtpRecord:
        return replace(record, emails=list(record.emails))

    def _persist_state(self) -> None:
        state = {
            "sequences": self._sequences,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "otp_records": [
                self._serialize_otp_record(r) for r in self.otp_records.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])
        }
        self.sessions = {
            int(s["id"]): self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.otp_records = {
            int(r["id"]): self._deserialize_otp_record(r)
            for r in data.get("otp_records", [])
        }
        sequences = data.get("sequences", {})
        self._sequences = {
            "user": max(sequences.get("user", 0), max(self.users, default=0)),
            "session": max(sequences.get("session", 0), max(self.sessions, default=0)),
            "otp": max(sequences.get("otp", 0), max(self.otp_records, default=0)),
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            otp_records=len(self.otp_records),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "name": user.name,
            "surname": user.surname,
            "phone": user.phone,
            "roles": user.roles,
            "provider": user.provider,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            email=data["email"],
            password_hash=data.get("password_hash"),
            name=data.get("name"),
            surname=data.get("surname"),
            phone=data.get("phone"),
            roles=list(data.get("roles") or [Role.USER.value]),
            provider=data.get("provider"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "fingerprint": session.fingerprint,
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            fingerprint=data["fingerprint"],
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_otp_record(self, record: OtpRecord) -> dict:
        return {
            "id": record.id,
            "user_key": record.user_key,
            "emails": record.emails,
            "otp_code": record.otp_code,
            "fingerprint": record.fingerprint,
            "mail_attempts": record.mail_attempts,
            "code_attempts": record.code_attempts,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_otp_record(self, data: dict) -> OtpRecord:
        return OtpRecord(
            id=int(data["id"]),
            user_key=data["user_key"],
            emails=list(data.get("emails", [])),
            otp_code=data.get("otp_code"),
            fingerprint=data.get("fingerprint", ""),
            mail_attempts=int(data.get("mail_attempts", 1)),
            code_attempts=int(data.get("code_attempts", 1)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
