"""Common storage contracts shared between memory and postgres implementations.

The services only ever talk to an ``AuthStore``; both backends implement it
and rely on the helpers below so that normalization and field validation
behave identically.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from fingerauth.storage.models import OtpRecord, Session, User


# ============================================================================
# STORE PROTOCOL
# ============================================================================

class AuthStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_password(
        self, user_id: int, password_hash: Optional[str]
    ) -> Optional[User]: ...

    def update_user_roles(self, user_id: int, roles: List[str]) -> Optional[User]: ...

    # sessions
    def create_session(
        self,
        user_id: int,
        fingerprint: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> Session: ...

    def list_user_sessions(self, user_id: int) -> List[Session]: ...

    def get_session(self, session_id: int) -> Optional[Session]: ...

    def update_session_tokens(
        self, session_id: int, access_token: str, refresh_token: str
    ) -> Optional[Session]: ...

    def delete_session(self, session_id: int) -> bool: ...

    # otp records
    def get_otp_record_by_key(self, user_key: str) -> Optional[OtpRecord]: ...

    def get_otp_record(self, record_id: int) -> Optional[OtpRecord]: ...

    def create_otp_record(
        self, user_key: str, email: str, otp_code: str, fingerprint: str
    ) -> OtpRecord: ...

    def update_otp_record(
        self,
        record_id: int,
        *,
        increment_mail_attempts: bool = False,
        increment_code_attempts: bool = False,
        **fields: Any,
    ) -> Optional[OtpRecord]: ...

    def list_otp_records(
        self,
        min_mail_attempts: int,
        email_contains: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        *,
        newest_first: bool = True,
    ) -> List[OtpRecord]: ...

    def ping(self) -> bool: ...


# ============================================================================
# NORMALIZATION HELPERS
# ============================================================================

# Fields that update_otp_record may set directly
OTP_MUTABLE_FIELDS = frozenset(
    {"otp_code", "fingerprint", "mail_attempts", "code_attempts", "emails"}
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def merge_emails(existing: Iterable[str], email: Optional[str]) -> List[str]:
    """Append ``email`` to the seen list unless it is already there.

    Order of first appearance is preserved.
    """
    merged: List[str] = []
    for item in existing:
        if item not in merged:
            merged.append(item)
    if email and email not in merged:
        merged.append(email)
    return merged


def validate_otp_update_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Reject unknown OTP column names before they reach a backend.

    Raises:
        ValueError: If a field is not in ``OTP_MUTABLE_FIELDS``
    """
    unknown = set(fields) - OTP_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported otp record fields: {sorted(unknown)}")
    return fields


def parse_emails(raw: Any) -> List[str]:
    """Parse a stored email list from a JSON string or a list."""
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return [raw]
    return [str(item) for item in raw]


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
