from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class Provider(str, Enum):
    """External identity providers a user may have signed up through."""

    GOOGLE = "GOOGLE"
    YANDEX = "YANDEX"
    MAILRU = "MAILRU"


@dataclass
class User:
    id: int
    email: str
    password_hash: Optional[str] = None
    name: Optional[str] = None
    surname: Optional[str] = None
    phone: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: [Role.USER.value])
    provider: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN.value in self.roles


@dataclass
class Session:
    """One authenticated device: the fingerprint hash plus its live token pair."""

    id: int
    user_id: int
    fingerprint: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OtpRecord:
    """One-time code bookkeeping for a single anonymous user key.

    ``otp_code`` is ``None`` once a code has been consumed. ``updated_at``
    drives both the resend cooldown and the code validity window.
    """

    id: int
    user_key: str
    emails: List[str]
    fingerprint: str
    otp_code: Optional[str] = None
    mail_attempts: int = 1
    code_attempts: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
