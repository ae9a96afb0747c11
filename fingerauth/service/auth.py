from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fingerauth.config import Settings
from fingerauth.logging import get_logger
from fingerauth.service.errors import AuthenticationError
from fingerauth.service.fingerprint import Fingerprint
from fingerauth.service.otp import OtpService
from fingerauth.service.sessions import SessionService
from fingerauth.service.tokens import TokenPair, TokenService
from fingerauth.service.users import UserService
from fingerauth.storage.models import Session, User

logger = get_logger(__name__)


class OtpPurpose(str, Enum):
    LOGIN = "login"
    REGISTRATION = "registration"


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair
    session: Optional[Session] = None


class AuthService:
    """Registration, login, refresh and logout flows.

    The flows compose the user, OTP, token and session services; cookies are
    left to the HTTP layer, which receives the refresh token in the result.
    """

    def __init__(
        self,
        settings: Settings,
        users: UserService,
        tokens: TokenService,
        sessions: SessionService,
        otp: OtpService,
    ) -> None:
        self.settings = settings
        self.users = users
        self.tokens = tokens
        self.sessions = sessions
        self.otp = otp

    async def start_session(self, user: User, fingerprint_hash: str) -> AuthResult:
        """Make room under the session cap, mint a pair and record it."""
        await self.sessions.check_quantity_sessions(user.id)
        tokens = self.tokens.issue_tokens(user.id, fingerprint_hash, user.roles)
        session = await self.sessions.create_session(
            user.id, fingerprint_hash, tokens.access_token, tokens.refresh_token
        )
        return AuthResult(user=user, tokens=tokens, session=session)

    async def create_otp(
        self,
        email: str,
        purpose: OtpPurpose,
        user_key: str,
        fingerprint: Fingerprint,
        *,
        locale: Optional[str] = None,
    ) -> None:
        if purpose == OtpPurpose.REGISTRATION:
            await self.users.ensure_email_free(email)
        else:
            await self.users.require_by_email(email)
        await self.otp.get_and_send_otp(email, user_key, fingerprint, locale=locale)

    async def registration(
        self,
        email: str,
        otp_code: str,
        user_key: str,
        fingerprint: Fingerprint,
        *,
        name: str,
        surname: Optional[str] = None,
        phone: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> AuthResult:
        await self.users.ensure_email_free(email)
        await self.otp.check_otp_code(
            email, otp_code, user_key, fingerprint.raw, locale=locale
        )
        user = await self.users.create(email, name=name, surname=surname, phone=phone)
        logger.info("user_registered", user_id=user.id)
        return await self.start_session(user, fingerprint.hashed)

    async def login(
        self,
        email: str,
        otp_code: str,
        user_key: str,
        fingerprint: Fingerprint,
        *,
        locale: Optional[str] = None,
    ) -> AuthResult:
        user = await self.users.require_by_email(email)
        await self.otp.check_otp_code(
            email, otp_code, user_key, fingerprint.raw, locale=locale
        )
        logger.info("user_login", user_id=user.id, method="otp")
        return await self.start_session(user, fingerprint.hashed)

    async def password_login(
        self, email: str, password: str, fingerprint: Fingerprint
    ) -> AuthResult:
        user = await self.users.get_by_email(email)
        if not user or not self.users.verify_password(user, password):
            raise AuthenticationError.from_key("auth.invalid_credentials")
        logger.info("user_login", user_id=user.id, method="password")
        return await self.start_session(user, fingerprint.hashed)

    async def refresh(self, old_refresh_token: str, fingerprint: Fingerprint) -> AuthResult:
        user, tokens = await self.tokens.get_new_tokens(old_refresh_token, fingerprint.hashed)
        session = await self.sessions.add_new_tokens(
            user.id, old_refresh_token, tokens.access_token, tokens.refresh_token
        )
        logger.info("tokens_refreshed", user_id=user.id)
        return AuthResult(user=user, tokens=tokens, session=session)

    async def logout(self, user_id: int, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            return False
        removed = await self.sessions.delete_session_by_refresh_token(user_id, refresh_token)
        logger.info("user_logout", user_id=user_id, session_removed=removed)
        return removed

    async def set_password(self, user_id: int, password: str) -> User:
        user = await self.users.set_password(user_id, password)
        if not user:
            raise AuthenticationError.from_key("auth.invalid_access_token")
        return user
