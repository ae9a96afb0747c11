from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from fingerauth.logging import get_logger
from fingerauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
)
from fingerauth.service.fingerprint import matches
from fingerauth.service.sessions import SessionService
from fingerauth.service.tokens import TokenService
from fingerauth.storage.models import Role

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: int
    roles: List[str] = field(default_factory=list)
    session_id: Optional[int] = None
    fingerprint: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN.value in self.roles


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class GuardService:
    """Request admission checks for protected routes.

    Every rejection from one guard carries the same message so clients
    cannot tell which check failed; the reason goes to the log instead.
    """

    def __init__(self, tokens: TokenService, sessions: SessionService) -> None:
        self.tokens = tokens
        self.sessions = sessions

    def _reject_access(self, reason: str, **fields) -> AuthenticationError:
        logger.info("access_guard_rejected", reason=reason, **fields)
        return AuthenticationError.from_key("auth.invalid_access_token")

    def _reject_refresh(self, reason: str, **fields) -> AuthenticationError:
        logger.info("refresh_guard_rejected", reason=reason, **fields)
        return AuthenticationError.from_key("auth.invalid_refresh_token")

    async def check_access(
        self, authorization: Optional[str], raw_fingerprint: str
    ) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise self._reject_access("missing_token")
        try:
            payload = self.tokens.verify(token)
        except InvalidTokenError:
            raise self._reject_access("invalid_token")

        user_id = payload["id"]
        sessions = await self.sessions.list_sessions(user_id)
        session = next((s for s in sessions if s.access_token == token), None)
        if not session:
            raise self._reject_access("session_not_found", user_id=user_id)
        if self.sessions.is_expired(session):
            await self.sessions.check_expired_session(session)
            raise self._reject_access("session_expired", user_id=user_id, session_id=session.id)
        if not await asyncio.to_thread(matches, raw_fingerprint, payload["fingerprint"]):
            raise self._reject_access(
                "fingerprint_mismatch", user_id=user_id, session_id=session.id
            )
        return AuthContext(
            user_id=user_id,
            roles=list(payload["roles"]),
            session_id=session.id,
            fingerprint=payload["fingerprint"],
            access_token=token,
        )

    async def check_refresh(
        self, refresh_token: Optional[str], raw_fingerprint: str
    ) -> AuthContext:
        if not refresh_token:
            raise self._reject_refresh("missing_cookie")
        try:
            payload = self.tokens.verify(refresh_token)
        except InvalidTokenError:
            raise self._reject_refresh("invalid_token")

        user_id = payload["id"]
        sessions = await self.sessions.list_sessions(user_id)
        if not sessions:
            raise self._reject_refresh("no_sessions", user_id=user_id)
        session = next((s for s in sessions if s.refresh_token == refresh_token), None)
        if not session:
            raise self._reject_refresh("session_not_found", user_id=user_id)
        # no expires_at check here; the access guard removes expired rows
        if not await asyncio.to_thread(matches, raw_fingerprint, session.fingerprint):
            # treated as a stolen token: the session is revoked
            await self.sessions.delete_session_by_id(session.id)
            logger.warning(
                "refresh_fingerprint_mismatch", user_id=user_id, session_id=session.id
            )
            raise self._reject_refresh("fingerprint_mismatch", user_id=user_id)
        return AuthContext(
            user_id=user_id,
            roles=list(payload["roles"]),
            session_id=session.id,
            fingerprint=session.fingerprint,
            refresh_token=refresh_token,
        )

    def _reject_admin(self, reason: str, **fields) -> ForbiddenError:
        logger.info("admin_guard_rejected", reason=reason, **fields)
        return ForbiddenError.from_key("auth.not_enough_rights")

    def check_admin(self, authorization: Optional[str]) -> AuthContext:
        """Decode-only role check; no session lookup and no fingerprint check."""
        token = extract_bearer(authorization)
        if not token:
            raise self._reject_admin("missing_token")
        try:
            payload = self.tokens.verify(token)
        except InvalidTokenError:
            raise self._reject_admin("invalid_token")
        if Role.ADMIN.value not in payload["roles"]:
            raise self._reject_admin("missing_role", user_id=payload["id"])
        return AuthContext(
            user_id=payload["id"],
            roles=list(payload["roles"]),
            fingerprint=payload["fingerprint"],
            access_token=token,
        )
