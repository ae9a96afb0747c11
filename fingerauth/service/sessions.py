from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fingerauth.logging import get_logger
from fingerauth.storage.common import AuthStore
from fingerauth.storage.models import Session

logger = get_logger(__name__)

MAX_SESSIONS_QUANTITY = 3
SESSION_TTL = timedelta(days=15)


class SessionService:
    """Per-user session bookkeeping.

    A user holds at most ``MAX_SESSIONS_QUANTITY`` sessions. Callers make room
    with ``check_quantity_sessions`` before ``create_session``; two racing
    logins may briefly leave one extra session, which the next check removes.
    """

    def __init__(self, store: AuthStore, *, max_sessions: int = MAX_SESSIONS_QUANTITY) -> None:
        self.store = store
        self.max_sessions = max_sessions

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def list_sessions(self, user_id: int) -> List[Session]:
        return self.store.list_user_sessions(user_id)

    async def create_session(
        self, user_id: int, fingerprint: str, access_token: str, refresh_token: str
    ) -> Session:
        session = self.store.create_session(
            user_id,
            fingerprint,
            access_token,
            refresh_token,
            self._now() + SESSION_TTL,
        )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session

    async def check_quantity_sessions(self, user_id: int) -> int:
        """Evict the oldest sessions so one more fits under the cap.

        Returns the number of sessions deleted.
        """
        sessions = self.store.list_user_sessions(user_id)
        if len(sessions) == self.max_sessions:
            victims = sessions[:1]
        elif len(sessions) > self.max_sessions:
            victims = sessions[: len(sessions) - (self.max_sessions - 1)]
        else:
            return 0
        removed = 0
        for session in victims:
            if self.store.delete_session(session.id):
                removed += 1
        logger.info(
            "sessions_evicted",
            user_id=user_id,
            evicted=removed,
            remaining=len(sessions) - removed,
        )
        return removed

    async def add_new_tokens(
        self,
        user_id: int,
        old_refresh_token: str,
        access_token: str,
        refresh_token: str,
    ) -> Optional[Session]:
        sessions = self.store.list_user_sessions(user_id)
        current = next((s for s in sessions if s.refresh_token == old_refresh_token), None)
        if not current:
            logger.warning("session_rotation_target_missing", user_id=user_id)
            return None
        return self.store.update_session_tokens(current.id, access_token, refresh_token)

    def is_expired(self, session: Session) -> bool:
        return self._now() > session.expires_at

    async def check_expired_session(self, session: Session) -> bool:
        """Delete ``session`` if it has expired.

        Returns True only when this call removed the row, so a live session
        and one that is already gone both report False.
        """
        if self.is_expired(session):
            deleted = self.store.delete_session(session.id)
            if deleted:
                logger.info("session_expired", user_id=session.user_id, session_id=session.id)
            return deleted
        return False

    async def delete_session_by_id(self, session_id: int) -> bool:
        return self.store.delete_session(session_id)

    async def delete_session_by_refresh_token(self, user_id: int, refresh_token: str) -> bool:
        sessions = self.store.list_user_sessions(user_id)
        current = next((s for s in sessions if s.refresh_token == refresh_token), None)
        if not current:
            return False
        deleted = self.store.delete_session(current.id)
        if deleted:
            logger.info("session_deleted", user_id=user_id, session_id=current.id)
        return deleted
