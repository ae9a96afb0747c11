from __future__ import annotations

from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from fingerauth.config import Settings
from fingerauth.logging import get_logger
from fingerauth.service.errors import ConflictError, NotFoundError
from fingerauth.storage.common import AuthStore, normalize_email
from fingerauth.storage.errors import ConstraintViolation
from fingerauth.storage.models import Provider, Role, User

logger = get_logger(__name__)


class UserService:
    """Identity records: lookup, creation, roles and optional passwords."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def roles_for(self, email: str) -> List[str]:
        roles = [Role.USER.value]
        if self.settings.admin_email and normalize_email(email) == self.settings.admin_email:
            roles.append(Role.ADMIN.value)
        return roles

    async def get_by_id(self, user_id: int) -> Optional[User]:
        return self.store.get_user(user_id)

    async def get_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email)

    async def ensure_email_free(self, email: str) -> None:
        if self.store.get_user_by_email(email):
            raise ConflictError.from_key("user.exists", email=email)

    async def require_by_email(self, email: str) -> User:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError.from_key("user.not_registered", email=email)
        return user

    async def create(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        phone: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        try:
            user = self.store.create_user(
                email,
                name=name,
                surname=surname,
                phone=phone,
                roles=self.roles_for(email),
                password_hash=self._hash_password(password) if password else None,
            )
        except ConstraintViolation:
            raise ConflictError.from_key("user.exists", email=email)
        logger.info("user_created", user_id=user.id, roles=user.roles)
        return user

    async def create_by_oauth(
        self,
        provider: Provider,
        email: str,
        *,
        name: Optional[str] = None,
        surname: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        user = self.store.create_user(
            email,
            name=name,
            surname=surname,
            phone=phone,
            roles=self.roles_for(email),
            provider=provider.value,
        )
        logger.info(
            "user_created", user_id=user.id, roles=user.roles, provider=provider.value
        )
        return user

    async def grant_admin(self, user_id: int) -> Optional[User]:
        user = self.store.get_user(user_id)
        if not user:
            return None
        if Role.ADMIN.value in user.roles:
            return user
        roles = list(dict.fromkeys([*user.roles, Role.USER.value, Role.ADMIN.value]))
        logger.info("user_role_granted", user_id=user_id, role=Role.ADMIN.value)
        return self.store.update_user_roles(user_id, roles)

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    async def set_password(self, user_id: int, password: str) -> Optional[User]:
        user = self.store.update_user_password(user_id, self._hash_password(password))
        if user:
            logger.info("user_password_set", user_id=user_id)
        return user

    def verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            logger.info("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            return False
