from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from fastapi import Response

from fingerauth.config import Settings
from fingerauth.logging import get_logger
from fingerauth.service.errors import AuthenticationError, InvalidTokenError
from fingerauth.storage.common import AuthStore
from fingerauth.storage.models import User

logger = get_logger(__name__)

ACCESS_TOKEN_TTL = timedelta(hours=1)
REFRESH_TOKEN_TTL = timedelta(days=15)
REFRESH_COOKIE_NAME = "refreshToken"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


class TokenService:
    """Mints and verifies HS256 access/refresh tokens.

    Both tokens carry the same ``{id, fingerprint, roles}`` claims and differ
    only in ``exp``. The service never writes to storage; session bookkeeping
    belongs to ``SessionService``.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_tokens(self, user_id: int, fingerprint_hash: str, roles: List[str]) -> TokenPair:
        now = self._now()
        payload = {"id": user_id, "fingerprint": fingerprint_hash, "roles": list(roles)}
        access_token = self._encode_jwt(
            {**payload, "exp": int((now + ACCESS_TOKEN_TTL).timestamp())}
        )
        refresh_token = self._encode_jwt(
            {**payload, "exp": int((now + REFRESH_TOKEN_TTL).timestamp())}
        )
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    def verify(self, token: Optional[str]) -> dict[str, Any]:
        """Decode ``token`` and return its claims.

        Raises:
            InvalidTokenError: For a bad signature, a non-HS256 header, a
                malformed payload or an expired token. The reason is logged,
                never returned to the caller.
        """
        if not token:
            raise InvalidTokenError("Invalid token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("Invalid token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Invalid token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # bytes: compare_digest refuses str operands with non-ASCII characters
        if not hmac.compare_digest(
            expected_sig.encode("ascii"), sig_b64.encode("utf-8", "surrogateescape")
        ):
            logger.warning("jwt_signature_mismatch")
            raise InvalidTokenError("Invalid token")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid token")
        if (
            not isinstance(payload, dict)
            or not isinstance(payload.get("id"), int)
            or isinstance(payload.get("id"), bool)
            or not isinstance(payload.get("fingerprint"), str)
            or not isinstance(payload.get("roles"), list)
        ):
            logger.warning("jwt_payload_malformed")
            raise InvalidTokenError("Invalid token")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid token")
        if exp_ts <= self._now().timestamp():
            raise InvalidTokenError("Invalid token")
        return payload

    async def get_new_tokens(
        self, old_refresh_token: str, fingerprint_hash: str
    ) -> Tuple[User, TokenPair]:
        try:
            payload = self.verify(old_refresh_token)
        except InvalidTokenError:
            raise AuthenticationError.from_key("auth.invalid_refresh_token")
        user = self.store.get_user(payload["id"])
        if not user:
            logger.warning("refresh_user_missing", user_id=payload["id"])
            raise AuthenticationError.from_key("auth.invalid_refresh_token")
        return user, self.issue_tokens(user.id, fingerprint_hash, user.roles)

    def _set_refresh_cookie(self, response: Response, value: str, expires: datetime) -> None:
        response.set_cookie(
            key=REFRESH_COOKIE_NAME,
            value=value,
            expires=expires,
            path="/",
            domain=self.settings.client_domain,
            secure=True,
            httponly=True,
            samesite=self.settings.cookie_same_site.value,
        )

    def add_refresh_cookie(self, response: Response, token: str) -> None:
        self._set_refresh_cookie(response, token, self._now() + REFRESH_TOKEN_TTL)

    def remove_refresh_cookie(self, response: Response) -> None:
        self._set_refresh_cookie(response, "", _EPOCH)
