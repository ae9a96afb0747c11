from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from fingerauth.config import Settings
from fingerauth.logging import get_logger
from fingerauth.service.auth import AuthResult, AuthService
from fingerauth.service.errors import AuthenticationError, BadRequestError, NotFoundError
from fingerauth.service.users import UserService
from fingerauth.storage.errors import ConstraintViolation
from fingerauth.storage.models import Provider

logger = get_logger(__name__)

# Userinfo endpoints called with the provider access token from the client redirect
OAUTH_PROVIDERS: Dict[Provider, Dict[str, str]] = {
    Provider.GOOGLE: {
        "slug": "google",
        "userinfo_url": "https://www.googleapis.com/oauth2/v3/tokeninfo",
        "token_style": "query",
    },
    Provider.YANDEX: {
        "slug": "yandex",
        "userinfo_url": "https://login.yandex.ru/info",
        "token_style": "header",
    },
    Provider.MAILRU: {
        "slug": "mailru",
        "userinfo_url": "https://oauth.mail.ru/userinfo",
        "token_style": "query",
    },
}


@dataclass
class OAuthProfile:
    """Normalized identity returned by a provider, plus client-supplied overrides."""

    email: str
    name: Optional[str] = None
    surname: Optional[str] = None
    phone: Optional[str] = None


def resolve_provider(slug: str) -> Provider:
    for provider, config in OAUTH_PROVIDERS.items():
        if config["slug"] == slug.lower():
            return provider
    raise NotFoundError.from_key("oauth.unknown_provider", provider=slug)


def _clean(value: Any) -> Optional[str]:
    # redirect query strings carry "null"/"undefined" for absent fields
    if value is None:
        return None
    text = str(value).strip()
    if not text or text in {"null", "undefined"}:
        return None
    return text


class OAuthService:
    def __init__(
        self,
        settings: Settings,
        users: UserService,
        auth: AuthService,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.users = users
        self.auth = auth
        self._transport = transport

    def _parse_userinfo(self, provider: Provider, userinfo: dict) -> dict:
        """Parse user info from OAuth provider into standardized format."""
        if provider == Provider.GOOGLE:
            return {
                "email": userinfo.get("email"),
                "name": userinfo.get("given_name") or userinfo.get("name"),
                "surname": userinfo.get("family_name"),
                "phone": None,
            }
        if provider == Provider.YANDEX:
            default_phone = userinfo.get("default_phone") or {}
            return {
                "email": userinfo.get("default_email")
                or next(iter(userinfo.get("emails") or []), None),
                "name": userinfo.get("first_name"),
                "surname": userinfo.get("last_name"),
                "phone": default_phone.get("number") if isinstance(default_phone, dict) else None,
            }
        return {
            "email": userinfo.get("email"),
            "name": userinfo.get("first_name") or userinfo.get("name"),
            "surname": userinfo.get("last_name"),
            "phone": None,
        }

    async def fetch_userinfo(self, provider: Provider, token: str) -> dict:
        """Exchange a provider access token for a normalized identity.

        Raises:
            AuthenticationError: When the provider rejects the token or returns
                something without an email address.
        """
        config = OAUTH_PROVIDERS[provider]
        params: Dict[str, str] = {}
        headers = {"Accept": "application/json"}
        if config["token_style"] == "header":
            headers["Authorization"] = f"OAuth {token}"
            params["format"] = "json"
        else:
            params["access_token"] = token

        failure = AuthenticationError.from_key(
            "oauth.provider_failed", provider=config["slug"]
        )
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_http_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.get(
                    config["userinfo_url"], params=params, headers=headers
                )
                response.raise_for_status()
                userinfo = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "oauth_userinfo_http_error",
                provider=config["slug"],
                status_code=e.response.status_code,
            )
            raise failure
        except httpx.HTTPError as e:
            logger.error("oauth_userinfo_error", provider=config["slug"], error=str(e))
            raise failure
        except ValueError as e:
            logger.error("oauth_userinfo_parse_error", provider=config["slug"], error=str(e))
            raise failure

        if not isinstance(userinfo, dict):
            logger.error(
                "oauth_userinfo_invalid_format",
                provider=config["slug"],
                type=type(userinfo).__name__,
            )
            raise failure
        identity = self._parse_userinfo(provider, userinfo)
        if not _clean(identity.get("email")):
            logger.error("oauth_identity_missing_email", provider=config["slug"])
            raise failure
        return identity

    async def login(
        self,
        provider: Provider,
        token: str,
        profile: Optional[Dict[str, Optional[str]]],
        fingerprint_hash: str,
    ) -> AuthResult:
        """Sign in with a provider token, creating the user on first visit.

        ``profile`` holds the name fields the client passed on the redirect;
        they take precedence over what the provider reports.
        """
        identity = await self.fetch_userinfo(provider, token)
        overrides = profile or {}
        profile = OAuthProfile(
            email=_clean(identity["email"]).lower(),
            name=_clean(overrides.get("name")) or _clean(identity.get("name")),
            surname=_clean(overrides.get("surname")) or _clean(identity.get("surname")),
            phone=_clean(overrides.get("phone")) or _clean(identity.get("phone")),
        )

        user = await self.users.get_by_email(profile.email)
        if not user:
            try:
                user = await self.users.create_by_oauth(
                    provider,
                    profile.email,
                    name=profile.name,
                    surname=profile.surname,
                    phone=profile.phone,
                )
            except ConstraintViolation:
                logger.warning("oauth_user_create_failed", provider=provider.value)
                raise BadRequestError.from_key(
                    "oauth.create_failed",
                    email=profile.email,
                    provider=OAUTH_PROVIDERS[provider]["slug"],
                )
        logger.info("oauth_login", user_id=user.id, provider=provider.value)
        return await self.auth.start_session(user, fingerprint_hash)
