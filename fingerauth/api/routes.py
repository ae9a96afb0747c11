from __future__ import annotations

import secrets
from typing import Optional

from fastapi import (
    APIRouter,
    Cookie,
    Depends,
    Header,
    Path,
    Query,
    Request,
    Response,
)

from fingerauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    OtpCreateRequest,
    OtpRecordResponse,
    PasswordLoginRequest,
    RegistrationRequest,
    SetPasswordRequest,
    SuspiciousQuery,
    SuspiciousRecord,
    UserResponse,
)
from fingerauth.logging import get_logger
from fingerauth.service.auth import AuthResult
from fingerauth.service.errors import AuthenticationError
from fingerauth.service.fingerprint import Fingerprint, derive, raw_fingerprint
from fingerauth.service.guards import AuthContext
from fingerauth.service.messages import negotiate_locale, translate
from fingerauth.service.oauth import resolve_provider
from fingerauth.service.runtime import get_runtime
from fingerauth.service.tokens import REFRESH_COOKIE_NAME
from fingerauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

USER_KEY_COOKIE_NAME = "unauthorizedUserKey"
USER_KEY_MAX_AGE_SECONDS = 30 * 24 * 60 * 60


# request dependencies
def get_fingerprint(request: Request) -> Fingerprint:
    return derive(request.headers)


def get_locale(accept_language: Optional[str] = Header(None)) -> str:
    return negotiate_locale(accept_language)


def get_user_key(
    response: Response,
    user_key: Optional[str] = Cookie(None, alias=USER_KEY_COOKIE_NAME),
) -> str:
    """Anonymous per-browser key that OTP records are filed under."""
    if user_key:
        return user_key
    runtime = get_runtime()
    user_key = secrets.token_urlsafe(24)
    response.set_cookie(
        USER_KEY_COOKIE_NAME,
        user_key,
        max_age=USER_KEY_MAX_AGE_SECONDS,
        path="/",
        domain=runtime.settings.client_domain,
        secure=True,
        httponly=True,
        samesite=runtime.settings.cookie_same_site.value,
    )
    return user_key


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    raw = raw_fingerprint(request.headers)
    return await runtime.guards.check_access(authorization, raw)


async def get_refresh_context(
    request: Request,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE_NAME),
) -> AuthContext:
    runtime = get_runtime()
    raw = raw_fingerprint(request.headers)
    return await runtime.guards.check_refresh(refresh_token, raw)


def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return get_runtime().guards.check_admin(authorization)


# response helpers
def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        surname=user.surname,
        phone=user.phone,
        roles=list(user.roles),
        provider=user.provider,
        has_password=bool(user.password_hash),
        created_at=user.created_at,
    )


def _auth_envelope(result: AuthResult, response: Response) -> Envelope:
    get_runtime().tokens.add_refresh_cookie(response, result.tokens.refresh_token)
    user = _user_response(result.user)
    return Envelope(
        status="ok",
        data=AuthResponse(**user.model_dump(), access_token=result.tokens.access_token),
    )


@router.post("/auth/otps/create", response_model=Envelope, tags=["auth"])
async def create_otp(
    body: OtpCreateRequest,
    fingerprint: Fingerprint = Depends(get_fingerprint),
    user_key: str = Depends(get_user_key),
    locale: str = Depends(get_locale),
):
    """Send a one-time code to ``email`` for login or registration.

    Raises:
        404: Login requested for an unknown email
        409: Registration requested for a taken email
        429: Mail cap reached, resend cooldown active, or device flagged
    """
    runtime = get_runtime()
    await runtime.auth.create_otp(
        body.email, body.type, user_key, fingerprint, locale=locale
    )
    return Envelope(
        status="ok",
        data=MessageResponse(message=translate("otp.code_sent", locale, email=body.email)),
    )


@router.post("/auth/registration", response_model=Envelope, status_code=201, tags=["auth"])
async def registration(
    body: RegistrationRequest,
    response: Response,
    fingerprint: Fingerprint = Depends(get_fingerprint),
    user_key: str = Depends(get_user_key),
    locale: str = Depends(get_locale),
):
    runtime = get_runtime()
    result = await runtime.auth.registration(
        body.email,
        body.otp_code,
        user_key,
        fingerprint,
        name=body.name,
        surname=body.surname,
        phone=body.phone,
        locale=locale,
    )
    return _auth_envelope(result, response)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    response: Response,
    fingerprint: Fingerprint = Depends(get_fingerprint),
    user_key: str = Depends(get_user_key),
    locale: str = Depends(get_locale),
):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.otp_code, user_key, fingerprint, locale=locale
    )
    return _auth_envelope(result, response)


@router.post("/auth/login/password", response_model=Envelope, tags=["auth"])
async def password_login(
    body: PasswordLoginRequest,
    response: Response,
    fingerprint: Fingerprint = Depends(get_fingerprint),
):
    runtime = get_runtime()
    result = await runtime.auth.password_login(body.email, body.password, fingerprint)
    return _auth_envelope(result, response)


@router.post("/auth/login/access-token", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    ctx: AuthContext = Depends(get_refresh_context),
    fingerprint: Fingerprint = Depends(get_fingerprint),
):
    runtime = get_runtime()
    result = await runtime.auth.refresh(ctx.refresh_token, fingerprint)
    return _auth_envelope(result, response)


@router.post("/auth/auto-logout", response_model=Envelope, tags=["auth"])
async def auto_logout(response: Response):
    get_runtime().tokens.remove_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/user-logout", response_model=Envelope, tags=["auth"])
async def user_logout(
    response: Response,
    principal: AuthContext = Depends(get_user),
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE_NAME),
):
    runtime = get_runtime()
    removed = await runtime.auth.logout(principal.user_id, refresh_token)
    runtime.tokens.remove_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "logged out", "session_removed": removed})


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def set_password(
    body: SetPasswordRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_password(principal.user_id, body.password)
    return Envelope(status="ok", data=_user_response(user))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.users.get_by_id(principal.user_id)
    if not user:
        raise AuthenticationError.from_key("auth.invalid_access_token")
    return Envelope(status="ok", data=_user_response(user))


@router.get("/oauth2/{provider}/success", response_model=Envelope, tags=["oauth"])
async def oauth_success(
    response: Response,
    provider: str = Path(..., description="OAuth provider (google, yandex, mailru)"),
    token: str = Query(..., min_length=1, max_length=4096),
    name: Optional[str] = Query(None, max_length=128),
    surname: Optional[str] = Query(None, max_length=128),
    phone: Optional[str] = Query(None, max_length=32),
    fingerprint: Fingerprint = Depends(get_fingerprint),
):
    """Finish a provider sign-in using the token from the client redirect."""
    runtime = get_runtime()
    result = await runtime.oauth.login(
        resolve_provider(provider),
        token,
        {"name": name, "surname": surname, "phone": phone},
        fingerprint.hashed,
    )
    return _auth_envelope(result, response)


@router.get("/otps/suspicious", response_model=Envelope, tags=["admin"])
async def list_suspicious(
    query: SuspiciousQuery = Depends(),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    records = await runtime.otp.list_suspicious(
        search_mail=query.search_mail,
        order_by=query.order_by,
        page=query.page,
        page_size=query.page_size,
    )
    return Envelope(
        status="ok",
        data=[
            SuspiciousRecord(id=r.id, emails=list(r.emails), updated_at=r.updated_at)
            for r in records
        ],
    )


@router.post("/otps/{record_id}/reset", response_model=Envelope, tags=["admin"])
async def reset_otp_record(
    record_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    record = await runtime.otp.reset_record(record_id)
    logger.info("admin_otp_record_reset", admin_id=principal.user_id, record_id=record_id)
    return Envelope(
        status="ok",
        data=OtpRecordResponse(
            id=record.id,
            emails=list(record.emails),
            mail_attempts=record.mail_attempts,
            code_attempts=record.code_attempts,
            updated_at=record.updated_at,
        ),
    )
