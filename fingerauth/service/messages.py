"""User-facing message catalog.

Messages are keyed by a stable dotted name and rendered per locale with
``str.format`` placeholders (``{email}``, ``{provider}``, ``{code}``).
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from fingerauth.config import SUPPORTED_LOCALES

_fallback_locale = "ru"

_CATALOG: Dict[str, Dict[str, str]] = {
    "otp.mail_limit": {
        "ru": "Вы превысили лимит отправки сообщений. Повторите попытку позже или обратитесь к администратору.",
        "en": "You have exceeded the message sending limit. Try again later or contact the administrator.",
    },
    "otp.resend_cooldown": {
        "ru": "Следующее сообщение с кодом может быть отправлено только через минуту.",
        "en": "The next message with a code can only be sent in a minute.",
    },
    "otp.code_expired": {
        "ru": "Срок действия кода активации истёк. Новый код отправлен на почту {email}.",
        "en": "The activation code has expired. A new code has been sent to {email}.",
    },
    "otp.code_resent": {
        "ru": "Неверный код активации. Новый код отправлен на почту {email}.",
        "en": "Invalid activation code. A new code has been sent to {email}.",
    },
    "otp.invalid_code": {
        "ru": "Неверный код активации. Повторите попытку.",
        "en": "Invalid activation code. Please try again.",
    },
    "otp.invalid_info": {
        "ru": "Предоставленная вами информация не действительна.",
        "en": "The information you provided is not valid.",
    },
    "otp.code_sent": {
        "ru": "Код подтверждения отправлен на почту {email}",
        "en": "A confirmation code has been sent to {email}",
    },
    "otp.record_not_found": {
        "ru": "Запись не найдена.",
        "en": "Record not found.",
    },
    "user.not_registered": {
        "ru": "Пользователь с почтой {email} не зарегистрирован",
        "en": "User with email {email} is not registered",
    },
    "user.exists": {
        "ru": "Пользователь с почтой {email} уже существует",
        "en": "User with email {email} already exists",
    },
    "oauth.create_failed": {
        "ru": "Не получилось создать пользователя с почтой {email} в {provider}",
        "en": "Could not create a user with email {email} via {provider}",
    },
    "oauth.provider_failed": {
        "ru": "Не удалось получить данные пользователя от {provider}",
        "en": "Could not fetch user info from {provider}",
    },
    "oauth.unknown_provider": {
        "ru": "Неизвестный провайдер {provider}",
        "en": "Unknown provider {provider}",
    },
    "auth.invalid_access_token": {
        "ru": "Invalid access token",
        "en": "Invalid access token",
    },
    "auth.invalid_refresh_token": {
        "ru": "Invalid refresh token",
        "en": "Invalid refresh token",
    },
    "auth.not_enough_rights": {
        "ru": "Not enough rights",
        "en": "Not enough rights",
    },
    "auth.invalid_credentials": {
        "ru": "Неверная почта или пароль",
        "en": "Invalid email or password",
    },
    "mail.otp_subject": {
        "ru": "Подтверждение почты",
        "en": "Email confirmation",
    },
    "mail.otp_text": {
        "ru": "Ваш код подтверждения: {code}\n\nЕсли вы не запрашивали код, просто проигнорируйте это письмо.",
        "en": "Your confirmation code: {code}\n\nIf you did not request a code, just ignore this email.",
    },
    "mail.otp_heading": {
        "ru": "Подтверждение почты",
        "en": "Confirm your email",
    },
    "mail.otp_intro": {
        "ru": "Ваш код подтверждения:",
        "en": "Your confirmation code:",
    },
}


def set_fallback_locale(locale: str) -> None:
    """Choose the locale used when a request does not name a supported one."""
    global _fallback_locale
    if locale not in SUPPORTED_LOCALES:
        raise ValueError(f"unsupported locale: {locale}")
    _fallback_locale = locale


def get_fallback_locale() -> str:
    return _fallback_locale


def translate(key: str, locale: Optional[str] = None, **params: Any) -> str:
    table = _CATALOG.get(key)
    if not table:
        return key
    template = table.get(locale or _fallback_locale) or table[_fallback_locale]
    try:
        return template.format(**params)
    except (KeyError, IndexError):
        return template


def _normalize_tag(tag: str) -> str:
    return tag.strip().replace("_", "-").lower()


def negotiate_locale(
    header: Optional[str],
    supported: Iterable[str] = SUPPORTED_LOCALES,
    default: Optional[str] = None,
) -> str:
    """Pick the best supported locale from an ``Accept-Language`` header.

    Tags are ranked by q-weight; a regional tag (``en-US``) matches its
    primary language. Header order breaks ties.
    """
    fallback = default or _fallback_locale
    if not header:
        return fallback
    supported_norm = [_normalize_tag(s) for s in supported]
    choices: List[Tuple[str, float, int]] = []
    for position, part in enumerate(header.split(",")):
        sub = part.strip()
        if not sub:
            continue
        lang, _, q = sub.partition(";q=")
        try:
            weight = float(q) if q else 1.0
        except ValueError:
            weight = 0.0
        if weight <= 0:
            continue
        lang = _normalize_tag(lang.split(";")[0])
        if lang in supported_norm:
            choices.append((lang, weight, position))
            continue
        primary = lang.split("-")[0]
        if primary in supported_norm:
            choices.append((primary, weight, position))
    if not choices:
        return fallback
    choices.sort(key=lambda item: (-item[1], item[2]))
    return choices[0][0]
