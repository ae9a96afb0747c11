from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from fingerauth.config import Settings, get_settings, reset_settings_cache
from fingerauth.logging import get_logger
from fingerauth.service.auth import AuthService
from fingerauth.service.email import EmailService
from fingerauth.service.guards import GuardService
from fingerauth.service.messages import set_fallback_locale
from fingerauth.service.oauth import OAuthService
from fingerauth.service.otp import OtpService
from fingerauth.service.sessions import SessionService
from fingerauth.service.tokens import TokenService
from fingerauth.service.users import UserService
from fingerauth.storage.memory import MemoryStore
from fingerauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        set_fallback_locale(self.settings.default_locale)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            default_locale=self.settings.default_locale,
        )
        self.users = UserService(self.store, self.settings)
        self.tokens = TokenService(self.store, self.settings)
        self.sessions = SessionService(self.store)
        # in test mode mails go out inline so nothing outlives the request
        self.otp = OtpService(
            self.store, self.email, send_in_background=not self.settings.test_mode
        )
        self.guards = GuardService(self.tokens, self.sessions)
        self.auth = AuthService(
            self.settings, self.users, self.tokens, self.sessions, self.otp
        )
        self.oauth = OAuthService(self.settings, self.users, self.auth)
        logger.info("runtime_init_completed", email_configured=self.email.is_configured)


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    The first check skips the lock once the runtime exists; the second one,
    under the lock, keeps two threads from building it twice.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
