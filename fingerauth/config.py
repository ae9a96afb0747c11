from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fingerauth.logging import get_logger

logger = get_logger(__name__)


class SameSite(str, Enum):
    """Values accepted by the browser ``SameSite`` cookie attribute."""

    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


SUPPORTED_LOCALES = ("ru", "en")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth backend."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fingerauth", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/fingerauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    admin_email: str | None = env_field(
        None, "ADMIN_EMAIL", description="Users registered with this email get ADMIN"
    )
    client_domain: str | None = env_field(
        None, "CLIENT_DOMAIN", description="Domain attribute of the auth cookies"
    )
    client_url: str = env_field("http://localhost:3000", "CLIENT_URL")
    cookie_same_site: SameSite = env_field(SameSite.LAX, "COOKIE_SAME_SITE")
    default_locale: str = env_field("ru", "DEFAULT_LOCALE")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Fingerauth", "EMAIL_FROM_NAME")
    oauth_http_timeout_seconds: float = env_field(
        10.0,
        "OAUTH_HTTP_TIMEOUT_SECONDS",
        description="Timeout for userinfo requests to OAuth providers",
    )
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins; CLIENT_URL is always allowed",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def cors_origins(self) -> list[str]:
        origins = [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]
        if self.client_url and self.client_url not in origins:
            origins.append(self.client_url)
        return origins

    @field_validator("cookie_same_site", mode="before")
    @classmethod
    def _validate_same_site(cls, value: Any) -> SameSite:
        if isinstance(value, str):
            value = value.strip().lower()
        return SameSite(value)

    @field_validator("default_locale")
    @classmethod
    def _validate_locale(cls, value: str) -> str:
        locale = (value or "").strip().lower()
        if locale not in SUPPORTED_LOCALES:
            raise ValueError(f"unsupported locale: {value}")
        return locale

    @field_validator("admin_email")
    @classmethod
    def _normalize_admin_email(cls, value: str | None) -> str | None:
        if not value:
            return None
        return value.strip().lower()

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/fingerauth"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
