import pytest
from pydantic import ValidationError

from fingerauth.config import SameSite, Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("COOKIE_SAME_SITE", "DEFAULT_LOCALE", "CORS_ALLOW_ORIGINS", "CLIENT_URL"):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch
    reset_settings_cache()


def test_from_env_reads_environment(clean_env):
    clean_env.setenv("COOKIE_SAME_SITE", "Strict")
    clean_env.setenv("DEFAULT_LOCALE", "EN")
    clean_env.setenv("ADMIN_EMAIL", " Boss@Example.com ")
    clean_env.setenv("SMTP_PORT", "2525")
    settings = Settings.from_env()
    assert settings.cookie_same_site is SameSite.STRICT
    assert settings.default_locale == "en"
    assert settings.admin_email == "boss@example.com"
    assert settings.smtp_port == 2525
    assert settings.test_mode is True


def test_dotenv_file_is_used_when_env_missing(clean_env, tmp_path):
    (tmp_path / ".env").write_text("CLIENT_URL=https://app.example.com\n")
    settings = Settings.from_env()
    assert settings.client_url == "https://app.example.com"


def test_environment_beats_dotenv(clean_env, tmp_path):
    (tmp_path / ".env").write_text("CLIENT_URL=https://file.example.com\n")
    clean_env.setenv("CLIENT_URL", "https://env.example.com")
    assert Settings.from_env().client_url == "https://env.example.com"


def test_cors_origins_include_client_url(tmp_path):
    settings = Settings(
        jwt_secret="x" * 40,
        shared_fs_root=str(tmp_path),
        cors_allow_origins="https://a.example.com, https://b.example.com",
        client_url="https://app.example.com",
    )
    assert settings.cors_origins == [
        "https://a.example.com",
        "https://b.example.com",
        "https://app.example.com",
    ]


@pytest.mark.parametrize("field,value", [("default_locale", "de"), ("cookie_same_site", "sometimes")])
def test_rejects_invalid_values(tmp_path, field, value):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, shared_fs_root=str(tmp_path), **{field: value})


def test_generated_jwt_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings()
    second = Settings(jwt_secret=None)
    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_get_settings_is_cached(clean_env):
    reset_settings_cache()
    assert get_settings() is get_settings()
    reset_settings_cache()
    clean_env.setenv("CLIENT_URL", "https://changed.example.com")
    assert get_settings().client_url == "https://changed.example.com"
