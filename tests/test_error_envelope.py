"""Error envelope shape and the HTTP plumbing around it.

Every failure is returned as::

    {"status": "error", "error": {"code", "message", "details"}, "request_id"}
"""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from conftest import DEVICE_A
from fingerauth import app as app_module
from fingerauth.api.error_handling import _error_code_for_status, _error_response
from fingerauth.api.schemas import ErrorBody
from fingerauth.service.errors import RateLimitedError
from fingerauth.storage.errors import ConstraintViolation


@pytest.fixture
def client():
    return TestClient(app_module.app, base_url="https://testserver")


class TestErrorBody:
    def test_defaults(self):
        error = ErrorBody(code="not_found", message="missing")
        assert error.details is None

    @pytest.mark.parametrize("code", ["code_expired", "invalid_code", "rate_limited"])
    def test_otp_codes_are_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="m")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [(401, "unauthorized"), (403, "forbidden"), (422, "validation_error"), (418, "server_error")],
    )
    def test_status_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_body(self):
        resp = _error_response(429, "slow down", {"retry_after": 60})
        assert resp.status_code == 429
        assert b'"code":"rate_limited"' in resp.body
        assert b'"retry_after":60' in resp.body


class TestEnvelopeOverHttp:
    def test_service_error_is_localized(self, client):
        body = {"email": "a@x.com", "otp_code": "1234"}
        ru = client.post("/v1/auth/login", json=body, headers={"accept-language": "ru"})
        en = client.post("/v1/auth/login", json=body, headers={"accept-language": "en"})

        assert ru.status_code == en.status_code == 404
        assert ru.json()["error"]["message"] == "Пользователь с почтой a@x.com не зарегистрирован"
        assert en.json()["error"]["message"] == "User with email a@x.com is not registered"
        assert en.json()["status"] == "error"
        assert en.json()["error"]["details"] is None

    def test_missing_language_uses_default_locale(self, client):
        resp = client.post("/v1/auth/login", json={"email": "a@x.com", "otp_code": "1234"})
        assert resp.json()["error"]["message"].startswith("Пользователь")

    def test_validation_error_lists_fields(self, client):
        resp = client.post(
            "/v1/auth/otps/create", json={"email": "not-an-email", "type": "signup"}, headers=DEVICE_A
        )
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "invalid request"
        locs = {tuple(item["loc"]) for item in error["details"]}
        assert ("body", "email") in locs
        assert ("body", "type") in locs

    def test_request_id_is_echoed(self, client):
        resp = client.post(
            "/v1/auth/login",
            json={"email": "a@x.com", "otp_code": "1234"},
            headers={"X-Request-ID": "req-123"},
        )
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"

    def test_request_id_is_generated(self, client):
        resp = client.get("/healthz")
        assert resp.headers["X-Request-ID"]

    def test_unknown_route(self, client):
        resp = client.get("/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == {"code": "not_found", "message": "Not Found", "details": None}


class TestUnhandledErrors:
    @pytest.fixture
    def failing_client(self):
        application = app_module.create_app()

        @application.get("/boom")
        async def boom():
            raise KeyError("kaput")

        @application.get("/conflict")
        async def conflict():
            raise ConstraintViolation("duplicate", constraint="app_user_email_key")

        @application.get("/limited")
        async def limited():
            raise RateLimitedError("too many", detail={"retry_after": 60})

        return TestClient(application, raise_server_exceptions=False)

    def test_uncaught_exception_is_hidden(self, failing_client):
        resp = failing_client.get("/boom")
        assert resp.status_code == 500
        assert resp.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }

    def test_constraint_violation_is_conflict(self, failing_client):
        resp = failing_client.get("/conflict")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_service_error_details(self, failing_client):
        resp = failing_client.get("/limited")
        assert resp.status_code == 429
        assert resp.json()["error"]["message"] == "too many"
        assert resp.json()["error"]["details"] == {"retry_after": 60}


class TestHealthAndHeaders:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["version"] == app_module.__version__

    def test_unhealthy_store(self, client, monkeypatch):
        from fingerauth.service.runtime import get_runtime

        def broken_ping():
            raise ConnectionError("db down")

        monkeypatch.setattr(get_runtime().store, "ping", broken_ping)
        body = client.get("/healthz").json()
        assert body["status"] == "unhealthy"
        assert body["checks"]["database"]["status"] == "unhealthy"

    def test_security_headers(self, client):
        resp = client.get("/healthz")
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert "no-store" in resp.headers["Cache-Control"]
        assert "camera=()" in resp.headers["Permissions-Policy"]
