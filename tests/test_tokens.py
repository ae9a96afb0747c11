"""Unit tests for token issuing, verification, rotation and refresh cookies."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Response

from conftest import TEST_SECRET
from fingerauth.config import SameSite, Settings
from fingerauth.service.errors import AuthenticationError, InvalidTokenError
from fingerauth.service.tokens import (
    ACCESS_TOKEN_TTL,
    REFRESH_COOKIE_NAME,
    REFRESH_TOKEN_TTL,
    TokenService,
)


@pytest.fixture
def tokens(memory_store, settings):
    return TokenService(memory_store, settings)


def _shift_clock(service: TokenService, delta: timedelta) -> None:
    now = datetime.now(timezone.utc) + delta
    service._now = lambda: now


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssueAndVerify:
    def test_round_trip_claims(self, tokens):
        pair = tokens.issue_tokens(7, "fp-hash", ["USER", "ADMIN"])
        for token in (pair.access_token, pair.refresh_token):
            claims = tokens.verify(token)
            assert claims["id"] == 7
            assert claims["fingerprint"] == "fp-hash"
            assert claims["roles"] == ["USER", "ADMIN"]

    def test_lifetimes(self, tokens):
        before = datetime.now(timezone.utc)
        pair = tokens.issue_tokens(1, "fp", ["USER"])
        access_exp = _payload(pair.access_token)["exp"]
        refresh_exp = _payload(pair.refresh_token)["exp"]
        assert abs(access_exp - (before + ACCESS_TOKEN_TTL).timestamp()) < 5
        assert abs(refresh_exp - (before + REFRESH_TOKEN_TTL).timestamp()) < 5

    def test_access_token_expires_after_an_hour(self, tokens):
        pair = tokens.issue_tokens(1, "fp", ["USER"])
        _shift_clock(tokens, ACCESS_TOKEN_TTL + timedelta(seconds=5))
        with pytest.raises(InvalidTokenError):
            tokens.verify(pair.access_token)
        # refresh token still valid at that point
        assert tokens.verify(pair.refresh_token)["id"] == 1

    def test_refresh_token_expires(self, tokens):
        pair = tokens.issue_tokens(1, "fp", ["USER"])
        _shift_clock(tokens, REFRESH_TOKEN_TTL + timedelta(seconds=5))
        with pytest.raises(InvalidTokenError):
            tokens.verify(pair.refresh_token)

    def test_rejects_foreign_signature(self, tokens, memory_store, tmp_path):
        other = TokenService(
            memory_store,
            Settings(jwt_secret="a-completely-different-secret-value", shared_fs_root=str(tmp_path)),
        )
        pair = other.issue_tokens(1, "fp", ["USER"])
        with pytest.raises(InvalidTokenError):
            tokens.verify(pair.access_token)

    def test_rejects_tampered_payload(self, tokens):
        pair = tokens.issue_tokens(1, "fp", ["USER"])
        header, _, sig = pair.access_token.split(".")
        forged = tokens._encode_segment(
            json.dumps({"id": 1, "fingerprint": "fp", "roles": ["ADMIN"], "exp": 9999999999}).encode()
        )
        with pytest.raises(InvalidTokenError):
            tokens.verify(f"{header}.{forged}.{sig}")

    @pytest.mark.parametrize("signature", ["é", "sig\udce9", "ÿÿÿÿ"])
    def test_rejects_non_ascii_signature(self, tokens, signature):
        pair = tokens.issue_tokens(1, "fp", ["USER"])
        header, payload, _ = pair.access_token.split(".")
        with pytest.raises(InvalidTokenError):
            tokens.verify(f"{header}.{payload}.{signature}")

    def test_rejects_none_algorithm(self, tokens):
        header = tokens._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        body = tokens._encode_segment(
            json.dumps({"id": 1, "fingerprint": "fp", "roles": [], "exp": 9999999999}).encode()
        )
        with pytest.raises(InvalidTokenError):
            tokens.verify(f"{header}.{body}.")

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d"])
    def test_rejects_garbage(self, tokens, token):
        with pytest.raises(InvalidTokenError):
            tokens.verify(token)

    def test_rejects_malformed_claims(self, tokens):
        token = tokens._encode_jwt({"id": "1", "fingerprint": "fp", "roles": [], "exp": 9999999999})
        with pytest.raises(InvalidTokenError):
            tokens.verify(token)


class TestGetNewTokens:
    async def test_mints_pair_for_existing_user(self, tokens, memory_store):
        user = memory_store.create_user("a@x.com", roles=["USER"])
        old = tokens.issue_tokens(user.id, "old-fp", user.roles)
        found, pair = await tokens.get_new_tokens(old.refresh_token, "new-fp")
        assert found.id == user.id
        assert tokens.verify(pair.access_token)["fingerprint"] == "new-fp"

    async def test_unknown_user_is_rejected(self, tokens):
        old = tokens.issue_tokens(999, "fp", ["USER"])
        with pytest.raises(AuthenticationError) as exc_info:
            await tokens.get_new_tokens(old.refresh_token, "fp")
        assert exc_info.value.message_key == "auth.invalid_refresh_token"

    async def test_invalid_token_is_rejected(self, tokens):
        with pytest.raises(AuthenticationError):
            await tokens.get_new_tokens("garbage", "fp")


class TestRefreshCookie:
    def test_add_cookie_attributes(self, memory_store, tmp_path):
        settings = Settings(
            jwt_secret=TEST_SECRET,
            shared_fs_root=str(tmp_path),
            client_domain="example.com",
            cookie_same_site=SameSite.STRICT,
        )
        service = TokenService(memory_store, settings)
        response = Response()
        service.add_refresh_cookie(response, "tok")
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{REFRESH_COOKIE_NAME}=tok")
        assert "Domain=example.com" in cookie
        assert "HttpOnly" in cookie
        assert "Secure" in cookie
        assert "SameSite=strict" in cookie
        assert "Path=/" in cookie

    def test_remove_cookie_expires_in_the_past(self, tokens):
        response = Response()
        tokens.remove_refresh_cookie(response)
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f'{REFRESH_COOKIE_NAME}=""') or cookie.startswith(
            f"{REFRESH_COOKIE_NAME}=;"
        )
        assert "1970" in cookie
