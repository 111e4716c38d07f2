from __future__ import annotations

import time

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from conftest import GOOGLE_CLIENT_ID, make_id_token
from storefront.auth.config import load_auth_config
from storefront.auth.google import (
    GoogleTokenVerifier,
    JwksCache,
    TokenExchangeError,
    TokenVerificationError,
    build_authorize_url,
    exchange_code_for_id_token,
)


def _verifier(jwk) -> GoogleTokenVerifier:
    return GoogleTokenVerifier(JwksCache.static([jwk]))


def test_verify_returns_identity(signing_key) -> None:
    key, jwk = signing_key
    ident = _verifier(jwk).verify(make_id_token(key), GOOGLE_CLIENT_ID)
    assert ident.sub == "google-sub-123"
    assert ident.email == "shopper@example.com"
    assert ident.email_verified is True
    assert ident.name == "Shopper"


def test_verify_accepts_audience_list_and_bare_issuer(signing_key) -> None:
    key, jwk = signing_key
    token = make_id_token(key, iss="accounts.google.com")
    ident = _verifier(jwk).verify(token, ["other-client", GOOGLE_CLIENT_ID])
    assert ident.sub == "google-sub-123"


@pytest.mark.parametrize(
    "overrides,reason",
    [
        ({"aud": "someone-else"}, "Audience"),
        ({"iss": "https://evil.example.com"}, "Issuer"),
        ({"exp": int(time.time()) - 60, "iat": int(time.time()) - 3600}, "expired"),
    ],
)
def test_verify_rejects_bad_claims(signing_key, overrides, reason) -> None:
    key, jwk = signing_key
    with pytest.raises(TokenVerificationError, match=reason):
        _verifier(jwk).verify(make_id_token(key, **overrides), GOOGLE_CLIENT_ID)


def test_verify_rejects_missing_kid(signing_key) -> None:
    key, jwk = signing_key
    with pytest.raises(TokenVerificationError, match="missing kid"):
        _verifier(jwk).verify(make_id_token(key, kid=None), GOOGLE_CLIENT_ID)


def test_verify_rejects_unknown_kid(signing_key) -> None:
    key, jwk = signing_key
    with pytest.raises(TokenVerificationError, match="Unknown signing key"):
        _verifier(jwk).verify(make_id_token(key, kid="rotated-away"), GOOGLE_CLIENT_ID)


def test_verify_rejects_signature_from_other_key(signing_key) -> None:
    _key, jwk = signing_key
    impostor = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with pytest.raises(TokenVerificationError):
        _verifier(jwk).verify(make_id_token(impostor), GOOGLE_CLIENT_ID)


def test_verify_rejects_garbage_token(signing_key) -> None:
    with pytest.raises(TokenVerificationError):
        _verifier(signing_key[1]).verify("not.a.jwt", GOOGLE_CLIENT_ID)


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_jwks_cache_refreshes_after_ttl() -> None:
    calls = []

    def fetch(url):
        calls.append(url)
        return {"keys": [{"kid": f"k{len(calls)}"}]}

    clock = _Clock()
    cache = JwksCache("https://jwks.example/certs", ttl_seconds=3600, fetch=fetch, clock=clock)

    assert cache.get_keys() == [{"kid": "k1"}]
    clock.now += 3599
    assert cache.get_keys() == [{"kid": "k1"}]
    assert len(calls) == 1

    clock.now += 2
    assert cache.get_keys() == [{"kid": "k2"}]
    assert len(calls) == 2


def test_unknown_kid_forces_one_refresh(signing_key) -> None:
    key, jwk = signing_key
    served = [[], [jwk]]
    calls = []

    def fetch(_url):
        calls.append(1)
        return {"keys": served[min(len(calls) - 1, 1)]}

    clock = _Clock()
    cache = JwksCache("https://jwks.example/certs", fetch=fetch, clock=clock)
    assert cache.get_keys() == []

    clock.now += 31
    ident = GoogleTokenVerifier(cache).verify(make_id_token(key), GOOGLE_CLIENT_ID)
    assert ident.sub == "google-sub-123"
    assert len(calls) == 2


def test_random_kids_do_not_refetch_within_cooldown(signing_key) -> None:
    _key, jwk = signing_key
    calls = []

    def fetch(_url):
        calls.append(1)
        return {"keys": [jwk]}

    clock = _Clock()
    verifier = GoogleTokenVerifier(JwksCache("https://jwks.example/certs", min_refresh_seconds=30, fetch=fetch, clock=clock))
    other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    for i in range(50):
        clock.now += 0.1
        with pytest.raises(TokenVerificationError, match="kid"):
            verifier.verify(make_id_token(other, kid=f"rotated-{i}"), GOOGLE_CLIENT_ID)
    # Initial fetch plus nothing else: every forced refresh fell inside the cooldown.
    assert len(calls) == 1

    clock.now += 30
    with pytest.raises(TokenVerificationError, match="kid"):
        verifier.verify(make_id_token(other, kid="rotated-late"), GOOGLE_CLIENT_ID)
    assert len(calls) == 2


def test_jwks_cache_rejects_malformed_document() -> None:
    cache = JwksCache("https://jwks.example/certs", fetch=lambda _u: {"nope": 1})
    with pytest.raises(ValueError):
        cache.get_keys()


def test_build_authorize_url(auth_env) -> None:
    cfg = load_auth_config()
    url = build_authorize_url(cfg, redirect_uri="https://shop.example/api/auth/google/callback", state="abc")
    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert "state=abc" in url
    assert "scope=openid+email+profile" in url
    assert f"client_id={GOOGLE_CLIENT_ID}" in url


class _Resp:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


def test_exchange_code_posts_form_and_returns_id_token(auth_env, monkeypatch) -> None:
    seen = {}

    def fake_post(url, data=None, timeout=None):
        seen.update(url=url, data=data, timeout=timeout)
        return _Resp(200, {"id_token": "tok", "access_token": "ignored"})

    monkeypatch.setattr("storefront.auth.google.requests.post", fake_post)
    out = exchange_code_for_id_token(load_auth_config(), code="c0de", redirect_uri="https://x/cb")
    assert out == "tok"
    assert seen["url"] == "https://oauth2.googleapis.com/token"
    assert seen["data"]["grant_type"] == "authorization_code"
    assert seen["data"]["client_secret"] == "test-client-secret"
    assert seen["timeout"]


@pytest.mark.parametrize("resp", [_Resp(400, {"error": "invalid_grant"}), _Resp(200, {"access_token": "x"})])
def test_exchange_code_failures(auth_env, monkeypatch, resp) -> None:
    monkeypatch.setattr("storefront.auth.google.requests.post", lambda *a, **kw: resp)
    with pytest.raises(TokenExchangeError):
        exchange_code_for_id_token(load_auth_config(), code="c0de", redirect_uri="https://x/cb")


def test_verify_reads_string_email_verified_flag(signing_key) -> None:
    key, jwk = signing_key
    ident = _verifier(jwk).verify(make_id_token(key, email_verified="false"), GOOGLE_CLIENT_ID)
    assert ident.email_verified is False
