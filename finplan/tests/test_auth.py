"""Tests for identity resolution (HS256 JWT or X-User-Id)."""
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from finplan.core import auth
from finplan.core.errors import UnauthenticatedError

SECRET = "test-secret-with-enough-bytes-for-hs256"


def _token(claims, secret=SECRET):
    return jwt.encode(claims, secret, algorithm="HS256")


def test_valid_token_returns_subject():
    assert auth.verify_jwt(_token({"sub": "user_42"}), secret=SECRET) == "user_42"


def test_expired_token_rejected():
    expired = _token({"sub": "user_42", "exp": datetime.now(timezone.utc) - timedelta(minutes=5)})
    with pytest.raises(UnauthenticatedError) as exc:
        auth.verify_jwt(expired, secret=SECRET)
    assert exc.value.message == "Token expired"


def test_wrong_signature_rejected():
    with pytest.raises(UnauthenticatedError):
        auth.verify_jwt(_token({"sub": "user_42"}, secret="another-secret-of-sufficient-length"), secret=SECRET)


def test_missing_subject_rejected():
    with pytest.raises(UnauthenticatedError):
        auth.verify_jwt(_token({"role": "admin"}), secret=SECRET)


def test_audience_is_checked_when_configured():
    token = _token({"sub": "user_42", "aud": "finplan"})
    assert auth.verify_jwt(token, secret=SECRET, audience="finplan") == "user_42"
    with pytest.raises(UnauthenticatedError):
        auth.verify_jwt(token, secret=SECRET, audience="someone-else")


def test_no_secret_disables_jwt(monkeypatch):
    monkeypatch.setattr(auth.settings, "AUTH_JWT_SECRET", None)
    assert auth.verify_jwt(_token({"sub": "user_42"})) is None


def test_bearer_token_over_http(client, monkeypatch):
    monkeypatch.setattr(auth.settings, "AUTH_JWT_SECRET", SECRET)
    client.post(
        "/api/subscriptions",
        json={"plan_tier": "FREE"},
        headers={"Authorization": f"Bearer {_token({'sub': 'jwt-user'})}"},
    )
    resp = client.get("/api/subscriptions/current", headers={"X-User-Id": "jwt-user"})
    assert resp.status_code == 200


def test_invalid_bearer_token_is_401_even_with_header(client, monkeypatch):
    monkeypatch.setattr(auth.settings, "AUTH_JWT_SECRET", SECRET)
    resp = client.get(
        "/api/subscriptions/current",
        headers={"Authorization": "Bearer not-a-jwt", "X-User-Id": "spoofed"},
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthenticated"
