"""Tests for JWT handling and the connection authenticator."""
from datetime import timedelta

import jwt
import pytest

from app.auth.service import ConnectionAuthenticator
from app.auth.tokens import create_access_token, decode_access_token, subject_of
from app.realtime.errors import AuthenticationFailure
from app.store.schemas import UserRole


def test_token_roundtrip(config):
    token = create_access_token("alice", config, role="attendee")
    claims = decode_access_token(token, config)
    assert claims["sub"] == "alice"
    assert claims["role"] == "attendee"
    assert "exp" in claims


def test_subject_falls_back_to_legacy_claims():
    assert subject_of({"sub": "a", "userId": "b"}) == "a"
    assert subject_of({"userId": "b", "id": "c"}) == "b"
    assert subject_of({"id": 42}) == "42"
    assert subject_of({}) is None


def test_env_secret_overrides_secrets_file(config, monkeypatch):
    token = create_access_token("alice", config)
    monkeypatch.setenv("JWT_SECRET", "rotated")
    with pytest.raises(jwt.InvalidTokenError):
        decode_access_token(token, config)


@pytest.mark.asyncio
async def test_authenticate_valid_token(config, store, users):
    auth = ConnectionAuthenticator(store, config)
    identity = await auth.authenticate(create_access_token("speaker", config))
    assert identity.identityId == "speaker"
    assert identity.displayName == "Sam Speaker"
    assert identity.role == UserRole.SPEAKER


@pytest.mark.asyncio
async def test_authenticate_legacy_user_id_claim(config, store, users):
    legacy = jwt.encode({"userId": "alice"}, config.jwt_secret, algorithm="HS256")
    identity = await ConnectionAuthenticator(store, config).authenticate(legacy)
    assert identity.identityId == "alice"


@pytest.mark.asyncio
@pytest.mark.parametrize("token_factory, message", [
    (lambda cfg: None, "Authentication token is required"),
    (lambda cfg: "", "Authentication token is required"),
    (lambda cfg: "not-a-jwt", "Invalid token"),
    (lambda cfg: jwt.encode({"sub": "alice"}, "other-secret", algorithm="HS256"), "Invalid token"),
    (lambda cfg: create_access_token("alice", cfg, expires_delta=timedelta(seconds=-5)), "Token has expired"),
    (lambda cfg: jwt.encode({"role": "admin"}, cfg.jwt_secret, algorithm="HS256"), "Token has no subject"),
    (lambda cfg: create_access_token("ghost", cfg), "Account not found"),
    (lambda cfg: create_access_token("inactive", cfg), "Account is deactivated"),
])
async def test_authenticate_rejects(config, store, users, token_factory, message):
    auth = ConnectionAuthenticator(store, config)
    with pytest.raises(AuthenticationFailure) as exc:
        await auth.authenticate(token_factory(config))
    assert exc.value.message == message
    assert exc.value.code == "authentication_failed"
    assert exc.value.status_code == 401
