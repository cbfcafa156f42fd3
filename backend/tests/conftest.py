"""Shared test fixtures and configuration for backend tests."""
import asyncio
from datetime import timedelta
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from app.auth.tokens import create_access_token
from app.config import AppConfig, JWTSecrets, Secrets, StorageSettings, set_config
from app.main import app
from app.realtime import SessionRoomHub, set_hub
from app.realtime.models import ConnectionIdentity
from app.store.schemas import UserRole
from app.store.service import ConferenceStore

SESSION_ID = "session-1"


def run(coro):
    """Drive a store coroutine from synchronous test code."""
    return asyncio.run(coro)


class FakeWebSocket:
    """Records frames sent by the hub; optionally fails every send."""

    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail

    async def send_json(self, data) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self, name: Optional[str] = None):
        return [f["data"] for f in self.sent if name is None or f["event"] == name]

    def names(self):
        return [f["event"] for f in self.sent]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def config(monkeypatch):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    cfg = AppConfig(
        storage=StorageSettings(db_path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key="test-secret")),
    )
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture
def store():
    """A fresh in-memory store per test."""
    s = ConferenceStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def users(store):
    """alice and bob are registered for SESSION_ID, carol is not."""
    created = {
        "alice": run(store.create_user("Alice", "alice@example.com", user_id="alice")),
        "bob": run(store.create_user("Bob", "bob@example.com", user_id="bob")),
        "carol": run(store.create_user("Carol", "carol@example.com", user_id="carol")),
        "speaker": run(store.create_user(
            "Sam Speaker", "sam@example.com", role=UserRole.SPEAKER, user_id="speaker"
        )),
        "admin": run(store.create_user(
            "Ada Admin", "ada@example.com", role=UserRole.ADMIN, user_id="admin"
        )),
        "inactive": run(store.create_user(
            "Ivan", "ivan@example.com", is_active=False, user_id="inactive"
        )),
    }
    run(store.create_session("Realtime Systems", "speaker", session_id=SESSION_ID))
    run(store.add_attendee(SESSION_ID, "alice"))
    run(store.add_attendee(SESSION_ID, "bob"))
    return created


@pytest.fixture
def identities(users):
    return {name: ConnectionIdentity.from_user(user) for name, user in users.items()}


@pytest.fixture
def hub(config, store):
    h = SessionRoomHub(store, config)
    set_hub(h)
    yield h
    set_hub(None)


@pytest.fixture
def token(config):
    def _token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
        return create_access_token(user_id, config, expires_delta=expires_delta)
    return _token


@pytest.fixture
def auth_headers(token):
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {token(user_id)}"}
    return _headers


@pytest.fixture
def api_client(hub, users):
    """TestClient sharing one event loop across all its sockets and requests."""
    with TestClient(app) as client:
        yield client
