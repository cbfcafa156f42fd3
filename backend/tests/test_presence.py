"""Tests for presence registration and reconciliation."""
import pytest

from app.realtime.broadcaster import Connection, LocalBroadcaster
from app.realtime.presence import LocalPresenceRegistry, PresenceService

from conftest import FakeWebSocket


@pytest.fixture
def presence():
    return PresenceService(LocalPresenceRegistry(), LocalBroadcaster())


def _connect(presence, identity):
    ws = FakeWebSocket()
    conn = Connection(ws, identity)
    presence.broadcaster.add_connection(conn)
    return conn, ws


@pytest.mark.asyncio
async def test_register_announces_to_others_and_sends_roster(presence, identities):
    a, ws_a = _connect(presence, identities["alice"])
    await presence.register_connection(a)
    assert ws_a.names() == ["users-online"]
    assert [u["id"] for u in ws_a.events("users-online")[0]] == ["alice"]

    b, ws_b = _connect(presence, identities["bob"])
    await presence.register_connection(b)

    assert ws_a.events("user-connected") == [{"id": "bob", "name": "Bob", "role": "attendee"}]
    assert ws_b.events("user-connected") == []
    online = ws_b.events("users-online")[0]
    assert {u["id"] for u in online} == {"alice", "bob"}
    assert all(u["status"] == "online" for u in online)


@pytest.mark.asyncio
async def test_one_entry_per_identity_last_connection_wins(presence, identities):
    first, _ = _connect(presence, identities["alice"])
    second, _ = _connect(presence, identities["alice"])
    await presence.register_connection(first)
    await presence.register_connection(second)

    entries = presence.list_online()
    assert len(entries) == 1
    assert entries[0].connectionHandle == second.id
    assert presence.connection_for("alice") == second.id


@pytest.mark.asyncio
async def test_stale_disconnect_keeps_live_entry(presence, identities):
    watcher, ws_w = _connect(presence, identities["bob"])
    await presence.register_connection(watcher)

    old, _ = _connect(presence, identities["alice"])
    new, _ = _connect(presence, identities["alice"])
    await presence.register_connection(old)
    await presence.register_connection(new)
    ws_w.clear()

    assert await presence.unregister_connection("alice", old.id) is False
    assert presence.connection_for("alice") == new.id
    assert ws_w.events("user-disconnected") == []

    assert await presence.unregister_connection("alice", new.id) is True
    assert presence.connection_for("alice") is None
    assert ws_w.events("user-disconnected") == ["alice"]


@pytest.mark.asyncio
async def test_unregister_unknown_identity_is_noop(presence):
    assert await presence.unregister_connection("nobody", "conn") is False
    assert presence.list_online() == []
