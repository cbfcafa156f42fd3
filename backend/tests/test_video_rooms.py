"""Tests for video room rosters and chat/Q&A topic channels."""
import pytest

from app.realtime.broadcaster import Connection, LocalBroadcaster
from app.realtime.models import Channel
from app.realtime.rooms import TopicChannels, VideoRoomManager

from conftest import FakeWebSocket

SID = "s1"


@pytest.fixture
def broadcaster():
    return LocalBroadcaster()


@pytest.fixture
def rooms(broadcaster):
    return VideoRoomManager(broadcaster)


def _connect(broadcaster, identity, fail=False):
    ws = FakeWebSocket(fail=fail)
    conn = Connection(ws, identity)
    broadcaster.add_connection(conn)
    return conn, ws


def _ids(roster):
    return [p["identityId"] for p in roster]


@pytest.mark.asyncio
async def test_join_publishes_full_roster_to_everyone(rooms, broadcaster, identities):
    a, ws_a = _connect(broadcaster, identities["alice"])
    b, ws_b = _connect(broadcaster, identities["bob"])

    await rooms.join(a, SID)
    assert [_ids(r) for r in ws_a.events("participants-updated")] == [["alice"]]

    await rooms.join(b, SID)
    assert _ids(ws_a.events("participants-updated")[-1]) == ["alice", "bob"]
    assert _ids(ws_b.events("participants-updated")[-1]) == ["alice", "bob"]
    entry = ws_b.events("participants-updated")[-1][1]
    assert entry == {
        "identityId": "bob",
        "displayName": "Bob",
        "role": "attendee",
        "connectionHandle": b.id,
    }


@pytest.mark.asyncio
async def test_duplicate_join_is_deduplicated(rooms, broadcaster, identities):
    first, ws_first = _connect(broadcaster, identities["alice"])
    second, ws_second = _connect(broadcaster, identities["alice"])

    await rooms.join(first, SID)
    await rooms.join(first, SID)
    assert len(rooms.roster(SID)) == 1

    await rooms.join(second, SID)
    roster = rooms.roster(SID)
    assert len(roster) == 1
    assert roster[0].connectionHandle == second.id
    # The superseded connection no longer receives room traffic.
    assert broadcaster.members(Channel.VIDEO.topic(SID)) == {second.id}


@pytest.mark.asyncio
async def test_leave_updates_remaining_members(rooms, broadcaster, identities):
    a, ws_a = _connect(broadcaster, identities["alice"])
    b, ws_b = _connect(broadcaster, identities["bob"])
    await rooms.join(a, SID)
    await rooms.join(b, SID)
    ws_a.clear()
    ws_b.clear()

    assert await rooms.leave(b, SID) is True
    assert [_ids(r) for r in ws_a.events("participants-updated")] == [["alice"]]
    assert ws_b.events() == []
    assert await rooms.leave(b, SID) is False


@pytest.mark.asyncio
async def test_last_leave_drops_the_roster(rooms, broadcaster, identities):
    a, _ = _connect(broadcaster, identities["alice"])
    await rooms.join(a, SID)
    await rooms.leave(a, SID)
    assert SID not in rooms.rosters
    assert broadcaster.members(Channel.VIDEO.topic(SID)) == set()


@pytest.mark.asyncio
async def test_drop_connection_cleans_every_room(rooms, broadcaster, identities):
    a, ws_a = _connect(broadcaster, identities["alice"])
    b, _ = _connect(broadcaster, identities["bob"])
    await rooms.join(a, "s1")
    await rooms.join(b, "s1")
    await rooms.join(b, "s2")
    ws_a.clear()

    broadcaster.remove_connection(b.id)
    affected = await rooms.drop_connection(b.id)

    assert sorted(affected) == ["s1", "s2"]
    assert _ids(ws_a.events("participants-updated")[-1]) == ["alice"]
    assert "s2" not in rooms.rosters
    assert rooms.find("s1", "bob") is None


@pytest.mark.asyncio
async def test_drop_connection_ignores_superseded_handle(rooms, broadcaster, identities):
    old, _ = _connect(broadcaster, identities["alice"])
    new, _ = _connect(broadcaster, identities["alice"])
    await rooms.join(old, SID)
    await rooms.join(new, SID)

    assert await rooms.drop_connection(old.id) == []
    assert rooms.find(SID, "alice").connectionHandle == new.id


@pytest.mark.asyncio
async def test_leave_from_superseded_connection_keeps_live_entry(rooms, broadcaster, identities):
    old, _ = _connect(broadcaster, identities["alice"])
    new, ws_new = _connect(broadcaster, identities["alice"])
    await rooms.join(old, SID)
    await rooms.join(new, SID)
    ws_new.clear()

    assert await rooms.leave(old, SID) is False
    assert rooms.find(SID, "alice").connectionHandle == new.id
    assert rooms.is_participant(SID, "alice", new.id)
    assert broadcaster.members(Channel.VIDEO.topic(SID)) == {new.id}
    assert ws_new.events("participants-updated") == []

    assert await rooms.leave(new, SID) is True
    assert SID not in rooms.rosters


@pytest.mark.asyncio
async def test_failed_socket_is_dropped_from_topic(rooms, broadcaster, identities):
    a, _ = _connect(broadcaster, identities["alice"])
    dead, _ = _connect(broadcaster, identities["bob"], fail=True)
    broadcaster.join(dead.id, Channel.VIDEO.topic(SID))

    await rooms.join(a, SID)
    assert broadcaster.members(Channel.VIDEO.topic(SID)) == {a.id}


@pytest.mark.asyncio
async def test_topic_channels_are_independent(broadcaster, identities):
    channels = TopicChannels(broadcaster)
    a, ws_a = _connect(broadcaster, identities["alice"])
    b, ws_b = _connect(broadcaster, identities["bob"])

    channels.join(a, Channel.CHAT, SID)
    channels.join(a, Channel.CHAT, SID)
    channels.join(b, Channel.QA, SID)
    assert channels.is_member(a.id, Channel.CHAT, SID)
    assert not channels.is_member(a.id, Channel.QA, SID)

    await channels.publish(Channel.CHAT, SID, "new-message", {"n": 1})
    assert ws_a.events("new-message") == [{"n": 1}]
    assert ws_b.events("new-message") == []

    channels.leave(a, Channel.CHAT, SID)
    await channels.publish(Channel.CHAT, SID, "new-message", {"n": 2})
    assert ws_a.events("new-message") == [{"n": 1}]
