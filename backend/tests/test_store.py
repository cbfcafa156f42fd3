"""Tests for the DuckDB conference store."""
from datetime import datetime, timedelta, timezone

import pytest

from app.store.schemas import MessageKind, SessionStatus, UserRole, VoteDirection
from app.store.service import ConferenceStore, StoreError


@pytest.fixture
def db():
    s = ConferenceStore(":memory:")
    yield s
    s.close()


@pytest.mark.asyncio
async def test_user_roundtrip(db):
    user = await db.create_user("Alice", "alice@example.com", role=UserRole.SPEAKER, user_id="u1")
    assert user.id == "u1"
    assert user.role == UserRole.SPEAKER
    assert user.is_active

    await db.set_user_active("u1", False)
    assert (await db.get_user("u1")).is_active is False
    assert await db.get_user("missing") is None


@pytest.mark.asyncio
async def test_list_search_and_update_users(db):
    await db.create_user("Alice", "alice@example.com", user_id="alice")
    await db.create_user("Sam Speaker", "sam@example.com", role=UserRole.SPEAKER, user_id="sam")
    await db.create_user("Ivan", "ivan@example.com", is_active=False, user_id="ivan")

    assert {u.id for u in await db.list_users()} == {"alice", "sam", "ivan"}
    assert [u.id for u in await db.list_users(role=UserRole.SPEAKER)] == ["sam"]
    assert {u.id for u in await db.list_users(is_active=True)} == {"alice", "sam"}
    assert [u.id for u in await db.list_users(search="SPEAK")] == ["sam"]
    assert (await db.get_user_by_email("ALICE@example.com")).id == "alice"

    updated = await db.update_user("alice", name="Alice B", role=UserRole.SPEAKER, email=None)
    assert updated.name == "Alice B"
    assert updated.role == UserRole.SPEAKER
    assert updated.email == "alice@example.com"


@pytest.mark.asyncio
async def test_sessions_by_speaker_and_attendee(db):
    future = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(days=3)
    past = future - timedelta(days=30)
    await db.create_session("Upcoming", "sam", starts_at=future, session_id="s1")
    await db.create_session("Done", "sam", starts_at=past, session_id="s2")
    await db.create_session("Other", "kim", session_id="s3")
    await db.add_attendee("s3", "alice")

    assert {s.id for s in await db.list_sessions(speaker_id="sam")} == {"s1", "s2"}
    assert [s.id for s in await db.list_sessions(attendee_id="alice")] == ["s3"]

    assert await db.cancel_upcoming_sessions("sam") == ["s1"]
    cancelled = await db.get_session("s1")
    assert cancelled.status == SessionStatus.CANCELLED
    assert cancelled.is_active is False
    assert [s.id for s in await db.list_sessions(speaker_id="sam")] == ["s2"]


@pytest.mark.asyncio
async def test_session_attendees(db):
    await db.create_user("Sam", "sam@example.com", user_id="sam")
    session = await db.create_session("Talk", "sam", max_attendees=2, session_id="s1")
    assert session.attendees == []
    assert session.status == SessionStatus.SCHEDULED

    assert await db.add_attendee("s1", "a") is True
    assert await db.add_attendee("s1", "a") is False
    await db.add_attendee("s1", "b")

    session = await db.get_session("s1")
    assert session.attendees == ["a", "b"]
    assert session.is_full
    assert session.has_access("a", UserRole.ATTENDEE)
    assert session.has_access("sam", UserRole.SPEAKER)
    assert session.has_access("x", UserRole.ADMIN)
    assert not session.has_access("x", UserRole.ATTENDEE)

    assert await db.remove_attendee("s1", "a") is True
    assert await db.remove_attendee("s1", "a") is False


@pytest.mark.asyncio
async def test_update_and_list_sessions(db):
    await db.create_session("One", "sam", session_id="s1")
    await db.create_session("Two", "sam", session_id="s2")

    updated = await db.update_session("s2", status=SessionStatus.LIVE, chat_enabled=False)
    assert updated.status == SessionStatus.LIVE
    assert updated.chat_enabled is False

    live = await db.list_sessions(status=SessionStatus.LIVE)
    assert [s.id for s in live] == ["s2"]

    await db.update_session("s1", is_active=False)
    assert [s.id for s in await db.list_sessions()] == ["s2"]


@pytest.mark.asyncio
async def test_sequence_numbers_increase_per_session(db):
    first = await db.create_message("s1", "u1", "one")
    second = await db.create_message("s1", "u1", "two", kind=MessageKind.QUESTION)
    other = await db.create_message("s2", "u1", "elsewhere")

    assert (first.seq, second.seq) == (1, 2)
    assert other.seq == 1


@pytest.mark.asyncio
async def test_list_messages_filters_and_orders(db):
    for i in range(3):
        await db.create_message("s1", "u1", f"m{i}")
    q = await db.create_message("s1", "u1", "why?", kind=MessageKind.QUESTION, category="tech")

    newest = await db.list_messages("s1")
    assert [m.body for m in newest] == ["why?", "m2", "m1", "m0"]

    oldest = await db.list_messages("s1", kind=MessageKind.MESSAGE, order="oldest", limit=2)
    assert [m.body for m in oldest] == ["m0", "m1"]

    assert await db.count_messages("s1") == 4
    assert await db.count_messages("s1", kind=MessageKind.QUESTION, category="tech") == 1

    await db.set_answer(q.id, "because", "sam")
    assert [m.id for m in await db.list_messages("s1", answered=True)] == [q.id]
    assert await db.count_messages("s1", kind=MessageKind.QUESTION, answered=False) == 0


@pytest.mark.asyncio
async def test_popular_order_uses_net_votes(db):
    low = await db.create_message("s1", "u1", "low", kind=MessageKind.QUESTION)
    high = await db.create_message("s1", "u1", "high", kind=MessageKind.QUESTION)
    await db.set_vote(low.id, "v1", VoteDirection.UP)
    await db.set_vote(low.id, "v2", VoteDirection.UP)
    await db.set_vote(high.id, "v1", VoteDirection.DOWN)

    popular = await db.list_messages("s1", kind=MessageKind.QUESTION, order="popular")
    assert [m.body for m in popular] == ["low", "high"]


@pytest.mark.asyncio
async def test_votes_are_one_per_voter(db):
    q = await db.create_message("s1", "u1", "q", kind=MessageKind.QUESTION)
    await db.set_vote(q.id, "v1", VoteDirection.UP)
    await db.set_vote(q.id, "v1", VoteDirection.DOWN)
    await db.set_vote(q.id, "v2", VoteDirection.DOWN)

    tally = await db.vote_tally(q.id)
    assert (tally.upvotes, tally.downvotes, tally.net_votes) == (0, 2, -2)
    assert await db.get_vote(q.id, "v1") == VoteDirection.DOWN

    await db.delete_vote(q.id, "v1")
    assert await db.get_vote(q.id, "v1") is None
    assert (await db.vote_tally(q.id)).downvotes == 1


@pytest.mark.asyncio
async def test_reactions_and_likes(db):
    m = await db.create_message("s1", "u1", "hi")
    await db.add_reaction(m.id, "👍")
    reactions = await db.add_reaction(m.id, "👍")
    assert reactions == {"👍": 2}
    assert (await db.get_message(m.id)).reactions == {"👍": 2}

    assert await db.toggle_like(m.id, "u2") == (True, 1)
    assert await db.toggle_like(m.id, "u3") == (True, 2)
    assert await db.toggle_like(m.id, "u2") == (False, 1)


@pytest.mark.asyncio
async def test_reaction_on_missing_message_raises(db):
    with pytest.raises(StoreError):
        await db.add_reaction("nope", "👍")


@pytest.mark.asyncio
async def test_answer_overwrites(db):
    q = await db.create_message("s1", "u1", "q", kind=MessageKind.QUESTION)
    await db.set_answer(q.id, "first", "sam")
    answered = await db.set_answer(q.id, "second", "admin")
    assert answered.is_answered
    assert answered.answer.text == "second"
    assert answered.answer.answered_by == "admin"


@pytest.mark.asyncio
async def test_category_stats(db):
    a = await db.create_message("s1", "u1", "a", kind=MessageKind.QUESTION, category="tech")
    await db.create_message("s1", "u1", "b", kind=MessageKind.QUESTION, category="tech")
    await db.create_message("s1", "u1", "c", kind=MessageKind.QUESTION, category="biz")
    await db.create_message("s1", "u1", "not a question")
    await db.set_answer(a.id, "done", "sam")

    stats = {s.name: s for s in await db.category_stats("s1")}
    assert set(stats) == {"tech", "biz"}
    assert stats["tech"].total_questions == 2
    assert stats["tech"].answered_questions == 1
    assert stats["tech"].unanswered_questions == 1
    assert stats["biz"].answered_questions == 0


@pytest.mark.asyncio
async def test_delete_message_removes_votes_and_likes(db):
    q = await db.create_message("s1", "u1", "q", kind=MessageKind.QUESTION)
    await db.set_vote(q.id, "v1", VoteDirection.UP)
    await db.toggle_like(q.id, "v1")

    assert await db.delete_message(q.id) is True
    assert await db.get_message(q.id) is None
    assert (await db.vote_tally(q.id)).upvotes == 0
    assert await db.delete_message(q.id) is False


def test_singleton_reset():
    ConferenceStore.reset_instance()
    first = ConferenceStore.get_instance(":memory:")
    assert ConferenceStore.get_instance() is first
    ConferenceStore.reset_instance()
    assert ConferenceStore._instance is None
