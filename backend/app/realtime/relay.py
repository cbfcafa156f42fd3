"""Chat and Q&A relay: authorize, persist, broadcast.

Every content action follows the same three steps:

    1. Authorize against the session (exists and active, feature enabled,
       actor is an attendee, the speaker or an admin).
    2. Persist through the store when the action is durable. A store
       failure becomes ``PersistenceFailure`` and nothing is broadcast.
    3. Publish one normalized payload to the session's channel topic,
       sender included, so every client renders from the same event.

The socket hub and the REST routers both call into this module, so an HTTP
``POST`` reaches socket subscribers exactly like the equivalent event.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Set

from app.config import RealtimeSettings
from app.store.schemas import (
    Message,
    MessageKind,
    Session,
    User,
    VoteDirection,
    VoteTally,
)
from app.store.service import ConferenceStore, StoreError

from . import events
from .errors import AuthorizationFailure, NotFound, PersistenceFailure, ValidationFailure
from .events import AnswerIn, QuestionIn, ReactionIn, SendMessageIn, TypingIn, VoteIn
from .models import Channel, ConnectionIdentity
from .rooms import TopicChannels

logger = logging.getLogger(__name__)


# =============================================================================
# Policies and payload builders
# =============================================================================


def resolve_vote(
    existing: Optional[VoteDirection], requested: VoteDirection
) -> Optional[VoteDirection]:
    """Vote toggle policy.

    Repeating the current direction withdraws the vote; any other request
    replaces it. Returns the direction to store, or None to delete.
    """
    if existing == requested:
        return None
    return requested


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def author_payload(author: Any) -> Optional[dict]:
    """Public author block from a ``User`` or a ``ConnectionIdentity``."""
    if author is None:
        return None
    if isinstance(author, ConnectionIdentity):
        return {
            "id": author.identityId,
            "name": author.displayName,
            "role": author.role.value,
            "avatar": author.avatar,
        }
    return {
        "id": author.id,
        "name": author.name,
        "role": author.role.value,
        "avatar": author.avatar,
    }


def message_payload(message: Message, author: Any = None) -> dict:
    return {
        "id": message.id,
        "sessionId": message.session_id,
        "seq": message.seq,
        "kind": message.kind.value,
        "user": author_payload(author),
        "message": message.body,
        "type": message.content_type.value,
        "fileUrl": message.file_url,
        "fileName": message.file_name,
        "fileType": message.file_type,
        "timestamp": isoformat(message.created_at),
        "reactions": dict(message.reactions),
    }


def question_payload(
    question: Message,
    tally: VoteTally,
    author: Any = None,
    user_vote: Optional[VoteDirection] = None,
) -> dict:
    answer = question.answer
    return {
        "id": question.id,
        "sessionId": question.session_id,
        "seq": question.seq,
        "question": question.body,
        "category": question.category,
        "isAnonymous": question.is_anonymous,
        "user": None if question.is_anonymous else author_payload(author),
        "timestamp": isoformat(question.created_at),
        "upvotes": tally.upvotes,
        "downvotes": tally.downvotes,
        "netVotes": tally.net_votes,
        "userVote": user_vote.value if user_vote else None,
        "isAnswered": question.is_answered,
        "answer": {
            "text": answer.text,
            "answeredBy": answer.answered_by,
            "answeredAt": isoformat(answer.answered_at),
        } if answer else None,
    }


# =============================================================================
# Relay
# =============================================================================


class ChatQARelay:
    """Content actions for the chat and Q&A channels.

    Attributes:
        typing: session_id -> {identity_id -> connection_id} for everyone
            whose last typing event was a start. Only used to synthesize a
            stop when a typist disconnects.
    """

    def __init__(
        self,
        store: ConferenceStore,
        channels: TopicChannels,
        settings: Optional[RealtimeSettings] = None,
    ) -> None:
        self.store = store
        self.channels = channels
        self.settings = settings or RealtimeSettings()
        self.typing: Dict[str, Dict[str, str]] = {}

    # -------------------------------------------------------------------------
    # Authorization
    # -------------------------------------------------------------------------

    async def authorize(
        self, actor: ConnectionIdentity, session_id: str, channel: Optional[Channel] = None
    ) -> Session:
        """Return the session if ``actor`` may act on ``channel`` in it.

        With no channel only membership is checked, not the chat/Q&A switches.
        """
        session = await self._stored(self.store.get_session(session_id), "load session")
        if session is None or not session.is_active:
            raise NotFound("Session not found")
        if channel == Channel.CHAT and not session.chat_enabled:
            raise AuthorizationFailure("Chat is disabled for this session")
        if channel == Channel.QA and not session.qa_enabled:
            raise AuthorizationFailure("Q&A is disabled for this session")
        if not session.has_access(actor.identityId, actor.role):
            raise AuthorizationFailure("Not registered for this session")
        return session

    # -------------------------------------------------------------------------
    # Reads (REST)
    # -------------------------------------------------------------------------

    async def history(
        self,
        actor: ConnectionIdentity,
        session_id: str,
        kind: Optional[MessageKind] = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict:
        """One page of chat history, oldest first within the page."""
        await self.authorize(actor, session_id)
        offset = (page - 1) * limit
        messages = await self._stored(
            self.store.list_messages(session_id, kind=kind, order="newest", offset=offset, limit=limit),
            "load messages",
        )
        total = await self._stored(self.store.count_messages(session_id, kind=kind), "count messages")
        authors = await self._stored(
            load_authors(self.store, {m.author_id for m in messages}), "load authors"
        )
        messages.reverse()
        return {
            "messages": [message_payload(m, authors.get(m.author_id)) for m in messages],
            "pagination": _pagination(page, limit, total),
        }

    async def list_questions(
        self,
        actor: ConnectionIdentity,
        session_id: str,
        category: Optional[str] = None,
        answered: Optional[bool] = None,
        sort_by: str = "newest",
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        """Questions with their tallies and the caller's own vote."""
        await self.authorize(actor, session_id, Channel.QA)
        offset = (page - 1) * limit
        questions = await self._stored(
            self.store.list_messages(
                session_id,
                kind=MessageKind.QUESTION,
                category=category,
                answered=answered,
                order=sort_by,
                offset=offset,
                limit=limit,
            ),
            "load questions",
        )
        total = await self._stored(
            self.store.count_messages(
                session_id, kind=MessageKind.QUESTION, category=category, answered=answered
            ),
            "count questions",
        )
        authors = await self._stored(
            load_authors(self.store, {q.author_id for q in questions}), "load authors"
        )

        items = []
        for question in questions:
            tally = await self._stored(self.store.vote_tally(question.id), "count votes")
            mine = await self._stored(self.store.get_vote(question.id, actor.identityId), "load vote")
            items.append(question_payload(question, tally, authors.get(question.author_id), mine))
        return {"questions": items, "pagination": _pagination(page, limit, total)}

    async def categories(self, actor: ConnectionIdentity, session_id: str) -> List[dict]:
        await self.authorize(actor, session_id, Channel.QA)
        stats = await self._stored(self.store.category_stats(session_id), "load categories")
        return [
            {
                "name": s.name,
                "totalQuestions": s.total_questions,
                "answeredQuestions": s.answered_questions,
                "unansweredQuestions": s.unanswered_questions,
            }
            for s in stats
        ]

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    async def send_message(self, actor: ConnectionIdentity, data: SendMessageIn) -> dict:
        body = self._check_text(data.message, self.settings.max_message_length, "Message")
        await self.authorize(actor, data.sessionId, Channel.CHAT)

        message = await self._stored(
            self.store.create_message(
                data.sessionId,
                actor.identityId,
                body,
                kind=MessageKind.MESSAGE,
                content_type=data.type,
                file_url=data.fileUrl,
                file_name=data.fileName,
                file_type=data.fileType,
            ),
            "send message",
        )
        payload = message_payload(message, actor)
        await self.channels.publish(Channel.CHAT, data.sessionId, events.NEW_MESSAGE, payload)
        logger.debug(f"[Relay] Message {message.id} (seq={message.seq}) in session {data.sessionId}")
        return payload

    async def announce(self, actor: ConnectionIdentity, session_id: str, text: str) -> dict:
        """Speaker/admin announcement, delivered to chat as a ``new-message``."""
        body = self._check_text(text, self.settings.max_message_length, "Announcement")
        session = await self.authorize(actor, session_id, Channel.CHAT)
        if not session.can_moderate(actor.identityId, actor.role):
            raise AuthorizationFailure("Only the speaker or an admin can post announcements")

        message = await self._stored(
            self.store.create_message(
                session_id, actor.identityId, body, kind=MessageKind.ANNOUNCEMENT
            ),
            "post announcement",
        )
        payload = message_payload(message, actor)
        await self.channels.publish(Channel.CHAT, session_id, events.NEW_MESSAGE, payload)
        logger.info(f"[Relay] Announcement in session {session_id} by {actor.identityId}")
        return payload

    async def add_reaction(self, actor: ConnectionIdentity, data: ReactionIn) -> dict:
        message = await self._stored(self.store.get_message(data.messageId), "load message")
        if message is None:
            raise NotFound("Message not found")
        await self.authorize(actor, message.session_id, Channel.CHAT)

        reactions = await self._stored(
            self.store.add_reaction(message.id, data.reaction), "add reaction"
        )
        payload = {"messageId": message.id, "reactions": reactions}
        await self.channels.publish(
            Channel.CHAT, message.session_id, events.MESSAGE_REACTION, payload
        )
        return payload

    async def toggle_like(self, actor: ConnectionIdentity, message_id: str) -> dict:
        message = await self._stored(self.store.get_message(message_id), "load message")
        if message is None:
            raise NotFound("Message not found")
        await self.authorize(actor, message.session_id, Channel.CHAT)

        liked, count = await self._stored(
            self.store.toggle_like(message_id, actor.identityId), "toggle like"
        )
        return {"messageId": message_id, "likeCount": count, "hasLiked": liked}

    async def typing_start(
        self, actor: ConnectionIdentity, data: TypingIn, connection_id: Optional[str] = None
    ) -> dict:
        await self.authorize(actor, data.sessionId, Channel.CHAT)
        if connection_id is not None:
            self.typing.setdefault(data.sessionId, {})[actor.identityId] = connection_id

        payload = {
            "sessionId": data.sessionId,
            "userId": actor.identityId,
            "userName": data.userName or actor.displayName,
        }
        await self.channels.publish(Channel.CHAT, data.sessionId, events.USER_TYPING, payload)
        return payload

    async def typing_stop(self, actor: ConnectionIdentity, data: TypingIn) -> dict:
        await self.authorize(actor, data.sessionId, Channel.CHAT)
        self._forget_typist(data.sessionId, actor.identityId)

        payload = {"sessionId": data.sessionId, "userId": actor.identityId}
        await self.channels.publish(
            Channel.CHAT, data.sessionId, events.USER_STOPPED_TYPING, payload
        )
        return payload

    async def clear_typing(self, identity_id: str, connection_id: str) -> List[str]:
        """Publish ``user-stopped-typing`` wherever a closed connection was typing."""
        sessions = [
            sid for sid, typists in self.typing.items()
            if typists.get(identity_id) == connection_id
        ]
        for session_id in sessions:
            self._forget_typist(session_id, identity_id)
            await self.channels.publish(
                Channel.CHAT,
                session_id,
                events.USER_STOPPED_TYPING,
                {"sessionId": session_id, "userId": identity_id},
            )
        return sessions

    def _forget_typist(self, session_id: str, identity_id: str) -> None:
        typists = self.typing.get(session_id)
        if typists is None:
            return
        typists.pop(identity_id, None)
        if not typists:
            del self.typing[session_id]

    # -------------------------------------------------------------------------
    # Q&A
    # -------------------------------------------------------------------------

    async def submit_question(self, actor: ConnectionIdentity, data: QuestionIn) -> dict:
        body = self._check_text(data.question, self.settings.max_question_length, "Question")
        await self.authorize(actor, data.sessionId, Channel.QA)

        question = await self._stored(
            self.store.create_message(
                data.sessionId,
                actor.identityId,
                body,
                kind=MessageKind.QUESTION,
                category=(data.category or "general").strip() or "general",
                is_anonymous=data.isAnonymous,
            ),
            "submit question",
        )
        payload = question_payload(question, VoteTally(), actor)
        await self.channels.publish(Channel.QA, data.sessionId, events.NEW_QUESTION, payload)
        logger.debug(f"[Relay] Question {question.id} (seq={question.seq}) in session {data.sessionId}")
        return payload

    async def vote_question(self, actor: ConnectionIdentity, data: VoteIn) -> dict:
        question = await self._load_question(data.questionId)
        await self.authorize(actor, question.session_id, Channel.QA)

        existing = await self._stored(
            self.store.get_vote(question.id, actor.identityId), "load vote"
        )
        outcome = resolve_vote(existing, data.voteType)
        if outcome is None:
            await self._stored(self.store.delete_vote(question.id, actor.identityId), "remove vote")
        else:
            await self._stored(
                self.store.set_vote(question.id, actor.identityId, outcome), "record vote"
            )
        tally = await self._stored(self.store.vote_tally(question.id), "count votes")

        payload = {
            "id": question.id,
            "sessionId": question.session_id,
            "upvotes": tally.upvotes,
            "downvotes": tally.downvotes,
            "netVotes": tally.net_votes,
            "voteUpdate": {
                "userId": actor.identityId,
                "voteType": outcome.value if outcome else None,
            },
        }
        await self.channels.publish(
            Channel.QA, question.session_id, events.QUESTION_UPDATED, payload
        )
        return payload

    async def answer_question(self, actor: ConnectionIdentity, data: AnswerIn) -> dict:
        text = self._check_text(data.answer, self.settings.max_answer_length, "Answer")
        question = await self._load_question(data.questionId)
        session = await self.authorize(actor, question.session_id, Channel.QA)
        if not session.can_moderate(actor.identityId, actor.role):
            raise AuthorizationFailure("Not authorized to answer questions")

        answered = await self._stored(
            self.store.set_answer(question.id, text, actor.identityId), "save answer"
        )
        if answered is None:
            raise NotFound("Question not found")
        payload = {
            "id": question.id,
            "questionId": question.id,
            "sessionId": question.session_id,
            "answer": text,
            "answeredAt": isoformat(answered.answer.answered_at),
            "answeredBy": actor.displayName,
            "answeredById": actor.identityId,
        }
        await self.channels.publish(
            Channel.QA, question.session_id, events.QUESTION_ANSWERED, payload
        )
        return payload

    async def delete_question(self, actor: ConnectionIdentity, question_id: str) -> dict:
        """Author, speaker or admin may delete; Q&A subscribers are told."""
        question = await self._load_question(question_id)
        session = await self._stored(self.store.get_session(question.session_id), "load session")
        if session is None:
            raise NotFound("Session not found")
        if question.author_id != actor.identityId and not session.can_moderate(
            actor.identityId, actor.role
        ):
            raise AuthorizationFailure("Not authorized to delete this question")

        await self._stored(self.store.delete_message(question.id), "delete question")
        payload = {"id": question.id, "questionId": question.id, "sessionId": question.session_id}
        await self.channels.publish(
            Channel.QA, question.session_id, events.QUESTION_DELETED, payload
        )
        logger.info(f"[Relay] Question {question.id} deleted by {actor.identityId}")
        return payload

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _load_question(self, question_id: str) -> Message:
        question = await self._stored(self.store.get_message(question_id), "load question")
        if question is None or question.kind != MessageKind.QUESTION:
            raise NotFound("Question not found")
        return question

    async def _stored(self, awaitable: Awaitable, action: str) -> Any:
        try:
            return await awaitable
        except StoreError as exc:
            logger.error(f"[Relay] Failed to {action}: {exc}")
            raise PersistenceFailure(f"Failed to {action}") from exc

    @staticmethod
    def _check_text(text: str, limit: int, label: str) -> str:
        text = (text or "").strip()
        if not text:
            raise ValidationFailure(f"{label} cannot be empty")
        if len(text) > limit:
            raise ValidationFailure(f"{label} cannot exceed {limit} characters")
        return text


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "current": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


async def load_authors(store: ConferenceStore, author_ids: Set[Optional[str]]) -> Dict[str, User]:
    """Fetch the users behind a page of messages, skipping unknown ids."""
    authors: Dict[str, User] = {}
    for author_id in author_ids:
        if not author_id:
            continue
        user = await store.get_user(author_id)
        if user is not None:
            authors[author_id] = user
    return authors
