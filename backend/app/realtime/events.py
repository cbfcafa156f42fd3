"""Socket event names and inbound payload schemas.

Frames travel as ``{"event": <name>, "data": <payload>}`` JSON envelopes in
both directions. Inbound payloads are parsed with the models below; a
``pydantic.ValidationError`` is reported to the sender as ``invalid_payload``.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator

from app.store.schemas import ContentType, VoteDirection

# =============================================================================
# Client -> server
# =============================================================================

JOIN_SESSION_CHAT = "join-session-chat"
LEAVE_SESSION_CHAT = "leave-session-chat"
JOIN_QA_ROOM = "join-qa-room"
LEAVE_QA_ROOM = "leave-qa-room"
JOIN_VIDEO_ROOM = "join-video-room"
LEAVE_VIDEO_ROOM = "leave-video-room"
SEND_MESSAGE = "send-message"
TYPING_START = "typing-start"
TYPING_STOP = "typing-stop"
ADD_REACTION = "add-reaction"
SUBMIT_QUESTION = "submit-question"
VOTE_QUESTION = "vote-question"
ANSWER_QUESTION = "answer-question"
JOIN_VIDEO_CALL = "join-video-call"
LEAVE_VIDEO_CALL = "leave-video-call"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
SEND_PRIVATE_MESSAGE = "send-private-message"

SIGNAL_EVENTS = (OFFER, ANSWER, ICE_CANDIDATE)

# =============================================================================
# Server -> client
# =============================================================================

NEW_MESSAGE = "new-message"
MESSAGE_REACTION = "message-reaction"
USER_TYPING = "user-typing"
USER_STOPPED_TYPING = "user-stopped-typing"
NEW_QUESTION = "new-question"
QUESTION_UPDATED = "question-updated"
QUESTION_ANSWERED = "question-answered"
QUESTION_DELETED = "question-deleted"
PARTICIPANTS_UPDATED = "participants-updated"
USER_CONNECTED = "user-connected"
USER_DISCONNECTED = "user-disconnected"
USERS_ONLINE = "users-online"
USER_JOINED_VIDEO = "user-joined-video"
USER_LEFT_VIDEO = "user-left-video"
RECEIVE_PRIVATE_MESSAGE = "receive-private-message"
ERROR = "error"


def envelope(event: str, data: Any) -> dict:
    return {"event": event, "data": data}


# =============================================================================
# Inbound payloads
# =============================================================================


class SessionRef(BaseModel):
    """Payload of the join/leave events (a bare id is also accepted)."""
    sessionId: str = Field(..., min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_id(cls, value: Any) -> Any:
        if isinstance(value, (str, int)):
            return {"sessionId": str(value)}
        return value


class SendMessageIn(BaseModel):
    sessionId: str = Field(..., min_length=1)
    message: str
    type: ContentType = ContentType.TEXT
    fileUrl: Optional[str] = None
    fileName: Optional[str] = None
    fileType: Optional[str] = None


class TypingIn(BaseModel):
    sessionId: str = Field(..., min_length=1)
    userName: Optional[str] = None


class ReactionIn(BaseModel):
    messageId: str = Field(..., min_length=1)
    reaction: str = Field(..., min_length=1, max_length=32)
    sessionId: Optional[str] = None


class QuestionIn(BaseModel):
    sessionId: str = Field(..., min_length=1)
    question: str
    category: Optional[str] = None
    isAnonymous: bool = False


class VoteIn(BaseModel):
    questionId: str = Field(..., min_length=1)
    voteType: VoteDirection
    sessionId: Optional[str] = None


class AnswerIn(BaseModel):
    questionId: str = Field(..., min_length=1)
    answer: str
    sessionId: Optional[str] = None


class VideoCallIn(BaseModel):
    sessionId: str = Field(..., min_length=1)
    userData: Dict[str, Any] = Field(default_factory=dict)


class SignalIn(BaseModel):
    """offer / answer / ice-candidate.

    The opaque WebRTC blob travels in ``payload``; browsers built against
    the older protocol send it under ``offer``, ``answer`` or ``candidate``.
    """
    sessionId: str = Field(..., min_length=1)
    to: str = Field(..., min_length=1)
    payload: Any = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_payload_key(cls, value: Any) -> Any:
        if isinstance(value, dict) and value.get("payload") is None:
            for key in ("offer", "answer", "candidate"):
                if key in value:
                    return {**value, "payload": value[key]}
        return value


class PrivateMessageIn(BaseModel):
    recipientId: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
