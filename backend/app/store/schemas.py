"""Pydantic schemas for persisted users, sessions and chat/Q&A messages.

These are the records returned by ``ConferenceStore``. They use snake_case
field names; the socket and REST layers build their own camelCase payloads
from them.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """Account role.

    Attributes:
        ATTENDEE: Registers for sessions and takes part in chat and Q&A.
        SPEAKER: Presents sessions and answers questions.
        ADMIN: Full access to every session.
    """
    ATTENDEE = "attendee"
    SPEAKER = "speaker"
    ADMIN = "admin"


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MessageKind(str, Enum):
    """Kind of chat record.

    Attributes:
        MESSAGE: Regular chat message.
        QUESTION: Q&A question (votable, answerable).
        ANNOUNCEMENT: Speaker/admin announcement shown in chat.
    """
    MESSAGE = "message"
    QUESTION = "question"
    ANNOUNCEMENT = "announcement"


class ContentType(str, Enum):
    TEXT = "text"
    FILE = "file"
    IMAGE = "image"


class VoteDirection(str, Enum):
    UP = "up"
    DOWN = "down"


class User(BaseModel):
    id: str
    name: str
    email: str
    role: UserRole = UserRole.ATTENDEE
    is_active: bool = True
    avatar: Optional[str] = None
    created_at: datetime


class Session(BaseModel):
    """A scheduled talk with a speaker and an attendee list."""
    id: str
    title: str
    description: str = ""
    speaker_id: str
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    max_attendees: int = 100
    category: str = "other"
    status: SessionStatus = SessionStatus.SCHEDULED
    is_active: bool = True
    chat_enabled: bool = True
    qa_enabled: bool = True
    attendees: List[str] = Field(default_factory=list)
    created_at: datetime

    @property
    def is_full(self) -> bool:
        return len(self.attendees) >= self.max_attendees

    def has_access(self, user_id: str, role: UserRole) -> bool:
        """Attendee, speaker or admin."""
        return (
            role == UserRole.ADMIN
            or self.speaker_id == user_id
            or user_id in self.attendees
        )

    def can_moderate(self, user_id: str, role: UserRole) -> bool:
        """Speaker or admin."""
        return role == UserRole.ADMIN or self.speaker_id == user_id


class Answer(BaseModel):
    text: str
    answered_by: str
    answered_at: datetime


class Message(BaseModel):
    """A persisted chat message, question or announcement.

    ``seq`` is assigned by the store at insert time and increases by one
    per session, giving clients a total order to reconcile against.
    """
    id: str
    session_id: str
    author_id: Optional[str] = None
    body: str
    kind: MessageKind = MessageKind.MESSAGE
    category: str = "general"
    is_anonymous: bool = False
    content_type: ContentType = ContentType.TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    reactions: Dict[str, int] = Field(default_factory=dict)
    seq: int
    created_at: datetime
    answer: Optional[Answer] = None

    @property
    def is_answered(self) -> bool:
        return self.answer is not None


class VoteTally(BaseModel):
    upvotes: int = 0
    downvotes: int = 0

    @property
    def net_votes(self) -> int:
        return self.upvotes - self.downvotes


class CategoryStats(BaseModel):
    name: str
    total_questions: int
    answered_questions: int

    @property
    def unanswered_questions(self) -> int:
        return self.total_questions - self.answered_questions
