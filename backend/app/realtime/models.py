"""In-memory data models for the socket hub.

None of these are persisted: a ``ConnectionIdentity`` lives exactly as long
as its WebSocket, and presence/roster entries are derived from it.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from app.store.schemas import User, UserRole


class Channel(str, Enum):
    """Per-session broadcast scopes.

    Attributes:
        CHAT: Chat messages, reactions and typing indicators.
        QA: Questions, votes and answers.
        VIDEO: WebRTC roster and signaling; the only channel with a roster.
    """
    CHAT = "chat"
    QA = "qa"
    VIDEO = "video"

    def topic(self, session_id: str) -> str:
        return f"{self.value}-{session_id}"


class ConnectionIdentity(BaseModel):
    """Identity bound to one authenticated connection.

    Attributes:
        identityId: Account id resolved from the handshake token.
        displayName: Account display name.
        role: Account role (attendee, speaker, admin).
        avatar: Optional avatar URL.
    """
    identityId: str = Field(..., description="Account id")
    displayName: str = Field(..., description="Display name shown in UI")
    role: UserRole = Field(..., description="Account role")
    avatar: Optional[str] = Field(default=None, description="Avatar URL")

    @classmethod
    def from_user(cls, user: User) -> "ConnectionIdentity":
        return cls(
            identityId=user.id,
            displayName=user.name,
            role=user.role,
            avatar=user.avatar,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def public(self) -> dict:
        """Fields other clients may see."""
        return {
            "identityId": self.identityId,
            "displayName": self.displayName,
            "role": self.role.value,
        }


class PresenceEntry(BaseModel):
    """One online identity and the connection that currently owns it."""
    identityId: str
    displayName: str
    role: UserRole
    connectionHandle: str
    status: str = "online"


class RosterEntry(BaseModel):
    """One participant of a session's video room."""
    identityId: str
    displayName: str
    role: UserRole
    connectionHandle: str
