"""Chat REST endpoints.

This module provides:
    - GET  /api/chat/{session_id}: Paginated chat history (oldest first)
    - POST /api/chat/{session_id}: Send a message or question
    - POST /api/chat/{session_id}/announce: Speaker/admin announcement
    - POST /api/chat/message/{message_id}/like: Toggle a like

Writes go through the same relay as the socket events, so subscribers of
``chat-<session_id>`` / ``qa-<session_id>`` see REST writes immediately.
"""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.auth.dependencies import get_current_user
from app.realtime import get_hub
from app.realtime.errors import RealtimeError, http_exception
from app.realtime.events import QuestionIn, SendMessageIn
from app.realtime.models import ConnectionIdentity
from app.store.schemas import MessageKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class ChatPostRequest(BaseModel):
    """Request body for posting to a session's chat."""
    message: str
    type: Literal["message", "question"] = "message"
    category: Optional[str] = None
    isAnonymous: bool = False


class AnnouncementRequest(BaseModel):
    message: str = Field(..., min_length=1)


@router.get("/{session_id}")
async def get_chat_history(
    session_id: str,
    page: int = Query(1, ge=1, description="Page number (1-based)"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Messages per page"),
    type: Optional[MessageKind] = Query(None, description="message, question or announcement"),
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    """Get paginated chat history for a session.

    Pages count back from the newest message; within a page messages are
    returned oldest first so clients can append them directly.

    Example:
        GET /api/chat/abc123?page=2&limit=50
    """
    try:
        return await get_hub().relay.history(user, session_id, kind=type, page=page, limit=limit)
    except RealtimeError as e:
        raise http_exception(e)


@router.post("/{session_id}", status_code=201)
async def post_chat_message(
    session_id: str,
    body: ChatPostRequest,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    relay = get_hub().relay
    try:
        if body.type == "question":
            question = await relay.submit_question(
                user,
                QuestionIn(
                    sessionId=session_id,
                    question=body.message,
                    category=body.category,
                    isAnonymous=body.isAnonymous,
                ),
            )
            return {"message": "Question submitted successfully", "chatMessage": question}

        message = await relay.send_message(
            user, SendMessageIn(sessionId=session_id, message=body.message)
        )
        return {"message": "Message sent successfully", "chatMessage": message}
    except RealtimeError as e:
        raise http_exception(e)


@router.post("/{session_id}/announce", status_code=201)
async def post_announcement(
    session_id: str,
    body: AnnouncementRequest,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    try:
        announcement = await get_hub().relay.announce(user, session_id, body.message)
    except RealtimeError as e:
        raise http_exception(e)
    return {"message": "Announcement sent successfully", "announcement": announcement}


@router.post("/message/{message_id}/like")
async def like_message(
    message_id: str,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    try:
        result = await get_hub().relay.toggle_like(user, message_id)
    except RealtimeError as e:
        raise http_exception(e)
    return {
        "message": "Message liked" if result["hasLiked"] else "Like removed",
        "likeCount": result["likeCount"],
        "hasLiked": result["hasLiked"],
    }
