"""Session catalogue and registration.

Endpoints:
    GET    /api/sessions                 - List active sessions (paginated)
    GET    /api/sessions/{id}            - Get one session
    POST   /api/sessions                 - Create (speaker or admin)
    PUT    /api/sessions/{id}            - Update (admin: any field, speaker: description and switches)
    DELETE /api/sessions/{id}            - Soft delete (admin)
    POST   /api/sessions/{id}/register   - Register the caller
    DELETE /api/sessions/{id}/register   - Unregister the caller
    GET    /api/sessions/my/speaking     - Sessions the caller presents (speaker or admin)
    GET    /api/sessions/my/registered   - Sessions the caller is registered for

Registration is what grants chat, Q&A and video access on the socket hub.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.auth.dependencies import get_current_user
from app.realtime import get_hub
from app.realtime.models import ConnectionIdentity
from app.realtime.relay import isoformat
from app.store.schemas import Session, SessionStatus, UserRole
from app.store.service import ConferenceStore, StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

# Fields a speaker may change on their own session; admins may change all.
_SPEAKER_FIELDS = {"description", "chat_enabled", "qa_enabled", "status"}


class SessionCreateRequest(BaseModel):
    title: str = Field(..., min_length=3, max_length=100)
    description: str = Field("", max_length=1000)
    startsAt: Optional[datetime] = None
    endsAt: Optional[datetime] = None
    maxAttendees: int = Field(100, ge=1, le=1000)
    category: str = "other"
    chatEnabled: bool = True
    qaEnabled: bool = True
    speakerId: Optional[str] = Field(None, description="Admins only; defaults to the caller")


class SessionUpdateRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    startsAt: Optional[datetime] = None
    endsAt: Optional[datetime] = None
    maxAttendees: Optional[int] = Field(None, ge=1, le=1000)
    category: Optional[str] = None
    status: Optional[SessionStatus] = None
    chatEnabled: Optional[bool] = None
    qaEnabled: Optional[bool] = None


def session_payload(session: Session) -> dict:
    return {
        "id": session.id,
        "title": session.title,
        "description": session.description,
        "speakerId": session.speaker_id,
        "startsAt": isoformat(session.starts_at),
        "endsAt": isoformat(session.ends_at),
        "maxAttendees": session.max_attendees,
        "category": session.category,
        "status": session.status.value,
        "isActive": session.is_active,
        "chatEnabled": session.chat_enabled,
        "qaEnabled": session.qa_enabled,
        "attendees": list(session.attendees),
        "attendeeCount": len(session.attendees),
        "isFull": session.is_full,
    }


def _store() -> ConferenceStore:
    return get_hub().store


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


async def _active_session(store: ConferenceStore, session_id: str) -> Session:
    session = await store.get_session(session_id)
    if session is None or not session.is_active:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.get("")
async def list_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[SessionStatus] = Query(None),
    category: Optional[str] = Query(None),
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    try:
        sessions = await _store().list_sessions(status=status)
    except StoreError as e:
        logger.error(f"[Sessions] List failed: {e}")
        raise HTTPException(status_code=500, detail="Server error fetching sessions")

    if category:
        sessions = [s for s in sessions if s.category == category]
    total = len(sessions)
    start = (page - 1) * limit
    return {
        "sessions": [session_payload(s) for s in sessions[start:start + limit]],
        "pagination": {
            "current": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


@router.get("/my/speaking")
async def my_speaking_sessions(user: ConnectionIdentity = Depends(get_current_user)) -> dict:
    if user.role not in (UserRole.SPEAKER, UserRole.ADMIN):
        raise HTTPException(status_code=403, detail="Speaker or admin privileges required")
    try:
        sessions = await _store().list_sessions(speaker_id=user.identityId)
    except StoreError as e:
        logger.error(f"[Sessions] Speaking sessions of {user.identityId} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error fetching speaking sessions")
    return {"sessions": [session_payload(s) for s in sessions]}


@router.get("/my/registered")
async def my_registered_sessions(user: ConnectionIdentity = Depends(get_current_user)) -> dict:
    try:
        sessions = await _store().list_sessions(attendee_id=user.identityId)
    except StoreError as e:
        logger.error(f"[Sessions] Registered sessions of {user.identityId} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error fetching registered sessions")
    return {"sessions": [session_payload(s) for s in sessions]}


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    try:
        session = await _active_session(_store(), session_id)
    except StoreError as e:
        logger.error(f"[Sessions] Get {session_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error fetching session")
    return {"session": session_payload(session)}


@router.post("", status_code=201)
async def create_session(
    body: SessionCreateRequest,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    if user.role not in (UserRole.SPEAKER, UserRole.ADMIN):
        raise HTTPException(status_code=403, detail="Only speakers and admins can create sessions")

    speaker_id = user.identityId
    if body.speakerId and body.speakerId != user.identityId:
        if not user.is_admin:
            raise HTTPException(status_code=403, detail="Only admins can assign another speaker")
        speaker_id = body.speakerId

    starts_at, ends_at = _naive_utc(body.startsAt), _naive_utc(body.endsAt)
    if starts_at and ends_at and ends_at <= starts_at:
        raise HTTPException(status_code=400, detail="End time must be after start time")

    store = _store()
    try:
        if await store.get_user(speaker_id) is None:
            raise HTTPException(status_code=400, detail="Speaker not found")
        session = await store.create_session(
            title=body.title.strip(),
            speaker_id=speaker_id,
            description=body.description.strip(),
            starts_at=starts_at,
            ends_at=ends_at,
            max_attendees=body.maxAttendees,
            category=body.category,
            chat_enabled=body.chatEnabled,
            qa_enabled=body.qaEnabled,
        )
    except StoreError as e:
        logger.error(f"[Sessions] Create failed: {e}")
        raise HTTPException(status_code=500, detail="Server error creating session")

    logger.info(f"[Sessions] {user.identityId} created session {session.id}")
    return {"message": "Session created successfully", "session": session_payload(session)}


@router.put("/{session_id}")
async def update_session(
    session_id: str,
    body: SessionUpdateRequest,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    store = _store()
    try:
        session = await _active_session(store, session_id)
        if not session.can_moderate(user.identityId, user.role):
            raise HTTPException(
                status_code=403,
                detail="You can only edit your own sessions or need admin privileges",
            )

        fields = {
            "title": body.title,
            "description": body.description,
            "starts_at": _naive_utc(body.startsAt),
            "ends_at": _naive_utc(body.endsAt),
            "max_attendees": body.maxAttendees,
            "category": body.category,
            "status": body.status,
            "chat_enabled": body.chatEnabled,
            "qa_enabled": body.qaEnabled,
        }
        if not user.is_admin:
            fields = {k: v for k, v in fields.items() if k in _SPEAKER_FIELDS}
        updated = await store.update_session(session_id, **fields)
    except StoreError as e:
        logger.error(f"[Sessions] Update {session_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error updating session")

    return {"message": "Session updated successfully", "session": session_payload(updated)}


@router.delete("/{session_id}")
async def delete_session(
    session_id: str,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    store = _store()
    try:
        await _active_session(store, session_id)
        await store.update_session(session_id, is_active=False, status=SessionStatus.CANCELLED)
    except StoreError as e:
        logger.error(f"[Sessions] Delete {session_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error deleting session")
    return {"message": "Session deleted successfully"}


@router.post("/{session_id}/register")
async def register_for_session(
    session_id: str,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    store = _store()
    try:
        session = await _active_session(store, session_id)
        if user.identityId in session.attendees:
            raise HTTPException(status_code=400, detail="Already registered for this session")
        if session.is_full:
            raise HTTPException(status_code=400, detail="Session is full")
        if session.starts_at and session.starts_at < datetime.now(timezone.utc).replace(tzinfo=None):
            raise HTTPException(status_code=400, detail="Cannot register for past sessions")
        await store.add_attendee(session_id, user.identityId)
    except StoreError as e:
        logger.error(f"[Sessions] Register {user.identityId} for {session_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error registering for session")
    return {"message": "Successfully registered for session"}


@router.delete("/{session_id}/register")
async def unregister_from_session(
    session_id: str,
    user: ConnectionIdentity = Depends(get_current_user),
) -> dict:
    store = _store()
    try:
        await _active_session(store, session_id)
        if not await store.remove_attendee(session_id, user.identityId):
            raise HTTPException(status_code=400, detail="Not registered for this session")
    except StoreError as e:
        logger.error(f"[Sessions] Unregister {user.identityId} from {session_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error unregistering from session")
    return {"message": "Successfully unregistered from session"}
