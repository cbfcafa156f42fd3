"""Account, presence and user administration endpoints.

Endpoints:
    GET    /api/users/me              - The caller's identity
    GET    /api/users/online          - Presence snapshot from the socket hub
    GET    /api/users                 - List accounts (admin, paginated)
    GET    /api/users/speakers/list   - Active speakers with session counts (admin)
    GET    /api/users/stats/overview  - Account and session totals (admin)
    GET    /api/users/{id}            - One account with its sessions (admin)
    PUT    /api/users/{id}            - Update an account (admin)
    DELETE /api/users/{id}            - Deactivate an account (admin)

Deactivating a speaker also cancels their sessions that have not started.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.auth.dependencies import get_current_user, require_admin
from app.realtime import get_hub
from app.realtime.models import ConnectionIdentity
from app.realtime.relay import isoformat
from app.sessions.router import session_payload
from app.store.schemas import Session, User, UserRole
from app.store.service import ConferenceStore, StoreError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])

RECENT_DAYS = 30
POPULAR_LIMIT = 5


class UserUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[str] = Field(None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    role: Optional[UserRole] = None
    avatar: Optional[str] = None
    isActive: Optional[bool] = None


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "isActive": user.is_active,
        "avatar": user.avatar,
        "createdAt": isoformat(user.created_at),
    }


def _store() -> ConferenceStore:
    return get_hub().store


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _upcoming(sessions: List[Session], now: datetime) -> List[Session]:
    return [s for s in sessions if s.starts_at is not None and s.starts_at >= now]


async def _existing_user(store: ConferenceStore, user_id: str) -> User:
    user = await store.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.get("/me")
async def read_me(user: ConnectionIdentity = Depends(get_current_user)) -> dict:
    return {"user": {**user.public(), "avatar": user.avatar}}


@router.get("/online")
async def online_users(user: ConnectionIdentity = Depends(get_current_user)) -> dict:
    users = get_hub().presence.snapshot()
    return {"users": users, "count": len(users)}


@router.get("")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    role: Optional[UserRole] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    active: Optional[bool] = Query(None),
    admin: ConnectionIdentity = Depends(require_admin),
) -> dict:
    store = _store()
    try:
        users = await store.list_users(role=role, is_active=active, search=search)
        total = len(users)
        start = (page - 1) * limit
        items = []
        for user in users[start:start + limit]:
            speaking = 0
            if user.role in (UserRole.SPEAKER, UserRole.ADMIN):
                speaking = len(await store.list_sessions(speaker_id=user.id))
            registered = await store.list_sessions(attendee_id=user.id)
            items.append({
                **user_payload(user),
                "speakingSessions": speaking,
                "registeredSessionsCount": len(registered),
            })
    except StoreError as e:
        logger.error(f"[Users] List failed: {e}")
        raise HTTPException(status_code=500, detail="Server error fetching users")

    return {
        "users": items,
        "pagination": {
            "current": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


@router.get("/speakers/list")
async def list_speakers(admin: ConnectionIdentity = Depends(require_admin)) -> dict:
    store = _store()
    now = _now()
    try:
        speakers = [
            u for u in await store.list_users(is_active=True)
            if u.role in (UserRole.SPEAKER, UserRole.ADMIN)
        ]
        result = []
        for speaker in sorted(speakers, key=lambda u: u.name):
            sessions = await store.list_sessions(speaker_id=speaker.id)
            result.append({
                **user_payload(speaker),
                "totalSessions": len(sessions),
                "upcomingSessions": len(_upcoming(sessions, now)),
            })
    except StoreError as e:
        logger.error(f"[Users] Speaker list failed: {e}")
        raise HTTPException(status_code=500, detail="Server error fetching speakers")
    return {"speakers": result}


@router.get("/stats/overview")
async def stats_overview(admin: ConnectionIdentity = Depends(require_admin)) -> dict:
    store = _store()
    now = _now()
    try:
        users = await store.list_users(is_active=True)
        sessions = await store.list_sessions()
        popular = sorted(sessions, key=lambda s: len(s.attendees), reverse=True)[:POPULAR_LIMIT]
        speakers = {s.speaker_id: await store.get_user(s.speaker_id) for s in popular}
    except StoreError as e:
        logger.error(f"[Users] Stats failed: {e}")
        raise HTTPException(status_code=500, detail="Server error fetching statistics")

    def count(role: UserRole) -> int:
        return sum(1 for u in users if u.role == role)

    recent_cutoff = now - timedelta(days=RECENT_DAYS)
    return {
        "stats": {
            "users": {
                "total": len(users),
                "speakers": count(UserRole.SPEAKER),
                "attendees": count(UserRole.ATTENDEE),
                "admins": count(UserRole.ADMIN),
            },
            "sessions": {
                "total": len(sessions),
                "upcoming": len(_upcoming(sessions, now)),
            },
            "recentRegistrations": sum(1 for u in users if u.created_at >= recent_cutoff),
            "popularSessions": [
                {
                    "id": s.id,
                    "title": s.title,
                    "startsAt": isoformat(s.starts_at),
                    "attendeeCount": len(s.attendees),
                    "speaker": {
                        "name": speakers[s.speaker_id].name,
                        "email": speakers[s.speaker_id].email,
                    } if speakers.get(s.speaker_id) else None,
                }
                for s in popular
            ],
        }
    }


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    admin: ConnectionIdentity = Depends(require_admin),
) -> dict:
    store = _store()
    try:
        user = await _existing_user(store, user_id)
        speaking: List[Session] = []
        if user.role in (UserRole.SPEAKER, UserRole.ADMIN):
            speaking = await store.list_sessions(speaker_id=user.id)
        registered = await store.list_sessions(attendee_id=user.id)
    except StoreError as e:
        logger.error(f"[Users] Get {user_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error fetching user")

    return {
        "user": {
            **user_payload(user),
            "speakingSessions": [session_payload(s) for s in speaking],
            "registeredSessions": [session_payload(s) for s in registered],
        }
    }


@router.put("/{user_id}")
async def update_user(
    user_id: str,
    body: UserUpdateRequest,
    admin: ConnectionIdentity = Depends(require_admin),
) -> dict:
    store = _store()
    try:
        user = await _existing_user(store, user_id)
        if body.email and body.email.lower() != user.email.lower():
            if await store.get_user_by_email(body.email) is not None:
                raise HTTPException(status_code=400, detail="Email is already taken")
        if body.isActive is False and user.id == admin.identityId:
            raise HTTPException(status_code=400, detail="You cannot deactivate your own account")

        updated = await store.update_user(
            user_id,
            name=body.name.strip() if body.name else None,
            email=body.email,
            role=body.role,
            avatar=body.avatar,
            is_active=body.isActive,
        )
    except StoreError as e:
        logger.error(f"[Users] Update {user_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error updating user")

    logger.info(f"[Users] {admin.identityId} updated account {user_id}")
    return {"message": "User updated successfully", "user": user_payload(updated)}


@router.delete("/{user_id}")
async def deactivate_user(
    user_id: str,
    admin: ConnectionIdentity = Depends(require_admin),
) -> dict:
    store = _store()
    try:
        user = await _existing_user(store, user_id)
        if user.id == admin.identityId:
            raise HTTPException(status_code=400, detail="You cannot delete your own account")

        await store.set_user_active(user_id, False)
        if user.role == UserRole.SPEAKER:
            await store.cancel_upcoming_sessions(user_id)
    except StoreError as e:
        logger.error(f"[Users] Deactivate {user_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Server error deleting user")

    logger.info(f"[Users] {admin.identityId} deactivated account {user_id}")
    return {"message": "User deactivated successfully"}
