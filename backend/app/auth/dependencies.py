"""FastAPI dependencies for bearer-token authentication on REST routes."""
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.realtime import get_hub
from app.realtime.errors import AuthenticationFailure
from app.realtime.models import ConnectionIdentity

_bearer = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> ConnectionIdentity:
    """Resolve ``Authorization: Bearer <jwt>`` into the caller's identity (401 otherwise)."""
    token = credentials.credentials if credentials else None
    try:
        return await get_hub().authenticator.authenticate(token)
    except AuthenticationFailure as e:
        raise HTTPException(
            status_code=401,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin(
    user: ConnectionIdentity = Depends(get_current_user),
) -> ConnectionIdentity:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return user
