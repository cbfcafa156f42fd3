"""JWT helpers (PyJWT).

Tokens are HS256 by default and carry the account id in ``sub``. Tokens
minted by the legacy Node server put it in ``userId`` or ``id`` instead;
``subject_of`` accepts all three.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from app.config import AppConfig, get_config

_SUBJECT_CLAIMS = ("sub", "userId", "id")


def create_access_token(
    user_id: str,
    config: Optional[AppConfig] = None,
    expires_delta: Optional[timedelta] = None,
    **claims: Any,
) -> str:
    """Issue a signed access token for ``user_id``."""
    config = config or get_config()
    if expires_delta is None:
        expires_delta = timedelta(minutes=config.auth.token_expire_minutes)

    now = datetime.now(timezone.utc)
    payload = {**claims, "sub": str(user_id), "iat": now, "exp": now + expires_delta}
    return jwt.encode(payload, config.jwt_secret, algorithm=config.auth.algorithm)


def decode_access_token(token: str, config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Verify signature and expiry.

    Raises:
        jwt.InvalidTokenError: on any verification failure (expired, bad
            signature, malformed).
    """
    config = config or get_config()
    return jwt.decode(token, config.jwt_secret, algorithms=[config.auth.algorithm])


def subject_of(claims: Dict[str, Any]) -> Optional[str]:
    for key in _SUBJECT_CLAIMS:
        value = claims.get(key)
        if value:
            return str(value)
    return None
