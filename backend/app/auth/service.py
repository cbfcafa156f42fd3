"""Connection authenticator.

Resolves a bearer token into a ``ConnectionIdentity``:
1. Verify the JWT signature and expiry
2. Read the account id from the claims
3. Load the account and check that it is active

Used once per WebSocket handshake and once per REST request.
"""
import logging
from typing import Optional

import jwt

from app.config import AppConfig, get_config
from app.realtime.errors import AuthenticationFailure
from app.realtime.models import ConnectionIdentity
from app.store.service import ConferenceStore, StoreError

from .tokens import decode_access_token, subject_of

logger = logging.getLogger(__name__)


class ConnectionAuthenticator:
    """Validates handshake credentials against the account store."""

    def __init__(self, store: ConferenceStore, config: Optional[AppConfig] = None):
        self.store = store
        self.config = config or get_config()

    async def authenticate(self, token: Optional[str]) -> ConnectionIdentity:
        """Return the identity behind ``token``.

        Raises:
            AuthenticationFailure: missing, invalid or expired token, unknown
                or deactivated account.
        """
        if not token:
            raise AuthenticationFailure("Authentication token is required")

        try:
            claims = decode_access_token(token, self.config)
        except jwt.ExpiredSignatureError:
            raise AuthenticationFailure("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.info(f"[Auth] Rejected token: {e}")
            raise AuthenticationFailure("Invalid token")

        user_id = subject_of(claims)
        if not user_id:
            raise AuthenticationFailure("Token has no subject")

        try:
            user = await self.store.get_user(user_id)
        except StoreError as e:
            logger.error(f"[Auth] Account lookup failed for {user_id}: {e}")
            raise AuthenticationFailure("Unable to verify account")

        if user is None:
            raise AuthenticationFailure("Account not found")
        if not user.is_active:
            raise AuthenticationFailure("Account is deactivated")

        return ConnectionIdentity.from_user(user)
