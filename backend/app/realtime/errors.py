"""Failure taxonomy for the socket hub.

Every failure is handled inside the event handler that detected it: the
caller gets an ``error`` event, nothing is broadcast, and the connection
stays open. REST routers map the same exceptions onto HTTP status codes.
"""
from typing import Optional

from fastapi import HTTPException


class RealtimeError(Exception):
    """Base class; carries a machine-readable code and a client message."""

    code = "error"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_payload(self, event: Optional[str] = None) -> dict:
        return {"code": self.code, "message": self.message, "event": event}


class AuthenticationFailure(RealtimeError):
    """Missing, invalid or expired credential, or an unusable account."""
    code = "authentication_failed"
    status_code = 401


class AuthorizationFailure(RealtimeError):
    """Authenticated, but not allowed to act on this session."""
    code = "forbidden"
    status_code = 403


class NotFound(RealtimeError):
    code = "not_found"
    status_code = 404


class ValidationFailure(RealtimeError):
    """Malformed or out-of-range event payload."""
    code = "invalid_payload"
    status_code = 400


class PersistenceFailure(RealtimeError):
    code = "persistence_failed"
    status_code = 500


class StaleRecipient(RealtimeError):
    """Signaling target is no longer in the video room."""
    code = "recipient_unavailable"
    status_code = 404


def http_exception(exc: RealtimeError) -> HTTPException:
    """Map a hub failure onto the REST error it corresponds to."""
    return HTTPException(status_code=exc.status_code, detail=exc.message)
