"""WebSocket endpoint for the session room hub.

    WebSocket /ws?token=<jwt>

Protocol Flow:
    1. Client connects with its JWT in the ``token`` query parameter
       -> invalid token: socket closed with 1008 before accept
    2. Server accepts, registers presence
       -> others receive: {event: "user-connected", data: {id, name, role}}
       -> client receives: {event: "users-online", data: [...]}
    3. Client sends {event, data} frames (join-session-chat, send-message, ...)
       -> failures come back as {event: "error", data: {code, message, event}}
    4. On disconnect the hub reconciles presence and every room the
       connection had joined.
"""
import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from .errors import AuthenticationFailure
from .hub import get_hub

logger = logging.getLogger(__name__)

router = APIRouter()


def _decode(text: Optional[str]) -> Any:
    """Parse a text frame; binary frames and bad JSON come back as None."""
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT access token"),
) -> None:
    hub = get_hub()

    try:
        identity = await hub.authenticate(token)
    except AuthenticationFailure as e:
        logger.warning(f"[WS] Rejected connection: {e.message}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    connection = await hub.connect(websocket, identity)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            await hub.handle_frame(connection, _decode(message.get("text")))
    except WebSocketDisconnect:
        logger.info(f"[WS] {identity.identityId} closed connection {connection.id}")
    finally:
        # Cleanup has to finish even if this handler task is cancelled.
        await asyncio.shield(hub.disconnect(connection))
