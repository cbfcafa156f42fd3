"""Session room hub: the socket-side service object.

The hub wires the collaborators together and owns the connection
lifecycle:

    connect     -> presence registered, ``user-connected`` / ``users-online``
    frames      -> dispatched by event name; failures become ``error`` events
    disconnect  -> topics dropped, video rosters reconciled, synthesized
                   typing stops, presence released

All state lives on this object (and the broadcaster/presence registry it
was given), so tests and alternative deployments build their own hub.

Usage:
    hub = SessionRoomHub(ConferenceStore.get_instance())
    set_hub(hub)
"""
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from fastapi import WebSocket
from pydantic import BaseModel, ValidationError

from app.auth.service import ConnectionAuthenticator
from app.config import AppConfig, get_config
from app.store.service import ConferenceStore

from . import events
from .broadcaster import Broadcaster, Connection, LocalBroadcaster
from .errors import RealtimeError, ValidationFailure
from .events import (
    AnswerIn,
    PrivateMessageIn,
    QuestionIn,
    ReactionIn,
    SendMessageIn,
    SessionRef,
    SignalIn,
    TypingIn,
    VideoCallIn,
    VoteIn,
)
from .models import Channel, ConnectionIdentity
from .presence import LocalPresenceRegistry, PresenceRegistry, PresenceService
from .relay import ChatQARelay
from .rooms import TopicChannels, VideoRoomManager
from .signaling import SignalingRelay

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Any], Awaitable[None]]


class SessionRoomHub:
    """Authenticated socket hub for chat, Q&A and video rooms."""

    def __init__(
        self,
        store: ConferenceStore,
        config: Optional[AppConfig] = None,
        broadcaster: Optional[Broadcaster] = None,
        presence_registry: Optional[PresenceRegistry] = None,
    ) -> None:
        self.config = config or get_config()
        self.store = store
        self.broadcaster = broadcaster or LocalBroadcaster()

        self.authenticator = ConnectionAuthenticator(store, self.config)
        self.presence = PresenceService(
            presence_registry or LocalPresenceRegistry(), self.broadcaster
        )
        self.channels = TopicChannels(self.broadcaster)
        self.video_rooms = VideoRoomManager(self.broadcaster)
        self.relay = ChatQARelay(store, self.channels, self.config.realtime)
        self.signaling = SignalingRelay(
            self.broadcaster, self.video_rooms, self.presence, self.config.realtime
        )

        self._handlers: Dict[str, Handler] = {
            events.JOIN_SESSION_CHAT: self._join_chat,
            events.LEAVE_SESSION_CHAT: self._leave_chat,
            events.JOIN_QA_ROOM: self._join_qa,
            events.LEAVE_QA_ROOM: self._leave_qa,
            events.JOIN_VIDEO_ROOM: self._join_video,
            events.LEAVE_VIDEO_ROOM: self._leave_video,
            events.SEND_MESSAGE: self._send_message,
            events.TYPING_START: self._typing_start,
            events.TYPING_STOP: self._typing_stop,
            events.ADD_REACTION: self._add_reaction,
            events.SUBMIT_QUESTION: self._submit_question,
            events.VOTE_QUESTION: self._vote_question,
            events.ANSWER_QUESTION: self._answer_question,
            events.JOIN_VIDEO_CALL: self._join_video_call,
            events.LEAVE_VIDEO_CALL: self._leave_video_call,
            events.SEND_PRIVATE_MESSAGE: self._private_message,
        }
        for event in events.SIGNAL_EVENTS:
            self._handlers[event] = partial(self._signal, event)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def authenticate(self, token: Optional[str]) -> ConnectionIdentity:
        return await self.authenticator.authenticate(token)

    async def connect(self, websocket: WebSocket, identity: ConnectionIdentity) -> Connection:
        """Register an accepted socket and announce the identity."""
        connection = Connection(websocket, identity)
        self.broadcaster.add_connection(connection)
        await self.presence.register_connection(connection)
        logger.info(
            f"[Hub] {identity.displayName} ({identity.identityId}) connected as {connection.id}"
        )
        return connection

    async def disconnect(self, connection: Connection) -> None:
        """Release everything the connection held and notify whoever is affected."""
        identity_id = connection.identity.identityId
        self.broadcaster.remove_connection(connection.id)

        video_sessions = await self.video_rooms.drop_connection(connection.id)
        await self.signaling.announce_departure(identity_id, video_sessions)

        if self.config.realtime.synthesize_typing_stop:
            await self.relay.clear_typing(identity_id, connection.id)

        await self.presence.unregister_connection(identity_id, connection.id)
        logger.info(
            f"[Hub] {connection.identity.displayName} ({identity_id}) disconnected; "
            f"left {len(video_sessions)} video room(s)"
        )

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle_frame(self, connection: Connection, frame: Any) -> None:
        """Route one inbound envelope. Never raises; failures go back as ``error``."""
        event = frame.get("event") if isinstance(frame, dict) else None
        if not isinstance(event, str):
            await self._report(connection, None, ValidationFailure("Frames must be {event, data}"))
            return

        handler = self._handlers.get(event)
        if handler is None:
            await self._report(
                connection, event, ValidationFailure(f"Unknown event: {event}", code="unknown_event")
            )
            return

        logger.debug(f"[WS] {connection.identity.identityId} -> {event}")
        try:
            await handler(connection, frame.get("data"))
        except RealtimeError as e:
            logger.info(
                f"[Hub] {event} from {connection.identity.identityId} failed: {e.code}: {e.message}"
            )
            await self._report(connection, event, e)
        except Exception:
            logger.exception(f"[Hub] Unhandled error in {event} handler")
            await connection.send(
                events.ERROR,
                {"code": "internal", "message": "Internal server error", "event": event},
            )

    async def _report(self, connection: Connection, event: Optional[str], error: RealtimeError) -> None:
        await connection.send(events.ERROR, error.to_payload(event))

    @staticmethod
    def _parse(model: Type[BaseModel], data: Any) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            location = ".".join(str(p) for p in first.get("loc", ())) or "payload"
            raise ValidationFailure(f"Invalid {location}: {first.get('msg', 'malformed payload')}")

    # =========================================================================
    # Handlers: membership
    # =========================================================================

    async def _join_chat(self, connection: Connection, data: Any) -> None:
        ref = self._parse(SessionRef, data)
        self.channels.join(connection, Channel.CHAT, ref.sessionId)

    async def _leave_chat(self, connection: Connection, data: Any) -> None:
        ref = self._parse(SessionRef, data)
        self.channels.leave(connection, Channel.CHAT, ref.sessionId)

    async def _join_qa(self, connection: Connection, data: Any) -> None:
        ref = self._parse(SessionRef, data)
        self.channels.join(connection, Channel.QA, ref.sessionId)

    async def _leave_qa(self, connection: Connection, data: Any) -> None:
        ref = self._parse(SessionRef, data)
        self.channels.leave(connection, Channel.QA, ref.sessionId)

    async def _join_video(self, connection: Connection, data: Any) -> None:
        ref = self._parse(SessionRef, data)
        if self.config.realtime.video_requires_access:
            await self.relay.authorize(connection.identity, ref.sessionId)
        await self.video_rooms.join(connection, ref.sessionId)

    async def _leave_video(self, connection: Connection, data: Any) -> None:
        ref = self._parse(SessionRef, data)
        await self.video_rooms.leave(connection, ref.sessionId)

    # =========================================================================
    # Handlers: chat and Q&A
    # =========================================================================

    async def _send_message(self, connection: Connection, data: Any) -> None:
        await self.relay.send_message(connection.identity, self._parse(SendMessageIn, data))

    async def _typing_start(self, connection: Connection, data: Any) -> None:
        await self.relay.typing_start(
            connection.identity, self._parse(TypingIn, data), connection.id
        )

    async def _typing_stop(self, connection: Connection, data: Any) -> None:
        await self.relay.typing_stop(connection.identity, self._parse(TypingIn, data))

    async def _add_reaction(self, connection: Connection, data: Any) -> None:
        await self.relay.add_reaction(connection.identity, self._parse(ReactionIn, data))

    async def _submit_question(self, connection: Connection, data: Any) -> None:
        await self.relay.submit_question(connection.identity, self._parse(QuestionIn, data))

    async def _vote_question(self, connection: Connection, data: Any) -> None:
        await self.relay.vote_question(connection.identity, self._parse(VoteIn, data))

    async def _answer_question(self, connection: Connection, data: Any) -> None:
        await self.relay.answer_question(connection.identity, self._parse(AnswerIn, data))

    # =========================================================================
    # Handlers: video and direct messages
    # =========================================================================

    async def _join_video_call(self, connection: Connection, data: Any) -> None:
        await self.signaling.join_call(connection, self._parse(VideoCallIn, data))

    async def _leave_video_call(self, connection: Connection, data: Any) -> None:
        await self.signaling.leave_call(connection, self._parse(VideoCallIn, data))

    async def _signal(self, event: str, connection: Connection, data: Any) -> None:
        await self.signaling.relay(connection, event, self._parse(SignalIn, data))

    async def _private_message(self, connection: Connection, data: Any) -> None:
        await self.signaling.private_message(connection, self._parse(PrivateMessageIn, data))


_hub: Optional[SessionRoomHub] = None


def get_hub() -> SessionRoomHub:
    """Return the process-wide hub, building it from config on first use."""
    global _hub
    if _hub is None:
        config = get_config()
        _hub = SessionRoomHub(ConferenceStore.get_instance(config.storage.db_path), config)
    return _hub


def set_hub(hub: Optional[SessionRoomHub]) -> None:
    global _hub
    _hub = hub
