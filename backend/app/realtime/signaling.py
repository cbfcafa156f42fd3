"""WebRTC signaling relay and direct messages.

Offers, answers and ICE candidates are opaque to the server: the payload is
re-addressed to the one roster entry named by ``to`` and tagged with the
sender's identity. Nothing here is ever broadcast to the whole room except
the join/leave-call notices.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable

from app.config import RealtimeSettings

from . import events
from .broadcaster import Broadcaster, Connection
from .errors import AuthorizationFailure, StaleRecipient, ValidationFailure
from .events import PrivateMessageIn, SignalIn, VideoCallIn
from .models import Channel
from .presence import PresenceService
from .rooms import VideoRoomManager

logger = logging.getLogger(__name__)

# Key older clients read the blob from, per signaling event.
_LEGACY_KEYS = {
    events.OFFER: "offer",
    events.ANSWER: "answer",
    events.ICE_CANDIDATE: "candidate",
}


class SignalingRelay:
    def __init__(
        self,
        broadcaster: Broadcaster,
        video_rooms: VideoRoomManager,
        presence: PresenceService,
        settings: RealtimeSettings,
    ) -> None:
        self.broadcaster = broadcaster
        self.video_rooms = video_rooms
        self.presence = presence
        self.settings = settings

    async def relay(self, sender: Connection, event: str, data: SignalIn) -> bool:
        """Forward one offer/answer/ice-candidate to the named peer.

        Returns:
            True if the frame was handed to the recipient's socket.

        Raises:
            AuthorizationFailure: sender is not in the session's video room.
            StaleRecipient: recipient is gone and peer notification is on.
        """
        identity = sender.identity
        if not self.video_rooms.is_participant(data.sessionId, identity.identityId, sender.id):
            raise AuthorizationFailure("Join the video room before signaling")

        frame = {
            "sessionId": data.sessionId,
            "from": identity.identityId,
            "payload": data.payload,
            _LEGACY_KEYS[event]: data.payload,
        }
        target = self.video_rooms.find(data.sessionId, data.to)
        delivered = False
        if target is not None:
            delivered = await self.broadcaster.send_to(target.connectionHandle, event, frame)

        if not delivered:
            self._unavailable(event, data.to, data.sessionId)
        return delivered

    async def join_call(self, sender: Connection, data: VideoCallIn) -> None:
        self._require_participant(sender, data.sessionId)
        await self.broadcaster.publish(
            Channel.VIDEO.topic(data.sessionId),
            events.USER_JOINED_VIDEO,
            {**data.userData, "userId": sender.identity.identityId, "initiator": True},
            exclude=sender.id,
        )

    async def leave_call(self, sender: Connection, data: VideoCallIn) -> None:
        self._require_participant(sender, data.sessionId)
        await self.broadcaster.publish(
            Channel.VIDEO.topic(data.sessionId),
            events.USER_LEFT_VIDEO,
            {"userId": sender.identity.identityId},
            exclude=sender.id,
        )

    async def announce_departure(self, identity_id: str, session_ids: Iterable[str]) -> None:
        """Tell the remaining peers of each session that a caller dropped."""
        for session_id in session_ids:
            await self.broadcaster.publish(
                Channel.VIDEO.topic(session_id),
                events.USER_LEFT_VIDEO,
                {"userId": identity_id},
            )

    async def private_message(self, sender: Connection, data: PrivateMessageIn) -> bool:
        text = data.message.strip()
        if not text:
            raise ValidationFailure("Message cannot be empty")
        if len(text) > self.settings.max_message_length:
            raise ValidationFailure(
                f"Message cannot exceed {self.settings.max_message_length} characters"
            )

        identity = sender.identity
        handle = self.presence.connection_for(data.recipientId)
        delivered = False
        if handle is not None:
            delivered = await self.broadcaster.send_to(
                handle,
                events.RECEIVE_PRIVATE_MESSAGE,
                {
                    "from": {
                        "id": identity.identityId,
                        "name": identity.displayName,
                        "role": identity.role.value,
                    },
                    "message": text,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )

        if not delivered:
            self._unavailable(events.SEND_PRIVATE_MESSAGE, data.recipientId, None)
        return delivered

    def _require_participant(self, sender: Connection, session_id: str) -> None:
        if not self.video_rooms.is_participant(session_id, sender.identity.identityId, sender.id):
            raise AuthorizationFailure("Join the video room first")

    def _unavailable(self, event: str, recipient_id: str, session_id) -> None:
        logger.info(f"[Signal] {event} to {recipient_id} dropped (session={session_id})")
        if self.settings.notify_unavailable_peer:
            raise StaleRecipient(f"Recipient {recipient_id} is not available")
