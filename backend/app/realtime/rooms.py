"""Per-session room membership.

Two kinds of membership live here and are deliberately kept apart:

    TopicChannels     - chat and Q&A: a bare topic subscription, no roster.
                        Authorization happens on content events.
    VideoRoomManager  - video: topic subscription plus an explicit roster
                        that peers use to discover each other for WebRTC.

Roster invariant: an entry for (session, identity) exists iff that identity
is joined to the session's video topic, and at most once per session.
Every roster change publishes the full roster as ``participants-updated``.
"""
import logging
from typing import Any, Dict, List, Optional

from . import events
from .broadcaster import Broadcaster, Connection
from .models import Channel, RosterEntry

logger = logging.getLogger(__name__)


class TopicChannels:
    """Chat and Q&A topic subscriptions."""

    def __init__(self, broadcaster: Broadcaster) -> None:
        self.broadcaster = broadcaster

    def join(self, connection: Connection, channel: Channel, session_id: str) -> None:
        self.broadcaster.join(connection.id, channel.topic(session_id))
        logger.info(
            f"[Hub] {connection.identity.displayName} joined {channel.value} for session {session_id}"
        )

    def leave(self, connection: Connection, channel: Channel, session_id: str) -> None:
        self.broadcaster.leave(connection.id, channel.topic(session_id))
        logger.info(
            f"[Hub] {connection.identity.displayName} left {channel.value} for session {session_id}"
        )

    def is_member(self, connection_id: str, channel: Channel, session_id: str) -> bool:
        return connection_id in self.broadcaster.members(channel.topic(session_id))

    async def publish(
        self,
        channel: Channel,
        session_id: str,
        event: str,
        data: Any,
        exclude: Optional[str] = None,
    ) -> None:
        await self.broadcaster.publish(channel.topic(session_id), event, data, exclude=exclude)


class VideoRoomManager:
    """Video rooms: topic membership plus the participant roster.

    Attributes:
        rosters: session_id -> {identity_id -> RosterEntry}. Sessions with
            no participants have no key.
    """

    def __init__(self, broadcaster: Broadcaster) -> None:
        self.broadcaster = broadcaster
        self.rosters: Dict[str, Dict[str, RosterEntry]] = {}

    async def join(self, connection: Connection, session_id: str) -> None:
        """Add the connection to the room and publish the roster to everyone in it."""
        identity = connection.identity
        topic = Channel.VIDEO.topic(session_id)
        roster = self.rosters.setdefault(session_id, {})

        existing = roster.get(identity.identityId)
        if existing is not None and existing.connectionHandle != connection.id:
            # Same identity from a new connection: the new one takes over.
            self.broadcaster.leave(existing.connectionHandle, topic)
            logger.info(
                f"[Video] {identity.identityId} moved from {existing.connectionHandle} "
                f"to {connection.id} in session {session_id}"
            )

        self.broadcaster.join(connection.id, topic)
        roster[identity.identityId] = RosterEntry(
            identityId=identity.identityId,
            displayName=identity.displayName,
            role=identity.role,
            connectionHandle=connection.id,
        )
        logger.info(
            f"[Video] {identity.displayName} joined video room for session {session_id} "
            f"({len(roster)} participants)"
        )
        await self._publish_roster(session_id)

    async def leave(self, connection: Connection, session_id: str) -> bool:
        """Remove the identity from the room; returns False if it was not in it.

        A connection whose entry was taken over by a newer connection of the
        same identity only drops its topic membership.
        """
        self.broadcaster.leave(connection.id, Channel.VIDEO.topic(session_id))
        roster = self.rosters.get(session_id)
        identity_id = connection.identity.identityId
        entry = roster.get(identity_id) if roster else None
        if entry is None or entry.connectionHandle != connection.id:
            return False
        del roster[identity_id]

        logger.info(
            f"[Video] {connection.identity.displayName} left video room for session {session_id}"
        )
        self._drop_if_empty(session_id)
        await self._publish_roster(session_id)
        return True

    async def drop_connection(self, connection_id: str) -> List[str]:
        """Remove every roster entry owned by a closed connection.

        Returns:
            Session ids whose roster changed.
        """
        affected = []
        for session_id, roster in list(self.rosters.items()):
            owned = [i for i, e in roster.items() if e.connectionHandle == connection_id]
            if not owned:
                continue
            for identity_id in owned:
                del roster[identity_id]
            affected.append(session_id)
            self._drop_if_empty(session_id)

        for session_id in affected:
            await self._publish_roster(session_id)
        return affected

    def roster(self, session_id: str) -> List[RosterEntry]:
        return list(self.rosters.get(session_id, {}).values())

    def find(self, session_id: str, identity_id: str) -> Optional[RosterEntry]:
        return self.rosters.get(session_id, {}).get(identity_id)

    def is_participant(self, session_id: str, identity_id: str, connection_id: str) -> bool:
        entry = self.find(session_id, identity_id)
        return entry is not None and entry.connectionHandle == connection_id

    async def _publish_roster(self, session_id: str) -> None:
        participants = [e.model_dump(mode="json") for e in self.roster(session_id)]
        await self.broadcaster.publish(
            Channel.VIDEO.topic(session_id), events.PARTICIPANTS_UPDATED, participants
        )

    def _drop_if_empty(self, session_id: str) -> None:
        if not self.rosters.get(session_id):
            self.rosters.pop(session_id, None)
