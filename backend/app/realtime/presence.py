"""Presence registry: which identities are online, and on which connection.

At most one entry exists per identity. A reconnect replaces the entry
(last-connection-wins), and an unregister only takes effect when the
entry still belongs to the disconnecting connection, so the late
disconnect of a superseded socket cannot evict the live one.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from . import events
from .broadcaster import Broadcaster, Connection
from .models import PresenceEntry

logger = logging.getLogger(__name__)


class PresenceRegistry(ABC):
    """Storage side of presence; swap for a shared backplane when scaling out."""

    @abstractmethod
    def put(self, entry: PresenceEntry) -> Optional[PresenceEntry]:
        """Store an entry; returns the one it replaced, if any."""

    @abstractmethod
    def remove_if_owned(self, identity_id: str, connection_id: str) -> bool:
        """Remove the entry only if ``connection_id`` still owns it."""

    @abstractmethod
    def get(self, identity_id: str) -> Optional[PresenceEntry]: ...

    @abstractmethod
    def entries(self) -> List[PresenceEntry]: ...


class LocalPresenceRegistry(PresenceRegistry):
    def __init__(self) -> None:
        self._entries: Dict[str, PresenceEntry] = {}

    def put(self, entry: PresenceEntry) -> Optional[PresenceEntry]:
        previous = self._entries.get(entry.identityId)
        self._entries[entry.identityId] = entry
        return previous

    def remove_if_owned(self, identity_id: str, connection_id: str) -> bool:
        current = self._entries.get(identity_id)
        if current is None or current.connectionHandle != connection_id:
            return False
        del self._entries[identity_id]
        return True

    def get(self, identity_id: str) -> Optional[PresenceEntry]:
        return self._entries.get(identity_id)

    def entries(self) -> List[PresenceEntry]:
        return list(self._entries.values())


class PresenceService:
    """Registers connections and announces presence changes."""

    def __init__(self, registry: PresenceRegistry, broadcaster: Broadcaster) -> None:
        self.registry = registry
        self.broadcaster = broadcaster

    async def register_connection(self, connection: Connection) -> None:
        """Mark the identity online, tell everyone else, send the roster back."""
        identity = connection.identity
        previous = self.registry.put(PresenceEntry(
            identityId=identity.identityId,
            displayName=identity.displayName,
            role=identity.role,
            connectionHandle=connection.id,
        ))
        if previous is not None:
            logger.info(
                f"[Presence] {identity.identityId} reconnected "
                f"({previous.connectionHandle} -> {connection.id})"
            )

        await self.broadcaster.publish_all(
            events.USER_CONNECTED,
            {
                "id": identity.identityId,
                "name": identity.displayName,
                "role": identity.role.value,
            },
            exclude=connection.id,
        )
        await connection.send(events.USERS_ONLINE, self.snapshot())

    async def unregister_connection(self, identity_id: str, connection_id: str) -> bool:
        """Drop the entry if this connection still owns it.

        Returns:
            True when the identity went offline and ``user-disconnected``
            was broadcast; False for a superseded connection.
        """
        if not self.registry.remove_if_owned(identity_id, connection_id):
            logger.debug(
                f"[Presence] Ignoring stale disconnect of {identity_id} on {connection_id}"
            )
            return False

        await self.broadcaster.publish_all(
            events.USER_DISCONNECTED, identity_id, exclude=connection_id
        )
        return True

    def list_online(self) -> List[PresenceEntry]:
        return self.registry.entries()

    def connection_for(self, identity_id: str) -> Optional[str]:
        entry = self.registry.get(identity_id)
        return entry.connectionHandle if entry else None

    def snapshot(self) -> List[dict]:
        """Wire form of ``list_online``."""
        return [
            {
                "id": e.identityId,
                "name": e.displayName,
                "role": e.role.value,
                "status": e.status,
            }
            for e in self.registry.entries()
        ]
