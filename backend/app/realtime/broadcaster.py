"""Connection registry and topic fan-out.

The broadcaster owns the transport side of the hub: which WebSocket belongs
to which connection handle, and which handles are subscribed to which topic
(``chat-<sid>``, ``qa-<sid>``, ``video-<sid>``). Everything above it talks
in handles and topics only, so a shared pub/sub backplane can replace
``LocalBroadcaster`` without touching the relay logic.

Performance Notes:
    - Fan-out uses asyncio.gather() for concurrent delivery
    - Connections that fail to send are dropped from their topics
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from .events import envelope
from .models import ConnectionIdentity

logger = logging.getLogger(__name__)


class Connection:
    """One authenticated WebSocket and the identity bound to it."""

    def __init__(self, websocket: WebSocket, identity: ConnectionIdentity) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity

    async def send(self, event: str, data: Any) -> bool:
        """Send one event envelope; returns False if the socket is gone."""
        try:
            await self.websocket.send_json(envelope(event, data))
            return True
        except Exception as e:
            logger.debug(f"[WS] Failed to send {event} to {self.id}: {e}")
            return False

    def __repr__(self) -> str:
        return f"Connection({self.id}, {self.identity.identityId})"


class Broadcaster(ABC):
    """Transport-facing fan-out interface."""

    @abstractmethod
    def add_connection(self, connection: Connection) -> None: ...

    @abstractmethod
    def remove_connection(self, connection_id: str) -> Set[str]:
        """Forget a connection; returns the topics it was subscribed to."""

    @abstractmethod
    def get_connection(self, connection_id: str) -> Optional[Connection]: ...

    @abstractmethod
    def join(self, connection_id: str, topic: str) -> None: ...

    @abstractmethod
    def leave(self, connection_id: str, topic: str) -> None: ...

    @abstractmethod
    def members(self, topic: str) -> Set[str]: ...

    @abstractmethod
    async def send_to(self, connection_id: str, event: str, data: Any) -> bool: ...

    @abstractmethod
    async def publish(
        self, topic: str, event: str, data: Any, exclude: Optional[str] = None
    ) -> None: ...

    @abstractmethod
    async def publish_all(self, event: str, data: Any, exclude: Optional[str] = None) -> None: ...


class LocalBroadcaster(Broadcaster):
    """In-process broadcaster for a single event loop.

    NOT thread-safe; all mutation happens on the loop that runs the
    WebSocket handlers.
    """

    def __init__(self) -> None:
        # connection handle -> Connection
        self.connections: Dict[str, Connection] = {}

        # topic -> set of connection handles
        self.topics: Dict[str, Set[str]] = {}

        # connection handle -> topics it joined (for disconnect cleanup)
        self.subscriptions: Dict[str, Set[str]] = {}

    def add_connection(self, connection: Connection) -> None:
        self.connections[connection.id] = connection
        self.subscriptions.setdefault(connection.id, set())

    def remove_connection(self, connection_id: str) -> Set[str]:
        self.connections.pop(connection_id, None)
        joined = self.subscriptions.pop(connection_id, set())
        for topic in joined:
            self._discard(topic, connection_id)
        return joined

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    def join(self, connection_id: str, topic: str) -> None:
        if connection_id not in self.connections:
            return
        self.topics.setdefault(topic, set()).add(connection_id)
        self.subscriptions.setdefault(connection_id, set()).add(topic)

    def leave(self, connection_id: str, topic: str) -> None:
        self._discard(topic, connection_id)
        self.subscriptions.get(connection_id, set()).discard(topic)

    def members(self, topic: str) -> Set[str]:
        return set(self.topics.get(topic, set()))

    async def send_to(self, connection_id: str, event: str, data: Any) -> bool:
        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        return await connection.send(event, data)

    async def publish(
        self, topic: str, event: str, data: Any, exclude: Optional[str] = None
    ) -> None:
        """Send to every member of a topic, optionally skipping one handle."""
        targets = [
            self.connections[cid] for cid in self.topics.get(topic, set())
            if cid != exclude and cid in self.connections
        ]
        failed = await self._fan_out(targets, event, data)
        for connection in failed:
            self._discard(topic, connection.id)
            logger.debug(f"[WS] Removed dead connection {connection.id} from {topic}")

    async def publish_all(self, event: str, data: Any, exclude: Optional[str] = None) -> None:
        targets = [c for cid, c in self.connections.items() if cid != exclude]
        await self._fan_out(targets, event, data)

    async def _fan_out(
        self, targets: List[Connection], event: str, data: Any
    ) -> Iterable[Connection]:
        if not targets:
            return []
        results = await asyncio.gather(
            *[conn.send(event, data) for conn in targets],
            return_exceptions=True,
        )
        return [conn for conn, ok in zip(targets, results) if ok is not True]

    def _discard(self, topic: str, connection_id: str) -> None:
        members = self.topics.get(topic)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.topics[topic]
