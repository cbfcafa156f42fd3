"""Real-time session hub (chat, Q&A, video signaling, presence).

Services:
    - SessionRoomHub: connection lifecycle and event dispatch.
    - ChatQARelay: authorize, persist, broadcast chat and Q&A actions.
    - SignalingRelay: unicast WebRTC signaling inside a video room.
"""
from .hub import SessionRoomHub, get_hub, set_hub

__all__ = ["SessionRoomHub", "get_hub", "set_hub"]
