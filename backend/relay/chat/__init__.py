"""Live chat relay: connections, rooms and event fan-out."""

from .conversation import conversation_room, resolve_conversation_id, user_room
from .registry import Connection, ConnectionRegistry
from .rooms import RoomMembership

__all__ = [
    "Connection",
    "ConnectionRegistry",
    "RoomMembership",
    "conversation_room",
    "resolve_conversation_id",
    "user_room",
]
