"""Room membership: which connections are subscribed to which room key.

A room is not an entity of its own. It exists exactly while its member set
is non-empty: the first ``join`` creates it and the last ``leave`` removes
the key, so nothing can keep referencing an empty room.

Thread safety: every read and write goes through ``_lock``. Reads return
frozen snapshots, so callers iterate without holding the lock.
"""
import logging
import threading
from typing import Dict, FrozenSet, List, Set

logger = logging.getLogger(__name__)


class RoomMembership:
    """Two-way index between connection ids and room keys."""

    def __init__(self) -> None:
        # room key -> connection ids
        self._members: Dict[str, Set[str]] = {}
        # connection id -> room keys (for disconnect cleanup)
        self._rooms_by_connection: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def join(self, connection_id: str, room: str) -> bool:
        """Add a connection to a room.

        Returns:
            True if the connection was newly added, False if it was already
            a member (re-joining is a no-op).
        """
        with self._lock:
            members = self._members.setdefault(room, set())
            if connection_id in members:
                return False
            members.add(connection_id)
            self._rooms_by_connection.setdefault(connection_id, set()).add(room)
        logger.debug("[Rooms] %s joined %s", connection_id, room)
        return True

    def leave(self, connection_id: str, room: str) -> bool:
        """Remove a connection from a room.

        Unknown connections and rooms are ignored.

        Returns:
            True if a membership was removed.
        """
        with self._lock:
            members = self._members.get(room)
            if not members or connection_id not in members:
                return False
            self._discard(connection_id, room)
        logger.debug("[Rooms] %s left %s", connection_id, room)
        return True

    def leave_all(self, connection_id: str) -> List[str]:
        """Remove a connection from every room it belongs to.

        Returns:
            The room keys the connection was removed from.
        """
        with self._lock:
            rooms = list(self._rooms_by_connection.get(connection_id, ()))
            for room in rooms:
                self._discard(connection_id, room)
        return rooms

    def members_of(self, room: str) -> FrozenSet[str]:
        """Snapshot of the connection ids currently in ``room``."""
        with self._lock:
            return frozenset(self._members.get(room, ()))

    def rooms_of(self, connection_id: str) -> FrozenSet[str]:
        """Snapshot of the room keys ``connection_id`` belongs to."""
        with self._lock:
            return frozenset(self._rooms_by_connection.get(connection_id, ()))

    def room_exists(self, room: str) -> bool:
        with self._lock:
            return room in self._members

    def room_count(self) -> int:
        with self._lock:
            return len(self._members)

    def _discard(self, connection_id: str, room: str) -> None:
        # Caller holds the lock.
        members = self._members.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._members[room]
        rooms = self._rooms_by_connection.get(connection_id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._rooms_by_connection[connection_id]
