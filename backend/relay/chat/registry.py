"""Connection registry for the live relay.

Tracks every open transport connection, the user it is bound to (if it
authenticated) and hands out the ``Connection`` objects the fan-out engine
pushes events into.

Each ``Connection`` owns a bounded FIFO outbox drained by its own writer
task. Fan-out only enqueues, so a slow socket delays nobody but itself and
events reach a connection in the order they were fanned out.

Thread Safety:
    The id -> connection table is guarded by ``_lock``; room membership is
    delegated to ``RoomMembership`` which has its own lock. A connection's
    outbox and writer task belong to the event loop that started them;
    ``Connection.deliver`` may be called from any thread.
"""
import asyncio
import logging
import threading
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .conversation import user_room
from .rooms import RoomMembership

logger = logging.getLogger(__name__)

# Transport write used by a connection's writer task (e.g. WebSocket.send_json)
SendFn = Callable[[dict], Awaitable[Any]]

DEFAULT_OUTBOUND_QUEUE_SIZE = 256


class Connection:
    """One live transport connection and its ordered outbound queue.

    Attributes:
        id: Opaque identifier, unique per live connection.
        user_id: Bound user, or None until the client authenticates.
    """

    def __init__(self, send: SendFn, queue_size: int = DEFAULT_OUTBOUND_QUEUE_SIZE) -> None:
        self.id: str = uuid.uuid4().hex
        self.user_id: Optional[str] = None
        self._send = send
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_failure: Optional[Callable[["Connection"], None]] = None
        self.closed = False

    def start(self, on_failure: Optional[Callable[["Connection"], None]] = None) -> None:
        """Start the writer task. Must be called from a running event loop."""
        if self._writer is not None:
            return
        self._on_failure = on_failure
        self._loop = asyncio.get_running_loop()
        self._writer = self._loop.create_task(self._pump())

    def deliver(self, event: dict) -> bool:
        """Queue an event for this connection without waiting.

        Safe to call from any thread: when the caller is not on the loop
        that owns the outbox, the put is scheduled onto that loop.

        Returns:
            False if the connection is closed or its outbox is full (the
            event is dropped), True otherwise.
        """
        if self.closed:
            return False
        loop = self._loop
        if loop is not None and not self._on_loop(loop):
            try:
                loop.call_soon_threadsafe(self._enqueue, event)
            except RuntimeError:
                # Owning loop already closed
                return False
            return True
        return self._enqueue(event)

    @staticmethod
    def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False

    def _enqueue(self, event: dict) -> bool:
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "[Relay] Outbox full for connection %s, dropping %s",
                self.id, event.get("event"),
            )
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued event has been written (or discarded)."""
        await self._outbox.join()

    async def close(self) -> None:
        """Stop the writer task; queued events not yet written are discarded."""
        self.closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        self._writer = None

    async def _pump(self) -> None:
        while True:
            event = await self._outbox.get()
            try:
                if not self.closed:
                    await self._send(event)
            except Exception as e:
                logger.debug(f"Failed to send to connection {self.id}: {e}")
                self.closed = True
                if self._on_failure is not None:
                    self._on_failure(self)
            finally:
                self._outbox.task_done()


class ConnectionRegistry:
    """Live connections, their user bindings and their room memberships.

    Multiple connections may bind the same user (several devices or tabs).
    Operations on unknown connection ids are silent no-ops.
    """

    def __init__(
        self,
        rooms: Optional[RoomMembership] = None,
        queue_size: int = DEFAULT_OUTBOUND_QUEUE_SIZE,
    ) -> None:
        self.rooms = rooms if rooms is not None else RoomMembership()
        self.queue_size = queue_size
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.Lock()

    def on_connect(self, send: SendFn) -> Connection:
        """Register a newly opened transport connection.

        The connection starts unauthenticated and in no rooms. The caller is
        responsible for starting its writer task.
        """
        connection = Connection(send, queue_size=self.queue_size)
        with self._lock:
            self._connections[connection.id] = connection
        logger.info("[Relay] Connection %s opened", connection.id)
        return connection

    def authenticate(self, connection_id: str, user_id: str) -> bool:
        """Bind ``user_id`` to a connection and join its personal room.

        Repeating the call with the same user is harmless. A connection that
        is already bound to a different user keeps its binding.

        Returns:
            True if the connection is (now) bound to ``user_id``.
        """
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            if connection.user_id is not None and connection.user_id != user_id:
                logger.warning(
                    "[Relay] Connection %s already bound to %s, refusing %s",
                    connection_id, connection.user_id, user_id,
                )
                return False
            connection.user_id = user_id
        self.rooms.join(connection_id, user_room(user_id))
        logger.info("[Relay] Connection %s authenticated as %s", connection_id, user_id)
        return True

    def on_disconnect(self, connection_id: str) -> Optional[Connection]:
        """Forget a connection and drop all of its room memberships.

        Safe to call for connections that never authenticated or that are
        already gone.

        Returns:
            The removed connection, or None if it was unknown.
        """
        with self._lock:
            connection = self._connections.pop(connection_id, None)
        rooms = self.rooms.leave_all(connection_id)
        if connection is not None:
            connection.closed = True
            logger.info(
                "[Relay] Connection %s (user=%s) closed, left %d rooms",
                connection_id, connection.user_id, len(rooms),
            )
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def resolve(self, connection_ids) -> List[Connection]:
        """Map connection ids to live connections, skipping unknown ids."""
        with self._lock:
            return [
                self._connections[cid] for cid in connection_ids
                if cid in self._connections
            ]

    def all_connections(self) -> List[Connection]:
        with self._lock:
            return list(self._connections.values())

    def connections_for_user(self, user_id: str) -> List[Connection]:
        with self._lock:
            return [c for c in self._connections.values() if c.user_id == user_id]

    def online_users(self) -> List[str]:
        """Sorted ids of users with at least one authenticated connection."""
        with self._lock:
            return sorted({c.user_id for c in self._connections.values() if c.user_id})

    def is_user_online(self, user_id: str) -> bool:
        return bool(self.connections_for_user(user_id))

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)
