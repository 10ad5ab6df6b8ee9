"""Live chat relay: inbound event dispatch and room fan-out.

The relay turns one inbound client event into pushes onto the outboxes of
every connection that should see it. State lives in an injected
``ConnectionRegistry`` (connections, user bindings, room memberships).

Event flow:
    authenticate        -> bind user, join ``user_<id>``, ack ``authenticated``
    join_conversation   -> join ``conversation_<id>``, ack ``conversation_joined``
    leave_conversation  -> leave ``conversation_<id>``, ack ``conversation_left``
    send_message        -> [persist] -> ``new_message`` to the conversation room,
                           ``message_received`` to ``user_<receiver>``,
                           ``message_sent`` to the sender only
    typing_start/stop   -> ``user_typing`` to the room minus the sender
    mark_read           -> [persist] -> ``messages_read`` to the whole room

Delivery is live and at-most-once: connections that are not registered when
an event is fanned out never see it, and nothing is replayed.

Typing state is never stored. A client that disconnects while typing leaves
its peers showing "typing" until they receive a ``typing_stop`` or move on.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from pydantic import ValidationError

from ..config import get_config
from ..messages.service import MessageStore
from .conversation import conversation_room, resolve_conversation_id, user_room
from .events import (
    AuthenticateEvent,
    JoinConversationEvent,
    LeaveConversationEvent,
    MarkReadEvent,
    Message,
    OutboundEvent,
    SendMessageEvent,
    TypingStartEvent,
    TypingStopEvent,
    envelope,
    parse_inbound,
)
from .registry import Connection, ConnectionRegistry, SendFn

logger = logging.getLogger(__name__)

# Returns the persistence collaborator, or None when storage is disabled
StoreProvider = Callable[[], Optional[Any]]


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid event"
    first = errors[0]
    reason = first.get("msg", "invalid")
    location = ".".join(str(part) for part in first.get("loc", ()))
    if location:
        return f"Invalid event: {location}: {reason}"
    return f"Invalid event: {reason}"


class ChatRelay:
    """Fan-out engine over a connection registry.

    Args:
        registry: Connection/room state. A fresh one is created if omitted.
        store_provider: Callable returning the message store (or None). It is
            resolved on every persisted event so the store can be swapped
            or disabled at runtime.
    """

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        store_provider: Optional[StoreProvider] = None,
    ) -> None:
        self.registry = registry if registry is not None else ConnectionRegistry()
        self._store_provider = store_provider
        self._handlers = {
            AuthenticateEvent: self._on_authenticate,
            JoinConversationEvent: self._on_join,
            LeaveConversationEvent: self._on_leave,
            SendMessageEvent: self._on_send_message,
            TypingStartEvent: self._on_typing,
            TypingStopEvent: self._on_typing,
            MarkReadEvent: self._on_mark_read,
        }

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def connect(self, send: SendFn) -> Connection:
        """Register a transport connection and start its writer task.

        Must be called from the event loop that will own the connection.
        """
        connection = self.registry.on_connect(send)
        connection.start(on_failure=lambda conn: self.disconnect(conn.id))
        return connection

    def disconnect(self, connection_id: str) -> Optional[Connection]:
        """Drop a connection from the registry and every room (no-op if unknown)."""
        return self.registry.on_disconnect(connection_id)

    # =========================================================================
    # Inbound dispatch
    # =========================================================================

    async def handle(self, connection_id: str, frame: Any) -> None:
        """Validate one inbound frame and run the matching transition.

        Malformed frames are answered with ``message_error`` to the sender
        and otherwise ignored.
        """
        if self.registry.get(connection_id) is None:
            return

        try:
            event = parse_inbound(frame)
        except ValidationError as exc:
            error = _first_error(exc)
            logger.info("[Relay] Rejected frame from %s: %s", connection_id, error)
            self.emit(connection_id, OutboundEvent.MESSAGE_ERROR, {"error": error})
            return

        handler = self._handlers[type(event)]
        await handler(connection_id, event)

    async def _on_authenticate(self, connection_id: str, event: AuthenticateEvent) -> None:
        if self.registry.authenticate(connection_id, event.data.userId):
            self.emit(connection_id, OutboundEvent.AUTHENTICATED, {"success": True})
        else:
            self.emit(connection_id, OutboundEvent.MESSAGE_ERROR, {
                "error": "Connection is already authenticated as another user"
            })

    async def _on_join(self, connection_id: str, event: JoinConversationEvent) -> None:
        conversation_id = event.data
        self.registry.rooms.join(connection_id, conversation_room(conversation_id))
        logger.info("[Relay] %s joined conversation %s", connection_id, conversation_id)
        self.emit(connection_id, OutboundEvent.CONVERSATION_JOINED, {"conversationId": conversation_id})

    async def _on_leave(self, connection_id: str, event: LeaveConversationEvent) -> None:
        conversation_id = event.data
        self.registry.rooms.leave(connection_id, conversation_room(conversation_id))
        logger.info("[Relay] %s left conversation %s", connection_id, conversation_id)
        self.emit(connection_id, OutboundEvent.CONVERSATION_LEFT, {"conversationId": conversation_id})

    async def _on_send_message(self, connection_id: str, event: SendMessageEvent) -> None:
        payload = event.data
        try:
            message = Message(
                senderId=payload.senderId,
                receiverId=payload.receiverId,
                jobId=payload.jobId,
                content=payload.content,
                type=payload.type,
            )
        except Exception as e:
            logger.error(f"[Relay] Failed to build message from {connection_id}: {e}")
            self.emit(connection_id, OutboundEvent.MESSAGE_ERROR, {"error": "Failed to send message"})
            return

        await self._persist("save_message", message)
        self.publish_message(message, exclude=connection_id)
        self.emit(connection_id, OutboundEvent.MESSAGE_SENT, {"messageId": message.id})
        logger.info(
            f"[Relay] Message {message.id} {message.senderId} -> {message.receiverId}: "
            f"{message.content[:50]}"
        )

    async def _on_typing(self, connection_id: str, event) -> None:
        payload = event.data
        self.emit_to_room(
            conversation_room(payload.conversationId),
            OutboundEvent.USER_TYPING,
            {"userId": payload.userId, "isTyping": isinstance(event, TypingStartEvent)},
            exclude=connection_id,
        )

    async def _on_mark_read(self, connection_id: str, event: MarkReadEvent) -> None:
        await self.mark_read(event.data.userId, event.data.conversationId)

    # =========================================================================
    # Fan-out
    # =========================================================================

    def emit(self, connection_id: str, event: OutboundEvent, data: Any) -> bool:
        """Push an event to a single connection."""
        connection = self.registry.get(connection_id)
        if connection is None:
            return False
        return connection.deliver(envelope(event, data))

    def emit_to_room(
        self,
        room: str,
        event: OutboundEvent,
        data: Any,
        exclude: Optional[str] = None,
    ) -> int:
        """Push an event to every current member of ``room``.

        Args:
            room: Room key (``user_<id>`` or ``conversation_<id>``).
            event: Outbound event name.
            data: JSON-serializable payload.
            exclude: Connection id to skip (the originator).

        Returns:
            Number of connections the event was queued for.
        """
        members = [cid for cid in self.registry.rooms.members_of(room) if cid != exclude]
        return self._deliver_all(self.registry.resolve(members), envelope(event, data))

    def publish_message(self, message: Message, exclude: Optional[str] = None) -> str:
        """Fan a message out to its conversation room and the receiver's room.

        Returns:
            The conversation id used as room key.
        """
        conversation_id = resolve_conversation_id(message.senderId, message.receiverId)
        data = {"message": message.model_dump(mode="json"), "conversationId": conversation_id}
        self.emit_to_room(
            conversation_room(conversation_id), OutboundEvent.NEW_MESSAGE, data, exclude=exclude
        )
        self.emit_to_room(
            user_room(message.receiverId), OutboundEvent.MESSAGE_RECEIVED, data, exclude=exclude
        )
        return conversation_id

    async def mark_read(self, user_id: str, conversation_id: str) -> int:
        """Persist a read marker (if storage is on) and tell the whole room.

        A store failure is logged and the room is still notified.
        """
        await self._persist("mark_read", user_id, conversation_id)
        return self.announce_read(user_id, conversation_id)

    def announce_read(self, user_id: str, conversation_id: str) -> int:
        """Push ``messages_read`` to every member of the conversation room."""
        return self.emit_to_room(
            conversation_room(conversation_id),
            OutboundEvent.MESSAGES_READ,
            {"userId": user_id, "conversationId": conversation_id},
        )

    def send_system_message(self, user_id: str, text: str) -> int:
        """Push a ``system_message`` to every connection of a user."""
        return self.emit_to_room(user_room(user_id), OutboundEvent.SYSTEM_MESSAGE, {"message": text})

    def broadcast(self, event: OutboundEvent, data: Any) -> int:
        """Push an event to every registered connection."""
        return self._deliver_all(self.registry.all_connections(), envelope(event, data))

    def _deliver_all(self, connections: Iterable[Connection], frame: dict) -> int:
        return sum(1 for conn in connections if conn.deliver(frame))

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _persist(self, operation: str, *args) -> None:
        """Run a store write off the event loop. Failures never block fan-out."""
        store = self._store_provider() if self._store_provider is not None else None
        if store is None:
            return
        try:
            await asyncio.get_running_loop().run_in_executor(
                None, lambda: getattr(store, operation)(*args)
            )
        except Exception:
            logger.exception("[Relay] Store %s failed; delivering live event anyway", operation)


def _default_store() -> Optional[MessageStore]:
    config = get_config()
    if not config.storage.enabled:
        return None
    return MessageStore.get_instance(config.storage.db_path)


# Global singleton instance used by all WebSocket handlers
relay = ChatRelay(
    registry=ConnectionRegistry(queue_size=get_config().relay.outbound_queue_size),
    store_provider=_default_store,
)
