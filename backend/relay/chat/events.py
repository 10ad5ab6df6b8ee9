"""Wire models for the chat relay.

Every WebSocket frame is an envelope ``{"event": <name>, "data": <payload>}``.
Inbound frames are parsed into one of the ``*Event`` models below through a
pydantic discriminated union keyed on ``event``; anything that does not
match raises ``pydantic.ValidationError``.

Client -> Server events:
    - authenticate: {userId}
    - join_conversation / leave_conversation: "<conversationId>"
    - send_message: {senderId, receiverId, jobId?, content, type?}
    - typing_start / typing_stop: {conversationId, userId}
    - mark_read: {conversationId, userId}

Server -> Client events are listed in ``OutboundEvent``.
"""
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

# =============================================================================
# Message model
# =============================================================================


class MessageType(str, Enum):
    """Kind of content carried by a message."""
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    """Delivery state of a message.

    ``delivered`` is part of the vocabulary but the relay never sets it;
    messages go from ``sent`` straight to ``read``.
    """
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


_id_lock = threading.Lock()
_last_id_ms = 0


def new_message_id() -> str:
    """Return ``msg_<milliseconds>``, strictly increasing within the process.

    Two sends in the same millisecond get consecutive numbers instead of the
    same id.
    """
    global _last_id_ms
    with _id_lock:
        now_ms = int(time.time() * 1000)
        _last_id_ms = max(now_ms, _last_id_ms + 1)
        return f"msg_{_last_id_ms}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Message(BaseModel):
    """A chat message as fanned out to clients and stored in history."""
    id: str = Field(default_factory=new_message_id, description="msg_<milliseconds>")
    senderId: str = Field(..., description="User ID of the sender")
    receiverId: str = Field(..., description="User ID of the receiver")
    jobId: Optional[str] = Field(default=None, description="Job the conversation is about")
    content: str = Field(..., description="Message content")
    type: MessageType = Field(default=MessageType.TEXT)
    status: MessageStatus = Field(default=MessageStatus.SENT)
    createdAt: str = Field(default_factory=utc_now_iso, description="ISO-8601 UTC")
    readAt: Optional[str] = Field(default=None)


# =============================================================================
# Inbound payloads
# =============================================================================

NonEmptyStr = Annotated[str, Field(min_length=1)]


class AuthenticatePayload(BaseModel):
    userId: NonEmptyStr


class SendMessagePayload(BaseModel):
    """Client-supplied fields of a new message. The relay adds id/status/ts."""
    senderId: NonEmptyStr
    receiverId: NonEmptyStr
    jobId: Optional[str] = None
    content: NonEmptyStr
    type: MessageType = MessageType.TEXT


class ConversationUserPayload(BaseModel):
    """Payload shared by typing and read events."""
    conversationId: NonEmptyStr
    userId: NonEmptyStr


# =============================================================================
# Inbound events (discriminated on ``event``)
# =============================================================================


class AuthenticateEvent(BaseModel):
    event: Literal["authenticate"]
    data: AuthenticatePayload


class JoinConversationEvent(BaseModel):
    event: Literal["join_conversation"]
    data: NonEmptyStr


class LeaveConversationEvent(BaseModel):
    event: Literal["leave_conversation"]
    data: NonEmptyStr


class SendMessageEvent(BaseModel):
    event: Literal["send_message"]
    data: SendMessagePayload


class TypingStartEvent(BaseModel):
    event: Literal["typing_start"]
    data: ConversationUserPayload


class TypingStopEvent(BaseModel):
    event: Literal["typing_stop"]
    data: ConversationUserPayload


class MarkReadEvent(BaseModel):
    event: Literal["mark_read"]
    data: ConversationUserPayload


InboundEvent = Annotated[
    Union[
        AuthenticateEvent,
        JoinConversationEvent,
        LeaveConversationEvent,
        SendMessageEvent,
        TypingStartEvent,
        TypingStopEvent,
        MarkReadEvent,
    ],
    Field(discriminator="event"),
]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundEvent)


def parse_inbound(frame: Any):
    """Validate a decoded JSON frame into an inbound event model.

    Raises:
        pydantic.ValidationError: unknown event name or malformed payload.
    """
    return _inbound_adapter.validate_python(frame)


# =============================================================================
# Outbound events
# =============================================================================


class OutboundEvent(str, Enum):
    AUTHENTICATED = "authenticated"
    CONVERSATION_JOINED = "conversation_joined"
    CONVERSATION_LEFT = "conversation_left"
    NEW_MESSAGE = "new_message"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    MESSAGE_ERROR = "message_error"
    USER_TYPING = "user_typing"
    MESSAGES_READ = "messages_read"
    SYSTEM_MESSAGE = "system_message"


def envelope(event: OutboundEvent, data: Any) -> dict:
    """Build the JSON-ready frame for an outbound event."""
    return {"event": event.value, "data": data}
