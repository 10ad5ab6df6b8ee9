"""Pydantic schemas for the message history API."""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from ..chat.events import Message, MessageType


class Conversation(BaseModel):
    """A two-party conversation as listed for one of its participants."""
    id: str
    participants: List[str]
    jobId: Optional[str] = None
    lastMessage: Optional[Message] = None
    unreadCount: int = 0
    createdAt: str
    updatedAt: str


class MessageNotification(BaseModel):
    id: str
    userId: str
    messageId: str
    conversationId: str
    type: Literal["new_message", "message_read", "system"] = "new_message"
    isRead: bool = False
    createdAt: str


class SendMessageRequest(BaseModel):
    """Request body for POST /messages."""
    senderId: str = Field(default="")
    receiverId: str = Field(default="")
    jobId: Optional[str] = None
    content: str = Field(default="")
    type: MessageType = MessageType.TEXT


class MarkReadRequest(BaseModel):
    """Request body for POST /messages/read."""
    userId: str = Field(default="")
    conversationId: str = Field(default="")
