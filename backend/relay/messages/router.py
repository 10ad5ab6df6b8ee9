"""Message history router: conversations, messages, read markers.

Writes go to the store first and are then fanned out through the live
relay, so connected clients see exactly what a history reload returns.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from ..chat.events import Message
from ..chat.relay import relay
from ..config import get_config
from .schemas import MarkReadRequest, SendMessageRequest
from .service import MessageStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


def _service() -> Optional[MessageStore]:
    config = get_config()
    if not config.storage.enabled:
        return None
    return MessageStore.get_instance(config.storage.db_path)


def _storage_disabled() -> JSONResponse:
    return JSONResponse({"error": "Message storage is disabled"}, status_code=503)


@router.get("")
async def get_messages(
    userId: Optional[str] = Query(None, description="User whose inbox to read"),
    conversationId: Optional[str] = Query(None, description="Return this conversation's messages"),
    query: Optional[str] = Query(None, description="Search the user's conversations"),
) -> JSONResponse:
    """List conversations, search them, or read one conversation.

    Args:
        userId: Required. The user making the request.
        conversationId: If given, return the messages of that conversation.
        query: If given, return the user's conversations matching the text.

    Returns:
        ``{success, messages}``, ``{success, conversations}`` or
        ``{success, conversations, unreadCount}``.

    Example:
        GET /messages?userId=alice
        GET /messages?userId=alice&conversationId=conv_alice_bob
    """
    if not userId:
        return JSONResponse({"error": "User ID is required"}, status_code=400)
    store = _service()
    if store is None:
        return _storage_disabled()

    try:
        if conversationId:
            messages = store.get_messages(conversationId)
            return JSONResponse({
                "success": True,
                "messages": [m.model_dump(mode="json") for m in messages],
            })

        if query:
            conversations = store.search_conversations(userId, query)
            return JSONResponse({
                "success": True,
                "conversations": [c.model_dump(mode="json") for c in conversations],
            })

        conversations = store.get_conversations(userId)
        return JSONResponse({
            "success": True,
            "conversations": [c.model_dump(mode="json") for c in conversations],
            "unreadCount": store.get_unread_count(userId),
        })
    except Exception as e:
        logger.error(f"[messages] Failed to fetch messages for {userId}: {e}")
        return JSONResponse({"error": "Failed to fetch messages"}, status_code=500)


@router.post("")
async def send_message(body: SendMessageRequest) -> JSONResponse:
    """Store a message and deliver it to connected participants.

    Returns:
        ``{success, message}`` with the stored message.
    """
    if not body.senderId or not body.receiverId or not body.content:
        return JSONResponse(
            {"error": "Sender ID, receiver ID, and content are required"},
            status_code=400,
        )
    store = _service()
    if store is None:
        return _storage_disabled()

    message = Message(
        senderId=body.senderId,
        receiverId=body.receiverId,
        jobId=body.jobId,
        content=body.content,
        type=body.type,
    )
    try:
        store.save_message(message)
    except Exception as e:
        logger.error(f"[messages] Failed to send message: {e}")
        return JSONResponse({"error": "Failed to send message"}, status_code=500)

    conversation_id = relay.publish_message(message)
    logger.info("[messages] Stored and published %s in %s", message.id, conversation_id)
    return JSONResponse({"success": True, "message": message.model_dump(mode="json")})


@router.post("/read")
async def mark_read(body: MarkReadRequest) -> JSONResponse:
    """Mark a conversation read for a user and notify the conversation room."""
    if not body.userId or not body.conversationId:
        return JSONResponse(
            {"error": "User ID and conversation ID are required"},
            status_code=400,
        )
    store = _service()
    if store is None:
        return _storage_disabled()

    try:
        store.mark_read(body.userId, body.conversationId)
    except Exception as e:
        logger.error(f"[messages] Failed to mark {body.conversationId} read for {body.userId}: {e}")
        return JSONResponse({"error": "Failed to mark messages as read"}, status_code=500)

    relay.announce_read(body.userId, body.conversationId)
    return JSONResponse({"success": True, "message": "Messages marked as read"})


@router.get("/notifications")
async def get_notifications(
    userId: Optional[str] = Query(None, description="User whose notifications to list"),
) -> JSONResponse:
    """List a user's unread message notifications."""
    if not userId:
        return JSONResponse({"error": "User ID is required"}, status_code=400)
    store = _service()
    if store is None:
        return _storage_disabled()

    try:
        notifications = store.get_notifications(userId)
    except Exception as e:
        logger.error(f"[messages] Failed to fetch notifications for {userId}: {e}")
        return JSONResponse({"error": "Failed to fetch notifications"}, status_code=500)
    return JSONResponse({
        "success": True,
        "notifications": [n.model_dump(mode="json") for n in notifications],
    })


@router.delete("/{message_id}")
async def delete_message(
    message_id: str,
    userId: str = Query(..., description="Only the sender may delete"),
) -> JSONResponse:
    """Delete a message sent by ``userId``.

    Returns:
        ``{success: true}``, or 404 if no such message was sent by the user.
    """
    store = _service()
    if store is None:
        return _storage_disabled()

    try:
        deleted = store.delete_message(message_id, userId)
    except Exception as e:
        logger.error(f"[messages] Failed to delete {message_id}: {e}")
        return JSONResponse({"error": "Failed to delete message"}, status_code=500)

    if not deleted:
        return JSONResponse({"error": "Message not found"}, status_code=404)
    return JSONResponse({"success": True})
