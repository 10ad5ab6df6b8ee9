"""Chat router: the relay WebSocket and its presence endpoints.

This module provides:
    - WebSocket /ws/chat: real-time relay connection
    - GET /relay/status: relay liveness and connection count
    - GET /relay/users/online: users with at least one authenticated connection
    - GET /relay/users/{user_id}/online: presence of a single user
    - POST /relay/users/{user_id}/system-message: push a system notice to a user
    - POST /relay/broadcast: push a system notice to every connection

Protocol (every frame is ``{"event": ..., "data": ...}``):
    1. Client connects -> server registers the connection (no user yet)
    2. Client sends authenticate {userId}
       -> server replies authenticated {success: true}
    3. Client sends join_conversation "<conversationId>"
       -> server replies conversation_joined {conversationId}
    4. Client sends send_message {senderId, receiverId, jobId?, content, type?}
       -> room gets new_message, receiver gets message_received,
          sender gets message_sent {messageId}
    5. typing_start / typing_stop / mark_read fan out to the conversation room
    6. On disconnect the connection leaves every room
"""
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .events import OutboundEvent
from .relay import relay

logger = logging.getLogger(__name__)

router = APIRouter()


class SystemMessageRequest(BaseModel):
    """Request body for pushing a system notice."""
    message: str = Field(..., min_length=1, description="Notice text")


@router.get("/relay/status")
async def relay_status() -> JSONResponse:
    """Report that the relay endpoint is up.

    Returns:
        JSON with a status message and the number of live connections.
    """
    return JSONResponse({
        "message": "WebSocket endpoint is active",
        "status": "connected",
        "connections": len(relay.registry),
    })


@router.get("/relay/users/online")
async def online_users() -> JSONResponse:
    """List the ids of users with at least one authenticated connection."""
    return JSONResponse({"users": relay.registry.online_users()})


@router.get("/relay/users/{user_id}/online")
async def user_online(user_id: str) -> JSONResponse:
    """Check whether a user currently has a live connection."""
    return JSONResponse({"userId": user_id, "online": relay.registry.is_user_online(user_id)})


@router.post("/relay/users/{user_id}/system-message")
async def post_system_message(user_id: str, body: SystemMessageRequest) -> JSONResponse:
    """Push a ``system_message`` to every live connection of a user.

    Returns:
        JSON with the number of connections the notice was queued for.
    """
    delivered = relay.send_system_message(user_id, body.message)
    logger.info(f"[Relay] System message to {user_id} queued for {delivered} connections")
    return JSONResponse({"delivered": delivered})


@router.post("/relay/broadcast")
async def post_broadcast(body: SystemMessageRequest) -> JSONResponse:
    """Push a ``system_message`` to every live connection, authenticated or not.

    Returns:
        JSON with the number of connections the notice was queued for.
    """
    delivered = relay.broadcast(OutboundEvent.SYSTEM_MESSAGE, {"message": body.message})
    logger.info(f"[Relay] Broadcast queued for {delivered} connections")
    return JSONResponse({"delivered": delivered})


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for the real-time relay.

    Handles one client for its whole lifetime. Frames are processed one at
    a time, in arrival order; outbound events are written by the
    connection's own writer task.

    Args:
        websocket: The WebSocket connection.
    """
    await websocket.accept()
    connection = relay.connect(websocket.send_json)
    logger.info(
        f"[WS] Connection {connection.id} accepted. "
        f"{len(relay.registry)} live connections"
    )

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            text = message.get("text")
            if text is None:
                relay.emit(connection.id, OutboundEvent.MESSAGE_ERROR, {
                    "error": "Invalid event: frame must be JSON text"
                })
                continue
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                relay.emit(connection.id, OutboundEvent.MESSAGE_ERROR, {
                    "error": "Invalid event: frame is not valid JSON"
                })
                continue
            logger.debug("[WS] %s received: event=%s", connection.id,
                         data.get("event", "?") if isinstance(data, dict) else "?")
            await relay.handle(connection.id, data)
    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {connection.id} disconnected")
    finally:
        relay.disconnect(connection.id)
        await connection.close()
