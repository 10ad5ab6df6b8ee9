"""DuckDB-backed message store.

Durable history for the chat relay: conversations, messages and the
per-receiver notifications created on every send. The live relay never
depends on it; when storage is enabled the relay (or the HTTP API) writes
here *before* fanning an event out, so a client reloading history sees what
was delivered live.

Database Schema:
    conversations: id (conv_<a>_<b>), participant_a, participant_b, job_id,
        created_at, updated_at
    messages: id, conversation_id, sender_id, receiver_id, job_id, content,
        type, status, created_at, read_at
    message_notifications: id, user_id, message_id, conversation_id, type,
        is_read, created_at

Thread Safety:
    A single DuckDB connection is shared by the process and every call
    takes ``_lock``. Callers on the event loop run store calls in an
    executor.

Usage:
    store = MessageStore.get_instance()
    conversation_id = store.save_message(message)
    history = store.get_messages(conversation_id)
"""
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from ..chat.conversation import resolve_conversation_id
from ..chat.events import Message, MessageStatus, MessageType
from .schemas import Conversation, MessageNotification

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id            VARCHAR PRIMARY KEY,
        participant_a VARCHAR NOT NULL,
        participant_b VARCHAR NOT NULL,
        job_id        VARCHAR,
        created_at    VARCHAR NOT NULL,
        updated_at    VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              VARCHAR PRIMARY KEY,
        conversation_id VARCHAR NOT NULL,
        sender_id       VARCHAR NOT NULL,
        receiver_id     VARCHAR NOT NULL,
        job_id          VARCHAR,
        content         VARCHAR NOT NULL,
        type            VARCHAR NOT NULL DEFAULT 'text',
        status          VARCHAR NOT NULL DEFAULT 'sent',
        created_at      VARCHAR NOT NULL,
        read_at         VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_notifications (
        id              VARCHAR PRIMARY KEY,
        user_id         VARCHAR NOT NULL,
        message_id      VARCHAR NOT NULL,
        conversation_id VARCHAR NOT NULL,
        type            VARCHAR NOT NULL,
        is_read         BOOLEAN NOT NULL DEFAULT FALSE,
        created_at      VARCHAR NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON message_notifications(user_id)",
)

_MESSAGE_COLUMNS = (
    "id, sender_id, receiver_id, job_id, content, type, status, created_at, read_at"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageStore:
    """Singleton service for conversation and message history in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "relay_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open (or create) the database and its schema.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
        """
        if db_path:
            self._db_path = db_path
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(self._db_path)
        for statement in _SCHEMA:
            self._connection.execute(statement)
        logger.info("[MessageStore] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def save_message(self, message: Message) -> str:
        """Persist a message, its conversation and the receiver's notification.

        Returns:
            The conversation id the message was filed under.
        """
        conversation_id = resolve_conversation_id(message.senderId, message.receiverId)
        first, second = sorted((message.senderId, message.receiverId))
        now = _now()
        with self._lock:
            conn = self._connection
            exists = conn.execute(
                "SELECT 1 FROM conversations WHERE id = ?", [conversation_id]
            ).fetchone()
            if exists:
                conn.execute(
                    "UPDATE conversations SET updated_at = ? WHERE id = ?",
                    [now, conversation_id],
                )
            else:
                conn.execute(
                    """
                    INSERT INTO conversations
                      (id, participant_a, participant_b, job_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [conversation_id, first, second, message.jobId, now, now],
                )
            conn.execute(
                f"""
                INSERT INTO messages ({_MESSAGE_COLUMNS}, conversation_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    message.id, message.senderId, message.receiverId, message.jobId,
                    message.content, message.type.value, message.status.value,
                    message.createdAt, message.readAt, conversation_id,
                ],
            )
            conn.execute(
                """
                INSERT INTO message_notifications
                  (id, user_id, message_id, conversation_id, type, is_read, created_at)
                VALUES (?, ?, ?, ?, 'new_message', FALSE, ?)
                """,
                [f"notif_{uuid.uuid4().hex}", message.receiverId, message.id, conversation_id, now],
            )
        logger.debug("[MessageStore] Saved %s in %s", message.id, conversation_id)
        return conversation_id

    def mark_read(self, user_id: str, conversation_id: str) -> int:
        """Mark every message ``user_id`` received in a conversation as read.

        Also marks the user's notifications for that conversation as read.

        Returns:
            Number of messages whose status changed.
        """
        now = _now()
        with self._lock:
            conn = self._connection
            updated = conn.execute(
                """
                UPDATE messages SET status = 'read', read_at = ?
                WHERE conversation_id = ? AND receiver_id = ? AND status <> 'read'
                RETURNING id
                """,
                [now, conversation_id, user_id],
            ).fetchall()
            conn.execute(
                """
                UPDATE message_notifications SET is_read = TRUE
                WHERE user_id = ? AND conversation_id = ?
                """,
                [user_id, conversation_id],
            )
        logger.info(
            "[MessageStore] %s read %d messages in %s", user_id, len(updated), conversation_id
        )
        return len(updated)

    def delete_message(self, message_id: str, user_id: str) -> bool:
        """Delete a message. Only its sender may delete it.

        Returns:
            True if a message was deleted.
        """
        with self._lock:
            deleted = self._connection.execute(
                "DELETE FROM messages WHERE id = ? AND sender_id = ? RETURNING id",
                [message_id, user_id],
            ).fetchone()
        if deleted:
            logger.info("[MessageStore] Deleted %s", message_id)
        return deleted is not None

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get_messages(self, conversation_id: str) -> List[Message]:
        """Messages of a conversation, oldest first ([] for unknown ids)."""
        with self._lock:
            rows = self._connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                [conversation_id],
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def get_conversations(self, user_id: str) -> List[Conversation]:
        """Conversations the user takes part in, most recently active first."""
        with self._lock:
            rows = self._connection.execute(
                """
                SELECT id, participant_a, participant_b, job_id, created_at, updated_at
                FROM conversations
                WHERE participant_a = ? OR participant_b = ?
                ORDER BY updated_at DESC
                """,
                [user_id, user_id],
            ).fetchall()
            conversations = []
            for row in rows:
                last = self._connection.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS} FROM messages
                    WHERE conversation_id = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT 1
                    """,
                    [row[0]],
                ).fetchone()
                unread = self._connection.execute(
                    """
                    SELECT COUNT(*) FROM messages
                    WHERE conversation_id = ? AND receiver_id = ? AND status <> 'read'
                    """,
                    [row[0], user_id],
                ).fetchone()[0]
                conversations.append(Conversation(
                    id=row[0],
                    participants=[row[1], row[2]],
                    jobId=row[3],
                    lastMessage=self._row_to_message(last) if last else None,
                    unreadCount=unread,
                    createdAt=row[4],
                    updatedAt=row[5],
                ))
        return conversations

    def get_unread_count(self, user_id: str) -> int:
        with self._lock:
            return self._connection.execute(
                "SELECT COUNT(*) FROM messages WHERE receiver_id = ? AND status <> 'read'",
                [user_id],
            ).fetchone()[0]

    def get_notifications(self, user_id: str) -> List[MessageNotification]:
        """Unread message notifications for a user, newest first."""
        with self._lock:
            rows = self._connection.execute(
                """
                SELECT id, user_id, message_id, conversation_id, type, is_read, created_at
                FROM message_notifications
                WHERE user_id = ? AND NOT is_read
                ORDER BY created_at DESC
                """,
                [user_id],
            ).fetchall()
        return [
            MessageNotification(
                id=r[0], userId=r[1], messageId=r[2], conversationId=r[3],
                type=r[4], isRead=r[5], createdAt=r[6],
            )
            for r in rows
        ]

    def search_conversations(self, user_id: str, query: str) -> List[Conversation]:
        """Conversations of a user with a message containing ``query``."""
        conversations = self.get_conversations(user_id)
        if not query:
            return conversations

        with self._lock:
            rows = self._connection.execute(
                """
                SELECT DISTINCT conversation_id FROM messages
                WHERE strpos(lower(content), lower(?)) > 0
                """,
                [query],
            ).fetchall()
        matching = {r[0] for r in rows}
        return [c for c in conversations if c.id in matching]

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    @staticmethod
    def _row_to_message(row) -> Message:
        return Message(
            id=row[0],
            senderId=row[1],
            receiverId=row[2],
            jobId=row[3],
            content=row[4],
            type=MessageType(row[5]),
            status=MessageStatus(row[6]),
            createdAt=row[7],
            readAt=row[8],
        )
