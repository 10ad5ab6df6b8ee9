"""Conversation identity and room-key helpers.

Both sides of a two-party chat must compute the same room key without a
conversation table, so the identifier is derived from the sorted pair of
participant ids.
"""

CONVERSATION_PREFIX = "conv_"
USER_ROOM_PREFIX = "user_"
CONVERSATION_ROOM_PREFIX = "conversation_"


def resolve_conversation_id(participant_a: str, participant_b: str) -> str:
    """Return the order-independent conversation id for two participants.

    Example:
        >>> resolve_conversation_id("bob", "alice")
        'conv_alice_bob'
    """
    first, second = sorted((participant_a, participant_b))
    return f"{CONVERSATION_PREFIX}{first}_{second}"


def user_room(user_id: str) -> str:
    """Personal notification room for a user."""
    return f"{USER_ROOM_PREFIX}{user_id}"


def conversation_room(conversation_id: str) -> str:
    """Chat room for a conversation."""
    return f"{CONVERSATION_ROOM_PREFIX}{conversation_id}"
