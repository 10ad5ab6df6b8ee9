"""Tests for conversation identity and room keys."""
import pytest

from relay.chat.conversation import (
    conversation_room,
    resolve_conversation_id,
    user_room,
)


@pytest.mark.parametrize("a,b", [
    ("alice", "bob"),
    ("bob", "alice"),
    ("hirer1", "user1"),
    ("User", "user"),
    ("10", "9"),
    ("same", "same"),
])
def test_resolve_is_order_independent(a, b):
    """Both participants compute the same conversation id."""
    assert resolve_conversation_id(a, b) == resolve_conversation_id(b, a)


def test_resolve_sorts_and_prefixes():
    assert resolve_conversation_id("bob", "alice") == "conv_alice_bob"


def test_resolve_uses_plain_string_ordering():
    """Numeric-looking ids sort as strings, not numbers."""
    assert resolve_conversation_id("9", "10") == "conv_10_9"
    # Uppercase sorts before lowercase
    assert resolve_conversation_id("bob", "Zed") == "conv_Zed_bob"


def test_resolve_same_participant_twice():
    assert resolve_conversation_id("alice", "alice") == "conv_alice_alice"


def test_room_keys():
    assert user_room("bob") == "user_bob"
    assert conversation_room("conv_alice_bob") == "conversation_conv_alice_bob"
