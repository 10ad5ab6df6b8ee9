"""Tests for the ChatRelay fan-out engine, driven through in-memory sinks."""
import asyncio
import re
import threading

import pytest

from relay.chat.events import OutboundEvent
from relay.chat.registry import ConnectionRegistry
from relay.chat.relay import ChatRelay


class Sink:
    """Stands in for WebSocket.send_json and records every frame."""

    def __init__(self):
        self.frames = []

    async def __call__(self, frame):
        self.frames.append(frame)

    def names(self):
        return [f["event"] for f in self.frames]

    def of(self, event):
        return [f["data"] for f in self.frames if f["event"] == event]


class RecordingStore:
    def __init__(self):
        self.saved = []
        self.read = []

    def save_message(self, message):
        self.saved.append(message)
        return "conv"

    def mark_read(self, user_id, conversation_id):
        self.read.append((user_id, conversation_id))
        return 0


class BrokenStore:
    def save_message(self, message):
        raise RuntimeError("disk full")

    def mark_read(self, user_id, conversation_id):
        raise RuntimeError("disk full")


async def settle(*connections):
    for conn in connections:
        await asyncio.wait_for(conn.flush(), timeout=2)


async def shutdown(relay):
    for conn in relay.registry.all_connections():
        relay.disconnect(conn.id)
        await conn.close()


async def open_as(relay, user_id=None):
    sink = Sink()
    conn = relay.connect(sink)
    if user_id is not None:
        await relay.handle(conn.id, {"event": "authenticate", "data": {"userId": user_id}})
    return conn, sink


async def join(relay, conn, conversation_id):
    await relay.handle(conn.id, {"event": "join_conversation", "data": conversation_id})


def send_frame(sender, receiver, content="hi", **extra):
    data = {"senderId": sender, "receiverId": receiver, "content": content}
    data.update(extra)
    return {"event": "send_message", "data": data}


# =============================================================================
# Authentication and rooms
# =============================================================================


@pytest.mark.asyncio
async def test_authenticate_acks_and_joins_personal_room():
    relay = ChatRelay()
    conn, sink = await open_as(relay, "alice")
    await settle(conn)

    assert sink.frames == [{"event": "authenticated", "data": {"success": True}}]
    assert conn.id in relay.registry.rooms.members_of("user_alice")
    await shutdown(relay)


@pytest.mark.asyncio
async def test_reauthenticate_as_other_user_is_an_error():
    relay = ChatRelay()
    conn, sink = await open_as(relay, "alice")
    await relay.handle(conn.id, {"event": "authenticate", "data": {"userId": "bob"}})
    await settle(conn)

    assert sink.names() == ["authenticated", "message_error"]
    assert conn.user_id == "alice"
    await shutdown(relay)


@pytest.mark.asyncio
async def test_join_and_leave_conversation():
    relay = ChatRelay()
    conn, sink = await open_as(relay)
    await join(relay, conn, "conv_alice_bob")
    assert conn.id in relay.registry.rooms.members_of("conversation_conv_alice_bob")

    await relay.handle(conn.id, {"event": "leave_conversation", "data": "conv_alice_bob"})
    await settle(conn)

    assert not relay.registry.rooms.room_exists("conversation_conv_alice_bob")
    assert sink.of("conversation_joined") == [{"conversationId": "conv_alice_bob"}]
    assert sink.of("conversation_left") == [{"conversationId": "conv_alice_bob"}]
    await shutdown(relay)


@pytest.mark.asyncio
async def test_leave_unjoined_conversation_is_harmless():
    relay = ChatRelay()
    conn, sink = await open_as(relay)
    await relay.handle(conn.id, {"event": "leave_conversation", "data": "conv_x_y"})
    await settle(conn)
    assert sink.names() == ["conversation_left"]
    await shutdown(relay)


# =============================================================================
# send_message
# =============================================================================


@pytest.mark.asyncio
async def test_send_message_two_party_scenario():
    """Alice and Bob share the conversation room; Alice says hi."""
    relay = ChatRelay()
    c1, alice = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")
    await join(relay, c1, "conv_alice_bob")
    await join(relay, c2, "conv_alice_bob")

    await relay.handle(c1.id, send_frame("alice", "bob", "hi"))
    await settle(c1, c2)

    new_messages = bob.of("new_message")
    assert len(new_messages) == 1
    assert new_messages[0]["message"]["content"] == "hi"
    assert new_messages[0]["conversationId"] == "conv_alice_bob"
    assert new_messages[0]["message"]["status"] == "sent"
    assert new_messages[0]["message"]["type"] == "text"

    received = bob.of("message_received")
    assert len(received) == 1
    assert received[0]["message"] == new_messages[0]["message"]

    acks = alice.of("message_sent")
    assert len(acks) == 1
    assert re.fullmatch(r"msg_\d+", acks[0]["messageId"])
    assert acks[0]["messageId"] == new_messages[0]["message"]["id"]
    assert alice.of("new_message") == []
    assert alice.of("message_received") == []
    await shutdown(relay)


@pytest.mark.asyncio
async def test_receiver_not_in_conversation_room_still_notified():
    relay = ChatRelay()
    c1, alice = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")

    await relay.handle(c1.id, send_frame("alice", "bob", "quote ready", jobId="job-7"))
    await settle(c1, c2)

    assert bob.of("new_message") == []
    received = bob.of("message_received")
    assert len(received) == 1
    assert received[0]["message"]["jobId"] == "job-7"
    assert received[0]["conversationId"] == "conv_alice_bob"
    await shutdown(relay)


@pytest.mark.asyncio
async def test_sender_other_devices_see_new_message():
    relay = ChatRelay()
    phone, phone_sink = await open_as(relay, "alice")
    laptop, laptop_sink = await open_as(relay, "alice")
    await join(relay, phone, "conv_alice_bob")
    await join(relay, laptop, "conv_alice_bob")

    await relay.handle(phone.id, send_frame("alice", "bob"))
    await settle(phone, laptop)

    assert len(laptop_sink.of("new_message")) == 1
    assert phone_sink.of("new_message") == []
    assert len(phone_sink.of("message_sent")) == 1
    await shutdown(relay)


@pytest.mark.asyncio
async def test_every_receiver_device_gets_one_copy():
    relay = ChatRelay()
    c1, _ = await open_as(relay, "alice")
    b1, bob1 = await open_as(relay, "bob")
    b2, bob2 = await open_as(relay, "bob")

    await relay.handle(c1.id, send_frame("alice", "bob"))
    await settle(c1, b1, b2)

    assert len(bob1.of("message_received")) == 1
    assert len(bob2.of("message_received")) == 1
    await shutdown(relay)


@pytest.mark.asyncio
async def test_message_type_is_carried():
    relay = ChatRelay()
    c1, _ = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")

    await relay.handle(c1.id, send_frame("alice", "bob", "site.jpg", type="image"))
    await settle(c1, c2)

    assert bob.of("message_received")[0]["message"]["type"] == "image"
    await shutdown(relay)


@pytest.mark.asyncio
async def test_per_connection_order_and_unique_ids():
    relay = ChatRelay()
    c1, alice = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")
    await join(relay, c2, "conv_alice_bob")

    for i in range(5):
        await relay.handle(c1.id, send_frame("alice", "bob", f"m{i}"))
    await settle(c1, c2)

    contents = [d["message"]["content"] for d in bob.of("new_message")]
    assert contents == ["m0", "m1", "m2", "m3", "m4"]
    ids = [d["messageId"] for d in alice.of("message_sent")]
    assert len(set(ids)) == 5
    numbers = [int(i.split("_")[1]) for i in ids]
    assert numbers == sorted(numbers)
    await shutdown(relay)


@pytest.mark.parametrize("frame", [
    {"event": "send_message", "data": {"senderId": "alice", "receiverId": "bob"}},
    {"event": "send_message", "data": {"senderId": "alice", "receiverId": "bob", "content": ""}},
    {"event": "send_message", "data": {"senderId": "", "receiverId": "bob", "content": "x"}},
    {"event": "send_message", "data": {"senderId": "a", "receiverId": "b", "content": "x", "type": "video"}},
    {"event": "send_message"},
    {"event": "shout", "data": {}},
    {"data": {"content": "no event"}},
    "not an object",
    {"event": "join_conversation", "data": ""},
    {"event": "typing_start", "data": {"conversationId": "c"}},
])
@pytest.mark.asyncio
async def test_malformed_frames_answered_with_message_error(frame):
    relay = ChatRelay()
    c1, alice = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")
    await join(relay, c2, "conv_alice_bob")
    await join(relay, c1, "conv_alice_bob")

    await relay.handle(c1.id, frame)
    await settle(c1, c2)

    errors = alice.of("message_error")
    assert len(errors) == 1
    assert errors[0]["error"].startswith("Invalid event")
    assert bob.names() == ["authenticated", "conversation_joined"]
    await shutdown(relay)


# =============================================================================
# typing / mark_read
# =============================================================================


@pytest.mark.asyncio
async def test_typing_excludes_sender_and_non_members():
    relay = ChatRelay()
    c1, s1 = await open_as(relay, "alice")
    c2, s2 = await open_as(relay, "bob")
    c3, s3 = await open_as(relay, "carol")
    await join(relay, c1, "R")
    await join(relay, c2, "R")

    await relay.handle(c1.id, {
        "event": "typing_start", "data": {"conversationId": "R", "userId": "alice"}
    })
    await settle(c1, c2, c3)

    assert s2.of("user_typing") == [{"userId": "alice", "isTyping": True}]
    assert s1.of("user_typing") == []
    assert s3.of("user_typing") == []
    await shutdown(relay)


@pytest.mark.asyncio
async def test_typing_stop():
    relay = ChatRelay()
    c1, _ = await open_as(relay, "alice")
    c2, s2 = await open_as(relay, "bob")
    await join(relay, c1, "R")
    await join(relay, c2, "R")

    for event in ("typing_start", "typing_stop"):
        await relay.handle(c1.id, {"event": event, "data": {"conversationId": "R", "userId": "alice"}})
    await settle(c1, c2)

    assert [d["isTyping"] for d in s2.of("user_typing")] == [True, False]
    await shutdown(relay)


@pytest.mark.asyncio
async def test_mark_read_reaches_whole_room_including_reader():
    relay = ChatRelay()
    c1, s1 = await open_as(relay, "alice")
    c2, s2 = await open_as(relay, "bob")
    c3, s3 = await open_as(relay, "carol")
    await join(relay, c1, "conv_alice_bob")
    await join(relay, c2, "conv_alice_bob")

    await relay.handle(c1.id, {
        "event": "mark_read", "data": {"conversationId": "conv_alice_bob", "userId": "alice"}
    })
    await settle(c1, c2, c3)

    expected = [{"userId": "alice", "conversationId": "conv_alice_bob"}]
    assert s1.of("messages_read") == expected
    assert s2.of("messages_read") == expected
    assert s3.of("messages_read") == []
    await shutdown(relay)


# =============================================================================
# Disconnect and delivery failures
# =============================================================================


@pytest.mark.asyncio
async def test_disconnected_connection_gets_nothing_more():
    relay = ChatRelay()
    c1, _ = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")
    await join(relay, c2, "conv_alice_bob")
    await settle(c2)
    before = list(bob.frames)

    relay.disconnect(c2.id)
    await relay.handle(c1.id, send_frame("alice", "bob"))
    await relay.handle(c2.id, {"event": "authenticate", "data": {"userId": "bob"}})
    await settle(c1, c2)

    assert relay.registry.rooms.rooms_of(c2.id) == frozenset()
    assert bob.frames == before
    await shutdown(relay)


@pytest.mark.asyncio
async def test_failed_write_drops_only_that_connection():
    relay = ChatRelay()

    async def broken(frame):
        raise ConnectionResetError("peer gone")

    dead = relay.connect(broken)
    await join(relay, dead, "R")
    c2, healthy = await open_as(relay, "bob")
    await join(relay, c2, "R")
    await settle(dead, c2)

    assert relay.registry.get(dead.id) is None
    assert relay.registry.rooms.members_of("R") == {c2.id}

    await relay.handle(c2.id, {"event": "mark_read", "data": {"conversationId": "R", "userId": "bob"}})
    await settle(c2)
    assert len(healthy.of("messages_read")) == 1
    await shutdown(relay)


@pytest.mark.asyncio
async def test_fan_out_from_another_thread_keeps_order():
    relay = ChatRelay()
    c1, sink = await open_as(relay, "bob")
    await join(relay, c1, "R")
    await settle(c1)

    def push_all():
        for i in range(50):
            relay.emit_to_room("conversation_R", OutboundEvent.SYSTEM_MESSAGE, {"message": str(i)})

    worker = threading.Thread(target=push_all)
    worker.start()
    await asyncio.get_running_loop().run_in_executor(None, worker.join)
    await settle(c1)

    assert [d["message"] for d in sink.of("system_message")] == [str(i) for i in range(50)]
    await shutdown(relay)


@pytest.mark.asyncio
async def test_slow_member_does_not_delay_others():
    relay = ChatRelay()
    release = asyncio.Event()
    slow_frames = []

    async def slow(frame):
        await release.wait()
        slow_frames.append(frame)

    c_slow = relay.connect(slow)
    c1, _ = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")
    await relay.handle(c_slow.id, {"event": "authenticate", "data": {"userId": "bob"}})

    await relay.handle(c1.id, send_frame("alice", "bob"))
    await settle(c1, c2)

    assert len(bob.of("message_received")) == 1
    assert slow_frames == []

    release.set()
    await settle(c_slow)
    assert [f["event"] for f in slow_frames] == ["authenticated", "message_received"]
    await shutdown(relay)


@pytest.mark.asyncio
async def test_full_outbox_drops_event_for_that_connection():
    relay = ChatRelay(registry=ConnectionRegistry(queue_size=1))
    release = asyncio.Event()

    async def stuck(frame):
        await release.wait()

    conn = relay.connect(stuck)
    assert conn.deliver({"event": "system_message", "data": {"message": "1"}}) is True
    assert conn.deliver({"event": "system_message", "data": {"message": "2"}}) is False

    release.set()
    await settle(conn)
    await shutdown(relay)


# =============================================================================
# Persistence collaborator
# =============================================================================


@pytest.mark.asyncio
async def test_store_written_before_fan_out():
    store = RecordingStore()
    relay = ChatRelay(store_provider=lambda: store)
    c1, _ = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")

    await relay.handle(c1.id, send_frame("alice", "bob", "persist me"))
    await relay.handle(c2.id, {
        "event": "mark_read", "data": {"conversationId": "conv_alice_bob", "userId": "bob"}
    })
    await settle(c1, c2)

    assert [m.content for m in store.saved] == ["persist me"]
    assert store.saved[0].id == bob.of("message_received")[0]["message"]["id"]
    assert store.read == [("bob", "conv_alice_bob")]
    await shutdown(relay)


@pytest.mark.asyncio
async def test_store_failure_does_not_block_live_delivery():
    relay = ChatRelay(store_provider=lambda: BrokenStore())
    c1, alice = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")
    await join(relay, c2, "conv_alice_bob")

    await relay.handle(c1.id, send_frame("alice", "bob"))
    await relay.handle(c2.id, {
        "event": "mark_read", "data": {"conversationId": "conv_alice_bob", "userId": "bob"}
    })
    await settle(c1, c2)

    assert len(bob.of("new_message")) == 1
    assert len(bob.of("messages_read")) == 1
    assert len(alice.of("message_sent")) == 1
    assert alice.of("message_error") == []
    await shutdown(relay)


# =============================================================================
# Server-initiated pushes
# =============================================================================


@pytest.mark.asyncio
async def test_system_message_and_broadcast():
    relay = ChatRelay()
    c1, alice = await open_as(relay, "alice")
    c2, bob = await open_as(relay, "bob")

    assert relay.send_system_message("bob", "Your payment cleared") == 1
    assert relay.broadcast(OutboundEvent.SYSTEM_MESSAGE, {"message": "maintenance"}) == 2
    await settle(c1, c2)

    assert bob.of("system_message") == [
        {"message": "Your payment cleared"}, {"message": "maintenance"}
    ]
    assert alice.of("system_message") == [{"message": "maintenance"}]
    await shutdown(relay)
