"""
Client registry tests.

Checks registration races, join/leave notifications, broadcast exclusion,
direct routing and tolerance of failing sinks.

Run with: python -m pytest tests/unit_tests/test_registry.py -v
"""

import logging
import threading

from relaychat.common.protocol import Message, MessageType
from relaychat.server.registry import ClientRegistry


logger = logging.getLogger(__name__)


class RecordingSink:
    """Collects whatever the registry delivers."""

    def __init__(self):
        self.messages = []
        self._lock = threading.Lock()

    def send_message(self, message):
        with self._lock:
            self.messages.append(message)

    def summary(self):
        with self._lock:
            return [(m.type, m.content) for m in self.messages]


class FailingSink:
    def send_message(self, message):
        raise BrokenPipeError("peer went away")


def test_register_claims_name_once():
    registry = ClientRegistry()
    first, second = RecordingSink(), RecordingSink()

    assert registry.register("alice", first) is True
    assert registry.register("alice", second) is False
    assert "alice" in registry
    assert len(registry) == 1

    # The loser never replaced the winner
    registry.route_direct(Message(MessageType.PRIVATE, "bob", "hi", recipient="alice"), "alice")
    assert len(first.messages) == 1
    assert second.messages == []


def test_register_does_not_notify():
    registry = ClientRegistry()
    observer = RecordingSink()
    registry.register("observer", observer)

    registry.register("alice", RecordingSink())

    assert observer.messages == []


def test_concurrent_register_same_name_has_single_winner():
    registry = ClientRegistry()
    attempts = 32
    barrier = threading.Barrier(attempts)
    results = []
    results_lock = threading.Lock()

    def attempt():
        sink = RecordingSink()
        barrier.wait()
        won = registry.register("alice", sink)
        with results_lock:
            results.append(won)

    threads = [threading.Thread(target=attempt) for _ in range(attempts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(results) == attempts
    assert results.count(True) == 1
    assert registry.snapshot_usernames() == ["alice"]


def test_concurrent_register_distinct_names_all_win():
    registry = ClientRegistry()
    names = [f"user_{i}" for i in range(20)]
    barrier = threading.Barrier(len(names))
    results = {}

    def attempt(name):
        barrier.wait()
        results[name] = registry.register(name, RecordingSink())

    threads = [threading.Thread(target=attempt, args=(n,)) for n in names]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert all(results.values())
    assert registry.snapshot_usernames() == sorted(names)


def test_unregister_unknown_name_is_silent():
    registry = ClientRegistry()
    observer = RecordingSink()
    registry.register("observer", observer)

    assert registry.unregister("ghost") is False
    assert registry.unregister(None) is False
    assert observer.messages == []


def test_unregister_announces_leave_then_user_list():
    registry = ClientRegistry()
    alice, bob, carol = RecordingSink(), RecordingSink(), RecordingSink()
    registry.register("alice", alice)
    registry.register("bob", bob)
    registry.register("carol", carol)

    assert registry.unregister("alice") is True

    expected = [
        (MessageType.SYSTEM, "alice has left the chat"),
        (MessageType.USER_LIST, "bob,carol"),
    ]
    assert bob.summary() == expected
    assert carol.summary() == expected
    assert alice.messages == []

    # Second disconnect of the same name changes nothing
    assert registry.unregister("alice") is False
    assert bob.summary() == expected


def test_notify_joined_sends_user_list_then_announcement_to_everyone():
    registry = ClientRegistry()
    alice, bob = RecordingSink(), RecordingSink()
    registry.register("alice", alice)
    registry.register("bob", bob)

    registry.notify_joined("bob")

    expected = [
        (MessageType.USER_LIST, "alice,bob"),
        (MessageType.SYSTEM, "bob has joined the chat"),
    ]
    assert alice.summary() == expected
    assert bob.summary() == expected
    assert all(m.sender == "System" for m in bob.messages)


def test_broadcast_excludes_sender():
    registry = ClientRegistry()
    sinks = {name: RecordingSink() for name in ("alice", "bob", "carol")}
    for name, sink in sinks.items():
        registry.register(name, sink)

    msg = Message(MessageType.NORMAL, "alice", "hello")
    delivered = registry.broadcast(msg, "alice")

    assert delivered == 2
    assert sinks["alice"].messages == []
    assert sinks["bob"].messages == [msg]
    assert sinks["carol"].messages == [msg]


def test_broadcast_without_exclusion_reaches_all():
    registry = ClientRegistry()
    alice, bob = RecordingSink(), RecordingSink()
    registry.register("alice", alice)
    registry.register("bob", bob)

    registry.broadcast(Message(MessageType.SYSTEM, "System", "maintenance soon"))

    assert len(alice.messages) == 1
    assert len(bob.messages) == 1


def test_failing_sink_does_not_block_others():
    registry = ClientRegistry()
    alice, carol = RecordingSink(), RecordingSink()
    registry.register("alice", alice)
    registry.register("broken", FailingSink())
    registry.register("carol", carol)

    delivered = registry.broadcast(Message(MessageType.NORMAL, "dave", "hi"))

    assert delivered == 2
    assert len(alice.messages) == 1
    assert len(carol.messages) == 1


def test_route_direct():
    registry = ClientRegistry()
    bob = RecordingSink()
    registry.register("bob", bob)
    msg = Message(MessageType.PRIVATE, "alice", "psst", recipient="bob")

    assert registry.route_direct(msg, "bob") is True
    assert bob.messages == [msg]

    assert registry.route_direct(msg, "ghost") is False


def test_route_direct_to_failing_sink_still_reports_found():
    registry = ClientRegistry()
    registry.register("bob", FailingSink())

    assert registry.route_direct(Message(MessageType.PRIVATE, "alice", "hi", recipient="bob"), "bob") is True


def test_user_list_message_and_clear():
    registry = ClientRegistry()
    for name in ("zed", "amy", "bob"):
        registry.register(name, RecordingSink())

    user_list = registry.user_list_message()
    assert user_list.type is MessageType.USER_LIST
    assert user_list.content == "amy,bob,zed"

    registry.clear()
    assert len(registry) == 0
    assert registry.user_list_message().content == ""


def test_snapshot_is_a_copy():
    registry = ClientRegistry()
    registry.register("alice", RecordingSink())

    snapshot = registry.snapshot_usernames()
    registry.register("bob", RecordingSink())

    assert snapshot == ["alice"]
