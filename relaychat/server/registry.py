"""
Client registry: the server's single source of truth for who is online.

The registry maps usernames to outbound sinks and routes messages between
them. All membership reads and writes happen under one lock; deliveries are
made outside the lock, on a snapshot taken while holding it, so a slow or
dying connection never stalls registration of others.

Join ordering contract:
    register() only records the member. The session queues its SUCCESS line
    first and only then calls notify_joined(), so a new client never sees
    its own join broadcast before its acceptance response.
"""

import logging
import threading
from typing import Dict, List, Optional, Protocol

from relaychat.common.protocol import Message, MessageType, system_message


logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    """
    Anything the registry can deliver messages to.

    send_message() must not block on the network; sessions hand the message
    to their own writer thread.
    """

    def send_message(self, message: Message) -> None:
        ...


class ClientRegistry:
    """Thread-safe username -> sink table with broadcast and direct routing."""

    def __init__(self):
        self._members: Dict[str, MessageSink] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)

    def __contains__(self, username: str) -> bool:
        with self._lock:
            return username in self._members

    def register(self, username: str, sink: MessageSink) -> bool:
        """
        Atomically claim a username.

        Of any number of concurrent attempts on the same name exactly one
        succeeds. No notification is sent here; see notify_joined().

        Args:
            username: Already validated username
            sink: Outbound sink of the registering session

        Returns:
            bool: True if the name was free and is now taken by `sink`
        """
        with self._lock:
            if username in self._members:
                return False
            self._members[username] = sink
            total = len(self._members)

        logger.info(f"Client registered: {username} (Total clients: {total})")
        return True

    def unregister(self, username: Optional[str]) -> bool:
        """
        Remove a member and tell everyone left.

        Broadcasts "<username> has left the chat" followed by a fresh user
        list. Unknown or None usernames are a silent no-op.

        Returns:
            bool: True if membership actually changed
        """
        if not username:
            return False

        with self._lock:
            if self._members.pop(username, None) is None:
                return False
            total = len(self._members)

        logger.info(f"Client disconnected: {username} (Total clients: {total})")
        self.broadcast(system_message(f"{username} has left the chat"))
        self.broadcast(self.user_list_message())
        return True

    def notify_joined(self, username: str) -> None:
        """
        Announce a new member to everyone, the new member included.

        Sends the current user list first, then "<username> has joined the
        chat". Must only be called after the new member's SUCCESS line has
        been written to its connection.
        """
        self.broadcast(self.user_list_message())
        self.broadcast(system_message(f"{username} has joined the chat"))

    def broadcast(self, message: Message, exclude_username: Optional[str] = None) -> int:
        """
        Deliver a message to every member except `exclude_username`.

        A failing sink is logged and skipped; it never stops delivery to
        the remaining members.

        Returns:
            int: Number of sinks the message was handed to without error
        """
        with self._lock:
            recipients = [
                (name, sink)
                for name, sink in self._members.items()
                if name != exclude_username
            ]

        delivered = 0
        for name, sink in recipients:
            if self._deliver(name, sink, message):
                delivered += 1
        return delivered

    def route_direct(self, message: Message, recipient_username: str) -> bool:
        """
        Deliver a message to exactly one member.

        Returns:
            bool: False if `recipient_username` is not online
        """
        with self._lock:
            sink = self._members.get(recipient_username)

        if sink is None:
            return False

        self._deliver(recipient_username, sink, message)
        return True

    def snapshot_usernames(self) -> List[str]:
        """Sorted copy of the current membership."""
        with self._lock:
            return sorted(self._members)

    def user_list_message(self) -> Message:
        return system_message(",".join(self.snapshot_usernames()), MessageType.USER_LIST)

    def clear(self) -> None:
        with self._lock:
            self._members.clear()

    @staticmethod
    def _deliver(username: str, sink: MessageSink, message: Message) -> bool:
        # Fire and forget
        try:
            sink.send_message(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to deliver {message.type} to {username}: {e}")
            return False
