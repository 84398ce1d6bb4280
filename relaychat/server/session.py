"""
Per-connection session handling for the RelayChat server.

Each accepted connection is driven by one ClientSession:

    CONNECTING -> AUTHENTICATING -> ACTIVE -> CLOSED

The session's own thread reads from the client. Everything sent to the
client goes through a bounded outbound queue drained by a writer thread, so
the registry never blocks on a client that has stopped reading. A client
whose queue overflows is closed. Lines leave in the order they were queued,
and nothing can be queued between a successful registration and the SUCCESS
line that confirms it.
"""

import logging
import socket
import threading
from enum import Enum
from queue import Empty, Full, Queue
from typing import Optional

from relaychat.common.protocol import (
    DecodeError,
    ENTER_USERNAME,
    Message,
    MessageType,
    decode_message,
    encode_message,
    error_line,
    is_valid_username,
    success_line,
    system_message,
)
from relaychat.server.registry import ClientRegistry


logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_LENGTH = 16 * 1024 * 1024
DEFAULT_MAX_PENDING = 1024

# Seconds close() waits for queued lines to reach the client
CLOSE_FLUSH_TIMEOUT = 2.0

INVALID_USERNAME_TEXT = "Invalid username format. Use 2-20 alphanumeric characters."
USERNAME_TAKEN_TEXT = "Username already taken. Please try another."

_STOP_WRITER = None


class SessionState(Enum):
    CONNECTING = "CONNECTING"
    AUTHENTICATING = "AUTHENTICATING"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


def format_address(address) -> str:
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address or "local")


class ClientSession:
    """
    Server-side state for one client connection.

    Args:
        sock: Connected client socket, owned by the session from now on
        address: Peer address, used for log prefixes
        registry: Shared client registry
        max_line_length: Longest accepted wire line, in characters
        max_pending: Outbound lines that may wait for a slow client
            before it is disconnected
    """

    def __init__(self, sock: socket.socket, address, registry: ClientRegistry,
                 max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
                 max_pending: int = DEFAULT_MAX_PENDING):
        self.sock = sock
        self.client_id = format_address(address)
        self.registry = registry
        self.max_line_length = max_line_length
        self.username: Optional[str] = None
        self.state = SessionState.CONNECTING

        self._rfile = sock.makefile("r", encoding="utf-8", errors="replace", newline="\n")
        self._wfile = sock.makefile("w", encoding="utf-8", newline="\n")
        self._outbound: Queue = Queue(maxsize=max_pending)
        self._outbound_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._writer_thread: Optional[threading.Thread] = None

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def pending_count(self) -> int:
        return self._outbound.qsize()

    def run(self) -> None:
        """Run the handshake and the read loop until the session ends."""
        logger.info(f"[{self.client_id}] Connection accepted")
        self._writer_thread = threading.Thread(
            target=self._write_loop, name=f"relaychat-writer-{self.client_id}", daemon=True
        )
        self._writer_thread.start()
        try:
            if self._authenticate():
                logger.info(f"[{self.client_id}] Client {self.username} authenticated")
                self._read_loop()
        except OSError as e:
            if not self.closed:
                logger.info(f"[{self.client_id}] Connection error for {self.username or 'unauthenticated client'}: {e}")
        except Exception as e:
            logger.error(f"[{self.client_id}] Unexpected error: {e}")
        finally:
            self.close()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_message(self, message: Message) -> None:
        """
        Sink interface used by the registry. Never blocks on the socket.

        Messages sent to a closed session are dropped. If the client has
        fallen too far behind, the session is closed instead.
        """
        with self._outbound_lock:
            if self.closed:
                return
            queued = self._put_line(encode_message(message))

        if not queued:
            logger.warning(f"[{self.client_id}] {self.username} is not reading, "
                           f"{self._outbound.maxsize} messages pending; disconnecting")
            self.close(flush=False)

    def _queue_line(self, line: str) -> bool:
        with self._outbound_lock:
            if self.closed:
                return False
            return self._put_line(line)

    def _put_line(self, line: str) -> bool:
        try:
            self._outbound.put_nowait(line)
        except Full:
            return False
        return True

    def _write_loop(self) -> None:
        while True:
            line = self._outbound.get()
            if line is _STOP_WRITER:
                return
            try:
                with self._write_lock:
                    self._wfile.write(line + "\n")
                    self._wfile.flush()
            except (OSError, ValueError) as e:
                if not self.closed:
                    logger.info(f"[{self.client_id}] Write failed for {self.username or 'unauthenticated client'}: {e}")
                    self.close(flush=False)
                return

    def _stop_writer(self, flush: bool) -> None:
        if not flush:
            # Drop what the client will never read so the stop marker fits
            while True:
                try:
                    self._outbound.get_nowait()
                except Empty:
                    break
        try:
            self._outbound.put_nowait(_STOP_WRITER)
        except Full:
            pass

        writer = self._writer_thread
        if flush and writer is not None and writer is not threading.current_thread():
            writer.join(timeout=CLOSE_FLUSH_TIMEOUT)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _read_line(self) -> Optional[str]:
        """
        Read one line; None on end of stream or an oversized line.
        """
        try:
            raw = self._rfile.readline(self.max_line_length + 1)
        except ValueError:
            # Stream closed under us by close() on another thread
            if self.closed:
                return None
            raise
        if not raw:
            return None
        if len(raw) > self.max_line_length and not raw.endswith("\n"):
            logger.warning(f"[{self.client_id}] Line exceeds {self.max_line_length} characters, closing")
            return None
        return raw.rstrip("\r\n")

    def _authenticate(self) -> bool:
        """
        Run the username handshake.

        On success the username is registered, SUCCESS is queued ahead of
        anything the registry can deliver, and only then is the join
        announced to everyone.

        Returns:
            bool: True if the session is now ACTIVE
        """
        with self._state_lock:
            if self.closed:
                return False
            self.state = SessionState.AUTHENTICATING

        self._queue_line(ENTER_USERNAME)

        raw = self._read_line()
        if raw is None:
            logger.info(f"[{self.client_id}] Disconnected before sending a username")
            return False

        proposed = raw.strip()
        if not is_valid_username(proposed):
            logger.warning(f"[{self.client_id}] Rejected invalid username {proposed!r}")
            self._queue_line(error_line(INVALID_USERNAME_TEXT))
            return False

        with self._outbound_lock:
            with self._state_lock:
                if self.closed:
                    return False
                if not self.registry.register(proposed, self):
                    logger.warning(f"[{self.client_id}] Username already taken: {proposed}")
                    registered = False
                else:
                    self.username = proposed
                    self.state = SessionState.ACTIVE
                    registered = True

            if not registered:
                self._put_line(error_line(USERNAME_TAKEN_TEXT))
                return False

            self._put_line(success_line(f"Welcome to the chat, {proposed}!"))

        self.registry.notify_joined(proposed)
        return True

    def _read_loop(self) -> None:
        while not self.closed:
            line = self._read_line()
            if line is None:
                logger.info(f"[{self.client_id}] {self.username} closed the connection")
                return

            if not line.strip():
                continue

            try:
                message = decode_message(line)
            except DecodeError as e:
                logger.warning(f"[{self.client_id}] Invalid message format from {self.username}: {e}")
                continue

            if not self._dispatch(message):
                return

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, message: Message) -> bool:
        """
        Route one decoded message.

        Returns:
            bool: False once the client has announced it is leaving
        """
        msg_type = message.type

        if msg_type == MessageType.NORMAL:
            self.registry.broadcast(message, self.username)
            logger.info(f"{self.username}: {message.content}")

        elif msg_type == MessageType.IMAGE:
            self.registry.broadcast(message, self.username)
            logger.info(f"{self.username} sent an image: {message.attachment_name}")

        elif msg_type == MessageType.FILE:
            if message.recipient:
                self._route_to_recipient(message, f"File sent to {message.recipient}")
            else:
                self.registry.broadcast(message, self.username)
                logger.info(f"{self.username} sent a file: {message.attachment_name}")

        elif msg_type == MessageType.PRIVATE:
            if not message.recipient:
                self.send_message(system_message("Private message requires a recipient"))
            else:
                self._route_to_recipient(message, f"Private message sent to {message.recipient}")

        elif msg_type == MessageType.LEAVE:
            logger.info(f"[{self.client_id}] {self.username} is leaving")
            return False

        else:
            logger.info(f"Unhandled message type from {self.username}: {msg_type}")

        return True

    def _route_to_recipient(self, message: Message, confirmation: str) -> None:
        recipient = message.recipient
        if self.registry.route_direct(message, recipient):
            self.send_message(system_message(confirmation))
            logger.info(f"{self.username} -> {recipient} ({message.type}): {message.attachment_name or message.content}")
        else:
            self.send_message(system_message(f"User '{recipient}' not found"))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self, flush: bool = True) -> None:
        """
        Move to CLOSED: unregister, then release the connection.

        With `flush`, lines already queued (an ERROR reply, say) get up to
        CLOSE_FLUSH_TIMEOUT seconds to reach the client first. Safe to call
        from any thread and any number of times.
        """
        with self._state_lock:
            if self.closed:
                return
            self.state = SessionState.CLOSED

        self.registry.unregister(self.username)
        self._stop_writer(flush)

        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Peer already gone
            pass

        # Shutdown above unblocks a pending write, so the lock is released soon
        with self._write_lock:
            self._close_stream(self._wfile)
        self._close_stream(self._rfile)

        try:
            self.sock.close()
        except OSError as e:
            logger.error(f"[{self.client_id}] Error closing socket: {e}")

        logger.info(f"[{self.client_id}] Connection closed")

    def _close_stream(self, stream) -> None:
        try:
            stream.close()
        except OSError as e:
            logger.debug(f"[{self.client_id}] Error closing stream: {e}")
