"""
RelayChat TCP client.

This module implements the client side of the relay:
    1. Connects to the server and runs the username handshake
    2. Receives messages on a background thread
    3. Reports everything to a ChatListener (messages, membership, status)
    4. Sends normal, private, image, file and voice messages

The ChatListener callbacks are the whole surface a presentation layer needs;
it never touches the socket or the client's internal state. Callbacks for
received messages run on the receive thread.

Usage:
    python -m relaychat.client [--host HOST] [--port PORT] [username]

    Type a line to broadcast it, "/msg <user> <text>" to send privately and
    "/quit" to leave.

Environment Variables (.env):
    SERVER_HOST: Server hostname or IP (default: localhost)
    SERVER_PORT: Server port (default: 8888)
"""

import argparse
import logging
import os
import socket
import sys
import threading
from typing import Optional, Set

from dotenv import load_dotenv

from relaychat.common.protocol import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    DecodeError,
    ENTER_USERNAME,
    Message,
    MessageType,
    decode_message,
    encode_message,
    is_private_command,
    is_valid_username,
    parse_auth_response,
    parse_private_command,
    system_message,
)


# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "WARNING").upper(), logging.WARNING),
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


# Configuration
SERVER_HOST = os.getenv("SERVER_HOST", DEFAULT_HOST)
SERVER_PORT = _env_int("SERVER_PORT", DEFAULT_PORT)
CONNECT_TIMEOUT = 10.0


class ChatListener:
    """
    Callback interface for whatever presents the chat.

    All methods are no-ops; override the ones you need.
    """

    def on_message_received(self, message: Message) -> None:
        pass

    def on_connection_status_changed(self, connected: bool, status_text: str) -> None:
        pass

    def on_membership_changed(self, usernames: Set[str]) -> None:
        pass


class ChatClient:
    """
    Connection to a RelayChat server on behalf of one user.

    Args:
        listener: Receives messages, membership updates and status changes
    """

    def __init__(self, listener: Optional[ChatListener] = None):
        self.listener = listener or ChatListener()
        self.username: Optional[str] = None

        self._sock: Optional[socket.socket] = None
        self._rfile = None
        self._wfile = None
        self._connected = False
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._receive_thread: Optional[threading.Thread] = None

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self, host: str, port: int, username: str, timeout: float = CONNECT_TIMEOUT) -> bool:
        """
        Connect and authenticate.

        Args:
            host: Server hostname or IP address
            port: Server port
            username: Desired username
            timeout: Seconds to wait for connect and each handshake line

        Returns:
            bool: True once the server accepted the username
        """
        if self._connected:
            logger.warning("connect() called while already connected")
            return False

        username = (username or "").strip()
        if not is_valid_username(username):
            self._notify_status(False, "Invalid username format. Use 2-20 alphanumeric characters.")
            return False

        logger.info(f"Connecting to {host}:{port} as {username}")
        try:
            self._sock = socket.create_connection((host, port), timeout=timeout)
            self._rfile = self._sock.makefile("r", encoding="utf-8", errors="replace", newline="\n")
            self._wfile = self._sock.makefile("w", encoding="utf-8", newline="\n")

            accepted, status_text = self._authenticate(username)
            if not accepted:
                self._close_resources()
                self._notify_status(False, status_text)
                return False

            self._sock.settimeout(None)

        except OSError as e:
            logger.error(f"Connection to {host}:{port} failed: {e}")
            self._close_resources()
            self._notify_status(False, f"Connection failed: {e}")
            return False

        self.username = username
        with self._state_lock:
            self._connected = True
        self._notify_status(True, f"Connected to server as {username}")

        self._receive_thread = threading.Thread(
            target=self._receive_loop, name=f"relaychat-receive-{username}", daemon=True
        )
        self._receive_thread.start()
        return True

    def _authenticate(self, username: str):
        prompt = self._rfile.readline()
        if prompt.rstrip("\r\n") != ENTER_USERNAME:
            logger.error(f"Unexpected server greeting: {prompt!r}")
            return False, "Unexpected server response"

        self._wfile.write(username + "\n")
        self._wfile.flush()

        response = self._rfile.readline()
        if not response:
            return False, "Server disconnected"

        accepted, text = parse_auth_response(response)
        logger.info(f"Authentication {'succeeded' if accepted else 'failed'}: {text}")
        return accepted, text

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def _receive_loop(self) -> None:
        reason = "Connection lost"
        try:
            for raw in iter(self._rfile.readline, ""):
                line = raw.rstrip("\r\n")
                if line:
                    self._process_line(line)
            reason = "Server closed the connection"
        except (OSError, ValueError) as e:
            reason = f"Connection lost: {e}"
        finally:
            self._handle_connection_lost(reason)

    def _process_line(self, line: str) -> None:
        try:
            message = decode_message(line)
        except DecodeError as e:
            logger.warning(f"Dropping malformed line from server: {e}")
            return

        try:
            if message.type == MessageType.USER_LIST:
                usernames = {name.strip() for name in message.content.split(",") if name.strip()}
                self.listener.on_membership_changed(usernames)
            else:
                self.listener.on_message_received(message)
        except Exception as e:
            logger.error(f"Listener failed on {message.type} message: {e}")

    def _handle_connection_lost(self, reason: str) -> None:
        with self._state_lock:
            if not self._connected:
                return
            self._connected = False
        self._close_resources()
        self._notify_status(False, reason)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _send(self, message: Message) -> bool:
        with self._write_lock:
            if not self._connected or self._wfile is None:
                return False
            try:
                self._wfile.write(encode_message(message) + "\n")
                self._wfile.flush()
                return True
            except (OSError, ValueError) as e:
                logger.error(f"Send failed: {e}")
                return False

    def send_text(self, text: str) -> bool:
        """
        Send a line typed by the user.

        "/msg <user> <text>" becomes a private message; a malformed /msg is
        reported back through the listener instead of being sent.
        """
        if is_private_command(text):
            parsed = parse_private_command(text)
            if parsed is None:
                self.listener.on_message_received(
                    system_message("Invalid private message format. Use: /msg username message")
                )
                return False
            return self.send_private(*parsed)
        return self.send_normal(text)

    def send_normal(self, text: str) -> bool:
        if not self._connected:
            return False
        return self._send(Message(MessageType.NORMAL, self.username, text))

    def send_private(self, recipient: str, text: str) -> bool:
        if not self._connected:
            return False
        return self._send(Message(MessageType.PRIVATE, self.username, text, recipient=recipient))

    def send_image(self, image_data: str, file_name: str, recipient: Optional[str] = None) -> bool:
        """
        Send a base64 image, to everyone or, with `recipient`, privately.

        The server only routes IMAGE as a broadcast, so a targeted image
        travels as a PRIVATE message carrying the file name.
        """
        if not self._connected:
            return False
        msg_type = MessageType.PRIVATE if recipient else MessageType.IMAGE
        return self._send(
            Message(msg_type, self.username, image_data,
                    recipient=recipient or "", attachment_name=file_name)
        )

    def send_file(self, file_data: str, file_name: str, recipient: Optional[str] = None) -> bool:
        if not self._connected:
            return False
        return self._send(
            Message(MessageType.FILE, self.username, file_data,
                    recipient=recipient or "", attachment_name=file_name)
        )

    def send_voice(self, audio_data: str, duration_seconds: int, recipient: Optional[str] = None) -> bool:
        if not self._connected:
            return False
        return self._send(
            Message(MessageType.VOICE, self.username, audio_data,
                    recipient=recipient or "", attachment_name=f"{duration_seconds}s")
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def disconnect(self) -> None:
        """Send LEAVE and close the connection. No-op when not connected."""
        if not self._connected:
            return

        self._send(Message(MessageType.LEAVE, self.username, "Leaving"))

        with self._state_lock:
            if not self._connected:
                return
            self._connected = False

        self._close_resources()
        self._notify_status(False, "Disconnected from server")

        if self._receive_thread is not None and self._receive_thread is not threading.current_thread():
            self._receive_thread.join(timeout=CONNECT_TIMEOUT)

    def _close_resources(self) -> None:
        sock = self._sock
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

        with self._write_lock:
            for stream in (self._wfile, self._rfile):
                if stream is None:
                    continue
                try:
                    stream.close()
                except OSError as e:
                    logger.debug(f"Error closing stream: {e}")
            self._wfile = None
            self._rfile = None

        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.error(f"Error closing socket: {e}")

    def _notify_status(self, connected: bool, status_text: str) -> None:
        logger.info(f"Status update: connected={connected}, message={status_text}")
        try:
            self.listener.on_connection_status_changed(connected, status_text)
        except Exception as e:
            logger.error(f"Listener failed on status change: {e}")


class ConsoleListener(ChatListener):
    """Prints chat events to stdout."""

    def on_message_received(self, message: Message) -> None:
        if message.type in (MessageType.IMAGE, MessageType.FILE, MessageType.VOICE) or message.attachment_name:
            target = f" to {message.recipient}" if message.recipient else ""
            print(f"[{message.formatted_timestamp}] {message.sender} sent {message.type.value.lower()}"
                  f"{target}: {message.attachment_name} ({len(message.content)} bytes)")
        elif message.type == MessageType.PRIVATE:
            print(f"[{message.formatted_timestamp}] (private) {message.sender}: {message.content}")
        else:
            print(message)

    def on_connection_status_changed(self, connected: bool, status_text: str) -> None:
        print(f"[{'+' if connected else '!'}] {status_text}")

    def on_membership_changed(self, usernames: Set[str]) -> None:
        print(f"[*] Online: {', '.join(sorted(usernames))}")


def main(argv=None):
    """
    Console client entry point.

    Exit codes:
        0: Normal shutdown
        1: Could not connect or authenticate
    """
    parser = argparse.ArgumentParser(description="RelayChat console client")
    parser.add_argument("username", nargs="?", help="username to join with")
    parser.add_argument("--host", default=SERVER_HOST, help=f"server host (default: {SERVER_HOST})")
    parser.add_argument("--port", type=int, default=SERVER_PORT, help=f"server port (default: {SERVER_PORT})")
    args = parser.parse_args(argv)

    username = args.username
    try:
        if not username:
            username = input("Username: ").strip()
    except (EOFError, KeyboardInterrupt):
        print("\n[*] Exiting client")
        return

    client = ChatClient(ConsoleListener())
    if not client.connect(args.host, args.port, username):
        sys.exit(1)

    print("[*] Type a message, /msg <user> <text> for private, /quit to leave")
    try:
        while client.connected:
            try:
                line = input()
            except EOFError:
                break

            if line.strip() == "/quit":
                break
            if line.strip():
                client.send_text(line)

    except KeyboardInterrupt:
        print("\n[*] Interrupted by user")

    finally:
        client.disconnect()


if __name__ == "__main__":
    main()
