"""
RelayChat TCP server.

This module implements the listener that:
    1. Binds to a configurable host and port (default 0.0.0.0:8888)
    2. Accepts client connections on its own thread
    3. Runs one ClientSession per connection on a dedicated thread
    4. Closes every session and clears the registry on shutdown

Usage:
    python -m relaychat.server [port]

    An invalid port argument is logged and the default is used instead.
    To stop the server: Press Ctrl+C

Environment Variables (.env):
    SERVER_HOST: Host to bind to (default: 0.0.0.0)
    SERVER_PORT: Port to listen on (default: 8888)
    MAX_LINE_LENGTH: Longest accepted wire line in characters (default: 16 MiB)
    LOG_LEVEL: Logging level (default: INFO)
"""

import argparse
import logging
import os
import signal
import socket
import sys
import threading
from typing import Optional, Set

from dotenv import load_dotenv

from relaychat.common.protocol import DEFAULT_PORT
from relaychat.server.registry import ClientRegistry
from relaychat.server.session import DEFAULT_MAX_LINE_LENGTH, ClientSession


# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Seconds between checks of the shutdown flag while waiting in accept()
ACCEPT_TIMEOUT = 1.0


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
SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = _env_int("SERVER_PORT", DEFAULT_PORT)
MAX_LINE_LENGTH = _env_int("MAX_LINE_LENGTH", DEFAULT_MAX_LINE_LENGTH)


class ChatServer:
    """
    Accepts connections and owns the lifetime of all sessions.

    Args:
        host: Address to bind to
        port: Port to bind to; 0 picks a free port, see `port` after bind()
        registry: Client registry to use (a fresh one by default)
        max_line_length: Longest accepted wire line, in characters
    """

    def __init__(self, host: str = SERVER_HOST, port: int = SERVER_PORT,
                 registry: Optional[ClientRegistry] = None,
                 max_line_length: int = MAX_LINE_LENGTH):
        self.host = host
        self.port = port
        self.registry = registry if registry is not None else ClientRegistry()
        self.max_line_length = max_line_length

        self._server_socket: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._sessions: Set[ClientSession] = set()
        self._sessions_lock = threading.Lock()
        self._shutdown_requested = threading.Event()
        self._stopped = False
        self._stop_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._server_socket is not None and not self._shutdown_requested.is_set()

    def session_count(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)

    def bind(self) -> None:
        """
        Create the listening socket.

        Raises:
            OSError: If the address cannot be bound
        """
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server_socket.bind((self.host, self.port))
            server_socket.listen()
        except OSError:
            server_socket.close()
            raise
        server_socket.settimeout(ACCEPT_TIMEOUT)

        self._server_socket = server_socket
        self.port = server_socket.getsockname()[1]
        logger.info(f"Chat Server started on {self.host}:{self.port}")

    def start(self) -> "ChatServer":
        """Bind and run the accept loop on a background thread."""
        self.bind()
        self._accept_thread = threading.Thread(
            target=self._accept_loop, name="relaychat-accept", daemon=True
        )
        self._accept_thread.start()
        return self

    def serve_forever(self) -> None:
        """Bind if needed and run the accept loop until shutdown is requested."""
        if self._server_socket is None:
            self.bind()
        self._accept_loop()

    def request_shutdown(self) -> None:
        """Ask the accept loop to exit; safe to call from a signal handler."""
        self._shutdown_requested.set()

    def _accept_loop(self) -> None:
        logger.info("Waiting for client connections...")
        while not self._shutdown_requested.is_set():
            try:
                client_socket, client_address = self._server_socket.accept()
            except socket.timeout:
                # Timeout is normal, just loop to check the shutdown flag
                continue
            except OSError as e:
                if self._shutdown_requested.is_set():
                    break
                logger.error(f"Error accepting client connection: {e}")
                continue

            client_socket.settimeout(None)
            self._spawn_session(client_socket, client_address)

    def _spawn_session(self, client_socket: socket.socket, client_address) -> None:
        session = ClientSession(
            client_socket, client_address, self.registry, self.max_line_length
        )
        with self._sessions_lock:
            if self._shutdown_requested.is_set():
                session.close()
                return
            self._sessions.add(session)

        threading.Thread(
            target=self._run_session,
            args=(session,),
            name=f"relaychat-session-{session.client_id}",
            daemon=True,
        ).start()

    def _run_session(self, session: ClientSession) -> None:
        try:
            session.run()
        finally:
            with self._sessions_lock:
                self._sessions.discard(session)

    def stop(self) -> None:
        """
        Stop accepting, close every session and clear the registry.

        Each session goes through its normal CLOSED transition, so remaining
        clients see the usual leave announcements while the server winds
        down. Calling stop() again is a no-op.
        """
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        logger.info("Shutting down server...")
        self._shutdown_requested.set()

        if self._server_socket is not None:
            try:
                self._server_socket.close()
            except OSError as e:
                logger.error(f"Error closing server socket: {e}")

        with self._sessions_lock:
            sessions = list(self._sessions)
        for session in sessions:
            session.close()

        self.registry.clear()

        if self._accept_thread is not None and self._accept_thread is not threading.current_thread():
            self._accept_thread.join(timeout=ACCEPT_TIMEOUT * 2)

        logger.info("Chat Server stopped.")


def resolve_port(raw: Optional[str], default: int = SERVER_PORT) -> int:
    """
    Turn the optional port argument into a port number.

    Anything that is not an integer in 1-65535 falls back to `default`.
    """
    if raw is None:
        return default
    try:
        port = int(raw)
    except ValueError:
        logger.warning(f"Invalid port number {raw!r}. Using default port: {default}")
        return default
    if not 0 < port < 65536:
        logger.warning(f"Port {port} out of range. Using default port: {default}")
        return default
    return port


def main(argv=None):
    """
    Main entry point for the server.

    Exit codes:
        0: Normal shutdown
        1: Fatal error (port in use, permission denied, ...)
    """
    parser = argparse.ArgumentParser(description="RelayChat server")
    parser.add_argument("port", nargs="?", help=f"port to listen on (default: {SERVER_PORT})")
    args = parser.parse_args(argv)

    server = ChatServer(SERVER_HOST, resolve_port(args.port))

    def signal_handler(signum, frame):
        logger.info(f"Shutdown signal received ({signal.Signals(signum).name})")
        server.request_shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        server.bind()
        print(f"[*] RelayChat server started on {server.host}:{server.port}")
        print("[*] Press Ctrl+C to stop the server")
        server.serve_forever()
    except OSError as e:
        logger.critical(f"Could not start server on port {server.port}: {e}")
        sys.exit(1)
    finally:
        server.stop()

    print("[*] Server stopped")


if __name__ == "__main__":
    main()
