"""
Listener lifecycle and port argument tests.

Run with: python -m pytest tests/unit_tests/test_server.py -v
"""

import logging
import socket

import pytest

from relaychat.common.protocol import DEFAULT_PORT
from relaychat.server.server import ChatServer, resolve_port


logger = logging.getLogger(__name__)


@pytest.mark.parametrize("raw,expected", [
    (None, 9000),
    ("5001", 5001),
    ("65535", 65535),
    ("abc", 9000),
    ("", 9000),
    ("0", 9000),
    ("70000", 9000),
    ("-1", 9000),
])
def test_resolve_port(raw, expected):
    assert resolve_port(raw, default=9000) == expected


def test_default_port_constant():
    assert DEFAULT_PORT == 8888


def test_start_binds_ephemeral_port_and_stop_is_idempotent():
    server = ChatServer("127.0.0.1", 0).start()
    try:
        assert server.port != 0
        assert server.running

        with socket.create_connection(("127.0.0.1", server.port), timeout=5) as sock:
            rfile = sock.makefile("r", encoding="utf-8")
            assert rfile.readline() == "ENTER_USERNAME\n"
            rfile.close()
    finally:
        server.stop()
        server.stop()

    assert not server.running
    with pytest.raises(OSError):
        socket.create_connection(("127.0.0.1", server.port), timeout=1)


def test_bind_failure_raises():
    holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    holder.bind(("127.0.0.1", 0))
    holder.listen()
    try:
        server = ChatServer("127.0.0.1", holder.getsockname()[1])
        with pytest.raises(OSError):
            server.bind()
    finally:
        holder.close()
