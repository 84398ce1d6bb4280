"""
Client configuration and offline behaviour tests.

Run with: python -m pytest tests/unit_tests/test_client.py -v
"""

import logging

import pytest

from relaychat.client import client as client_module
from relaychat.client.client import ChatClient, ChatListener
from relaychat.common.protocol import DEFAULT_PORT, MessageType


logger = logging.getLogger(__name__)


class RecordingListener(ChatListener):
    def __init__(self):
        self.messages = []
        self.statuses = []

    def on_message_received(self, message):
        self.messages.append(message)

    def on_connection_status_changed(self, connected, status_text):
        self.statuses.append((connected, status_text))


@pytest.mark.parametrize("raw,expected", [
    ("9100", 9100),
    ("not-a-port", DEFAULT_PORT),
    ("", DEFAULT_PORT),
])
def test_env_port_falls_back_on_malformed_value(monkeypatch, raw, expected):
    monkeypatch.setenv("SERVER_PORT", raw)
    assert client_module._env_int("SERVER_PORT", DEFAULT_PORT) == expected


def test_env_port_missing_uses_default(monkeypatch):
    monkeypatch.delenv("SERVER_PORT", raising=False)
    assert client_module._env_int("SERVER_PORT", DEFAULT_PORT) == DEFAULT_PORT


def test_sends_are_noops_when_not_connected():
    listener = RecordingListener()
    client = ChatClient(listener)

    assert client.send_normal("hi") is False
    assert client.send_private("bob", "hi") is False
    assert client.send_file("QUJD", "a.txt") is False
    client.disconnect()

    assert listener.statuses == []


def test_invalid_username_is_rejected_locally():
    listener = RecordingListener()
    client = ChatClient(listener)

    assert client.connect("127.0.0.1", 1, "x") is False
    assert listener.statuses == [(False, "Invalid username format. Use 2-20 alphanumeric characters.")]


def test_malformed_private_command_reports_usage():
    listener = RecordingListener()
    client = ChatClient(listener)

    assert client.send_text("/msg bob") is False
    assert listener.messages[0].type is MessageType.SYSTEM
    assert listener.messages[0].content == "Invalid private message format. Use: /msg username message"
