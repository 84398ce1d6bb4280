"""
Wire protocol for RelayChat.

Every chat message travels as one line of six pipe-separated fields:

    TYPE|SENDER|TIMESTAMP|CONTENT|RECIPIENT|ATTACHMENT

TIMESTAMP is HH:MM:SS and only meant for display. RECIPIENT and ATTACHMENT
are optional trailing fields and decode to empty strings when missing.
Pipes and line breaks inside CONTENT are replaced by escape tokens so that a
message always occupies exactly one line.

Before any message is exchanged the server runs a short username handshake:

    server -> ENTER_USERNAME
    client -> <username>
    server -> SUCCESS|<welcome text>   or   ERROR|<reason>
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple
import re


DEFAULT_PORT = 8888
DEFAULT_HOST = "localhost"

DELIMITER = "|"
FIELD_COUNT = 6
MIN_FIELD_COUNT = 4
TIMESTAMP_FORMAT = "%H:%M:%S"

# Content escape tokens. "<!" itself is escaped so literal tokens in content
# survive a round trip; a pipe still travels as <!PIPE!>.
CONTENT_ESCAPES = {
    "<!": "<!LT!>",
    "|": "<!PIPE!>",
    "\n": "<!NL!>",
    "\r": "<!CR!>",
}
CONTENT_UNESCAPES = {token: raw for raw, token in CONTENT_ESCAPES.items()}

_ESCAPE_RE = re.compile("|".join(re.escape(raw) for raw in CONTENT_ESCAPES))
_UNESCAPE_RE = re.compile("|".join(re.escape(token) for token in CONTENT_UNESCAPES))

# Handshake lines
ENTER_USERNAME = "ENTER_USERNAME"
AUTH_SUCCESS = "SUCCESS"
AUTH_ERROR = "ERROR"

SYSTEM_SENDER = "System"
PRIVATE_MSG_PREFIX = "/msg"

USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_]{2,20}")


class MessageType(Enum):
    """Message types in the RelayChat protocol."""

    NORMAL = "NORMAL"
    PRIVATE = "PRIVATE"
    SYSTEM = "SYSTEM"
    JOIN = "JOIN"
    LEAVE = "LEAVE"
    USER_LIST = "USER_LIST"
    IMAGE = "IMAGE"
    FILE = "FILE"
    VOICE = "VOICE"

    def __str__(self) -> str:
        return self.value


class DecodeError(ValueError):
    """Raised when a wire line cannot be turned into a Message."""


@dataclass(frozen=True)
class Message:
    """
    A routable chat message.

    Fields:
        type: MessageType enum value
        sender: Username of the sender ("System" for server notices)
        content: Text, or base64 data for IMAGE/FILE/VOICE
        recipient: Target username for direct routing, "" for broadcast
        attachment_name: File or image name, or "<n>s" duration for VOICE
        timestamp: Construction time, display only
    """

    type: MessageType
    sender: str
    content: str
    recipient: str = ""
    attachment_name: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if not isinstance(self.type, MessageType):
            raise TypeError(f"type must be MessageType, got {type(self.type).__name__}")
        if not self.sender:
            raise ValueError("Message sender must not be empty")

    @property
    def formatted_timestamp(self) -> str:
        return self.timestamp.strftime(TIMESTAMP_FORMAT)

    def __str__(self) -> str:
        return f"[{self.formatted_timestamp}] {self.sender}: {self.content}"


def system_message(content: str, message_type: MessageType = MessageType.SYSTEM) -> Message:
    """Build a server-originated message."""
    return Message(type=message_type, sender=SYSTEM_SENDER, content=content)


def escape_content(content: str) -> str:
    return _ESCAPE_RE.sub(lambda m: CONTENT_ESCAPES[m.group(0)], content)


def unescape_content(content: str) -> str:
    """Reverse escape_content in a single pass; unknown "<!" sequences are kept."""
    return _UNESCAPE_RE.sub(lambda m: CONTENT_UNESCAPES[m.group(0)], content)


def encode_message(msg: Message) -> str:
    """
    Encode a Message into its wire line (without the trailing newline).

    Args:
        msg: Message to encode

    Returns:
        str: TYPE|SENDER|TIMESTAMP|CONTENT|RECIPIENT|ATTACHMENT

    Raises:
        ValueError: If sender, recipient or attachment name contain the delimiter

    Example:
        >>> encode_message(Message(MessageType.NORMAL, "alice", "a|b"))[:12]
        'NORMAL|alice'
    """
    for name in ("sender", "recipient", "attachment_name"):
        value = getattr(msg, name)
        if DELIMITER in value or "\n" in value:
            raise ValueError(f"Field '{name}' may not contain delimiter or newline: {value!r}")

    return DELIMITER.join(
        (
            msg.type.value,
            msg.sender,
            msg.formatted_timestamp,
            escape_content(msg.content),
            msg.recipient,
            msg.attachment_name,
        )
    )


def _parse_timestamp(raw: str) -> datetime:
    try:
        parsed = datetime.strptime(raw, TIMESTAMP_FORMAT).time()
    except ValueError:
        return datetime.now()
    return datetime.combine(datetime.now().date(), parsed)


def decode_message(line: str) -> Message:
    """
    Decode one wire line into a Message.

    A trailing line terminator is ignored. RECIPIENT and ATTACHMENT are
    optional; everything after the fifth delimiter belongs to ATTACHMENT.

    Args:
        line: Raw line received from the peer

    Returns:
        Message: The decoded message

    Raises:
        DecodeError: On fewer than 4 fields, an unknown type or an empty sender
    """
    if not isinstance(line, str):
        raise DecodeError(f"line must be string, got {type(line).__name__}")

    parts = line.rstrip("\r\n").split(DELIMITER, FIELD_COUNT - 1)
    if len(parts) < MIN_FIELD_COUNT:
        raise DecodeError(f"Expected at least {MIN_FIELD_COUNT} fields, got {len(parts)}")

    try:
        msg_type = MessageType(parts[0])
    except ValueError:
        raise DecodeError(f"Unknown message type: {parts[0]!r}")

    sender = parts[1]
    if not sender:
        raise DecodeError("Message sender is empty")

    return Message(
        type=msg_type,
        sender=sender,
        content=unescape_content(parts[3]),
        recipient=parts[4] if len(parts) > 4 else "",
        attachment_name=parts[5] if len(parts) > 5 else "",
        timestamp=_parse_timestamp(parts[2]),
    )


def is_valid_username(username: Optional[str]) -> bool:
    """Usernames are 2-20 ASCII letters, digits or underscores."""
    if not username:
        return False
    return USERNAME_PATTERN.fullmatch(username) is not None


def success_line(text: str) -> str:
    return f"{AUTH_SUCCESS}{DELIMITER}{text}"


def error_line(text: str) -> str:
    return f"{AUTH_ERROR}{DELIMITER}{text}"


def parse_auth_response(line: str) -> Tuple[bool, str]:
    """
    Interpret the server's answer to a proposed username.

    Returns:
        Tuple of (accepted, text). Anything other than a SUCCESS or ERROR
        line counts as a rejection with a protocol error text.
    """
    status, _, text = line.rstrip("\r\n").partition(DELIMITER)
    if status == AUTH_SUCCESS:
        return True, text
    if status == AUTH_ERROR:
        return False, text or "Authentication failed"
    return False, "Authentication protocol error"


def is_private_command(text: Optional[str]) -> bool:
    return text is not None and text.strip().startswith(PRIVATE_MSG_PREFIX)


def parse_private_command(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Split a "/msg <user> <text>" command.

    Returns:
        (recipient, text), or None if this is not a well-formed /msg command

    Example:
        >>> parse_private_command("/msg bob see you at 5")
        ('bob', 'see you at 5')
    """
    if text is None:
        return None
    parts = text.strip().split(None, 2)
    if not parts or parts[0] != PRIVATE_MSG_PREFIX or len(parts) < 3:
        return None
    return parts[1], parts[2]
