r"""STOMP 1.2 text frames and the JSON chat payload they carry.

A frame on the wire looks like::

    SEND
    destination:/app/sendMessage
    content-type:application/json
    content-length:33

    {"sender":"alice","content":"hi"}\0

Header values are escaped (``\\``, ``\n``, ``\r``, ``\c``) in every
frame except ``CONNECT`` and ``CONNECTED``.  A WebSocket message may carry
several frames and bare EOLs (heart-beats) between them.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from groupchat.chat_models import ChatMessage
from groupchat.errors import MessageDecodeError, StompProtocolError

STOMP_VERSION = "1.2"
JSON_CONTENT_TYPE = "application/json"

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r", ":": "\\c"}
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r", "c": ":"}


class StompCommand(str, Enum):
    """Client and server frame commands."""
    CONNECT = "CONNECT"
    STOMP = "STOMP"
    CONNECTED = "CONNECTED"
    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"
    SEND = "SEND"
    MESSAGE = "MESSAGE"
    RECEIPT = "RECEIPT"
    ERROR = "ERROR"
    DISCONNECT = "DISCONNECT"


_RAW_HEADER_COMMANDS = (StompCommand.CONNECT, StompCommand.CONNECTED)


def _escape(value: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def _unescape(value: str) -> str:
    out = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt not in _UNESCAPES:
            raise StompProtocolError(f"Invalid header escape sequence: \\{nxt or ''}")
        out.append(_UNESCAPES[nxt])
    return "".join(out)


def _read_line(text: str, pos: int) -> Tuple[str, int]:
    end = text.find("\n", pos)
    if end == -1:
        raise StompProtocolError("Unterminated frame header")
    line = text[pos:end]
    if line.endswith("\r"):
        line = line[:-1]
    return line, end + 1


def _skip_eols(text: str, pos: int) -> int:
    while pos < len(text):
        if text.startswith("\r\n", pos):
            pos += 2
        elif text[pos] == "\n":
            pos += 1
        else:
            break
    return pos


@dataclass
class StompFrame:
    """A single STOMP frame."""
    command: StompCommand
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name, default)

    def encode(self) -> str:
        """Render the frame as wire text, NUL terminated."""
        raw = self.command in _RAW_HEADER_COMMANDS
        headers = dict(self.headers)
        if self.body and "content-length" not in headers:
            headers["content-length"] = str(len(self.body.encode("utf-8")))

        lines = [self.command.value]
        for name, value in headers.items():
            if raw:
                lines.append(f"{name}:{value}")
            else:
                lines.append(f"{_escape(name)}:{_escape(str(value))}")
        return "\n".join(lines) + "\n\n" + self.body + "\0"

    @classmethod
    def parse(cls, text: str) -> "StompFrame":
        """Parse exactly one frame (surrounding heart-beat EOLs allowed)."""
        frames = parse_frames(text)
        if len(frames) != 1:
            raise StompProtocolError(f"Expected one frame, got {len(frames)}")
        return frames[0]


def _parse_one(text: str, pos: int) -> Tuple[StompFrame, int]:
    line, pos = _read_line(text, pos)
    try:
        command = StompCommand(line)
    except ValueError:
        raise StompProtocolError(f"Unknown STOMP command: {line!r}")

    raw = command in _RAW_HEADER_COMMANDS
    headers: Dict[str, str] = {}
    while True:
        line, pos = _read_line(text, pos)
        if not line:
            break
        name, sep, value = line.partition(":")
        if not sep:
            raise StompProtocolError(f"Malformed header line: {line!r}")
        if not raw:
            name, value = _unescape(name), _unescape(value)
        # Repeated headers: the first occurrence wins
        headers.setdefault(name, value)

    length = headers.get("content-length")
    if length is not None:
        try:
            size = int(length)
        except ValueError:
            raise StompProtocolError(f"Invalid content-length: {length!r}")
        encoded = text[pos:].encode("utf-8")
        if len(encoded) < size + 1 or encoded[size:size + 1] != b"\0":
            raise StompProtocolError("Frame body does not match content-length")
        try:
            body = encoded[:size].decode("utf-8")
        except UnicodeDecodeError:
            raise StompProtocolError("content-length splits a UTF-8 character")
        pos += len(body) + 1
    else:
        nul = text.find("\0", pos)
        if nul == -1:
            raise StompProtocolError("Frame is not NUL terminated")
        body = text[pos:nul]
        pos = nul + 1

    return StompFrame(command=command, headers=headers, body=body), pos


def parse_frames(text: str) -> List[StompFrame]:
    """Parse every frame in a WebSocket text message, skipping heart-beats."""
    frames = []
    pos = _skip_eols(text, 0)
    while pos < len(text):
        frame, pos = _parse_one(text, pos)
        frames.append(frame)
        pos = _skip_eols(text, pos)
    return frames


# ── Frame builders ──────────────────────────────────────────────────


def connect_frame(host: str, heart_beat: str = "0,0") -> StompFrame:
    return StompFrame(StompCommand.CONNECT, {
        "accept-version": STOMP_VERSION,
        "host": host,
        "heart-beat": heart_beat,
    })


def connected_frame(session: str, server: str = "groupchat") -> StompFrame:
    return StompFrame(StompCommand.CONNECTED, {
        "version": STOMP_VERSION,
        "session": session,
        "server": server,
        "heart-beat": "0,0",
    })


def subscribe_frame(subscription_id: str, destination: str) -> StompFrame:
    return StompFrame(StompCommand.SUBSCRIBE, {
        "id": subscription_id,
        "destination": destination,
        "ack": "auto",
    })


def unsubscribe_frame(subscription_id: str) -> StompFrame:
    return StompFrame(StompCommand.UNSUBSCRIBE, {"id": subscription_id})


def send_frame(destination: str, body: str) -> StompFrame:
    return StompFrame(StompCommand.SEND, {
        "destination": destination,
        "content-type": JSON_CONTENT_TYPE,
    }, body)


def message_frame(subscription_id: str, message_id: str, destination: str, body: str) -> StompFrame:
    return StompFrame(StompCommand.MESSAGE, {
        "subscription": subscription_id,
        "message-id": message_id,
        "destination": destination,
        "content-type": JSON_CONTENT_TYPE,
    }, body)


def error_frame(message: str, detail: str = "") -> StompFrame:
    return StompFrame(StompCommand.ERROR, {"message": message, "content-type": "text/plain"}, detail)


def disconnect_frame(receipt: Optional[str] = None) -> StompFrame:
    return StompFrame(StompCommand.DISCONNECT, {"receipt": receipt} if receipt else {})


# ── Chat payload ────────────────────────────────────────────────────


def encode_message(message: ChatMessage) -> str:
    """Serialize a chat message to its JSON wire form."""
    return message.model_dump_json()


def decode_message(payload: str) -> ChatMessage:
    """Deserialize a JSON payload into a chat message.

    Raises:
        MessageDecodeError: If the payload is not a JSON object with
            string ``sender`` and ``content`` fields.
    """
    try:
        return ChatMessage.model_validate_json(payload)
    except ValidationError as e:
        raise MessageDecodeError(f"Invalid chat payload: {e.error_count()} error(s)") from e
