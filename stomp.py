# STOMP Frame Codec
# File: stomp.py

"""
STOMP 1.2 text framing for the dashboard's WebSocket stream.

    COMMAND
    header:value
    ...
    <blank line>
    body^@

A WebSocket message may carry several NUL-terminated frames, or a bare EOL
heart-beat. Header values are escaped except on CONNECT/CONNECTED frames.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from errors import StompProtocolError

logger = logging.getLogger(__name__)

NULL = "\x00"
EOL = "\n"

CLIENT_COMMANDS = {"CONNECT", "STOMP", "SEND", "SUBSCRIBE", "UNSUBSCRIBE",
                   "ACK", "NACK", "BEGIN", "COMMIT", "ABORT", "DISCONNECT"}
SERVER_COMMANDS = {"CONNECTED", "MESSAGE", "RECEIPT", "ERROR"}
UNESCAPED_COMMANDS = {"CONNECT", "CONNECTED"}

_ESCAPES = [("\\", "\\\\"), ("\r", "\\r"), ("\n", "\\n"), (":", "\\c")]
_UNESCAPES = {"\\": "\\", "r": "\r", "n": "\n", "c": ":"}


@dataclass
class Frame:
    command: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def destination(self) -> Optional[str]:
        return self.headers.get("destination")


def encode_frame(frame: Frame) -> str:
    """Serialize a frame, adding content-length when the body is non-empty"""
    escape = frame.command not in UNESCAPED_COMMANDS
    lines = [frame.command]
    headers = dict(frame.headers)
    if frame.body and "content-length" not in headers:
        headers["content-length"] = str(len(frame.body.encode("utf-8")))

    for key, value in headers.items():
        key, value = str(key), str(value)
        if escape:
            key, value = _escape(key), _escape(value)
        lines.append(f"{key}:{value}")

    return EOL.join(lines) + EOL + EOL + frame.body + NULL


def parse_frames(data) -> List[Frame]:
    """
    Split one WebSocket message into frames

    Args:
        data: str or utf-8 bytes as received from the socket; bytes that
            are not valid utf-8 survive as surrogate escapes so only the
            payload decoder rejects that frame

    Returns:
        Frames in order; heart-beats produce no frame

    Raises:
        StompProtocolError: malformed command line or header block
    """
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("utf-8", errors="surrogateescape")

    frames = []
    pos = 0
    while pos < len(data):
        # Heart-beats and padding between frames
        while pos < len(data) and data[pos] in "\r\n":
            pos += 1
        if pos >= len(data):
            break
        frame, pos = _parse_one(data, pos)
        frames.append(frame)
    return frames


def negotiate_heartbeat(client: Tuple[int, int], server_header: Optional[str]) -> Tuple[int, int]:
    """
    Work out heart-beat periods from the CONNECTED frame

    Args:
        client: (can_send_ms, want_receive_ms) the client offered
        server_header: server's heart-beat header value, e.g. "10000,10000"

    Returns:
        (send_every_ms, expect_every_ms); 0 disables that direction
    """
    if not server_header:
        return (0, 0)
    try:
        server_send, server_receive = (int(part) for part in server_header.split(","))
    except ValueError:
        raise StompProtocolError(f"Bad heart-beat header: {server_header!r}")

    client_send, client_receive = client
    outgoing = max(client_send, server_receive) if client_send and server_receive else 0
    incoming = max(client_receive, server_send) if client_receive and server_send else 0
    return (outgoing, incoming)


def _parse_one(data: str, start: int) -> Tuple[Frame, int]:
    head_end, sep_len = _find_header_end(data, start)
    if head_end < 0:
        raise StompProtocolError("Frame has no header terminator")

    head_lines = data[start:head_end].replace("\r\n", "\n").split("\n")
    command = head_lines[0].strip()
    if command not in CLIENT_COMMANDS | SERVER_COMMANDS:
        raise StompProtocolError(f"Unknown STOMP command: {command!r}")

    unescape = command not in UNESCAPED_COMMANDS
    headers = {}
    for line in head_lines[1:]:
        if not line:
            continue
        key, sep, value = line.partition(":")
        if not sep:
            raise StompProtocolError(f"Malformed header line: {line!r}")
        if unescape:
            key, value = _unescape(key), _unescape(value)
        # Repeated headers: the first occurrence wins
        headers.setdefault(key, value)

    body_start = head_end + sep_len
    length = headers.get("content-length")
    if length is not None:
        try:
            size = int(length)
        except ValueError:
            raise StompProtocolError(f"Bad content-length: {length!r}")
        raw = data[body_start:].encode("utf-8", errors="surrogateescape")
        if len(raw) < size + 1 or raw[size:size + 1] != b"\x00":
            raise StompProtocolError("Body shorter than content-length or not NUL-terminated")
        body = raw[:size].decode("utf-8", errors="surrogateescape")
        end = body_start + len(body)
    else:
        end = data.find(NULL, body_start)
        if end < 0:
            raise StompProtocolError("Frame is not NUL-terminated")
        body = data[body_start:end]

    return Frame(command=command, headers=headers, body=body), end + 1


def _find_header_end(data: str, start: int) -> Tuple[int, int]:
    lf = data.find("\n\n", start)
    crlf = data.find("\r\n\r\n", start)
    if crlf >= 0 and (lf < 0 or crlf < lf):
        return crlf, 4
    return lf, 2


def _escape(value: str) -> str:
    for raw, escaped in _ESCAPES:
        value = value.replace(raw, escaped)
    return value


def _unescape(value: str) -> str:
    if "\\" not in value:
        return value
    out = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt not in _UNESCAPES:
            raise StompProtocolError(f"Undefined escape sequence in header: \\{nxt}")
        out.append(_UNESCAPES[nxt])
    return "".join(out)
