"""
Control Channel Codec

Length-prefixed JSON frames exchanged with the web console front end over
stdin/stdout. A frame on the wire looks like:

    <N>\\n
    \\n<json>

where N counts every byte after the first newline: the (empty) control channel
id, its terminating newline and the JSON payload.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .errors import ProtocolError
from .logs import redact_secrets

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
# Longest accepted length prefix, not counting its newline
MAX_SIZE_DIGITS = 8

ERR_INVALID_SIZE = "invalid frame: invalid size"
ERR_TOO_SHORT = "invalid frame: too short"
ERR_INVALID_JSON = "invalid frame: invalid json"


class ByteReader:
    """Buffered reader on top of a ``read(size) -> bytes`` callable.

    An empty chunk from the callable means end of stream. Bytes read ahead of
    what the caller consumed stay in the buffer until ``take_buffered()``.
    """

    def __init__(self, read_chunk: Callable[[int], bytes], chunk_size: int = READ_CHUNK_SIZE):
        self._read_chunk = read_chunk
        self._chunk_size = chunk_size
        self._buffer = bytearray()
        self.eof = False

    def _fill(self) -> bool:
        if self.eof:
            return False
        chunk = self._read_chunk(self._chunk_size)
        if not chunk:
            self.eof = True
            return False
        self._buffer.extend(chunk)
        return True

    def readline(self, limit: Optional[int] = None) -> bytes:
        """Read through the next ``\\n``; returns what is left at end of stream.

        With a ``limit``, at most that many bytes are returned; a result of
        ``limit`` bytes without a trailing newline means the line is longer.
        """
        start = 0
        while True:
            index = self._buffer.find(b"\n", start)
            if index >= 0 and (limit is None or index < limit):
                return self._take(index + 1)
            if limit is not None and len(self._buffer) >= limit:
                return self._take(limit)
            start = len(self._buffer)
            if not self._fill():
                return self._take(len(self._buffer))

    def read(self, size: int) -> bytes:
        """Read ``size`` bytes; the result is shorter only at end of stream."""
        while len(self._buffer) < size and self._fill():
            pass
        return self._take(min(size, len(self._buffer)))

    def read_until_eof(self) -> bytes:
        while self._fill():
            pass
        return self._take(len(self._buffer))

    def take_buffered(self) -> bytes:
        """Hand over bytes that were read ahead but not consumed."""
        return self._take(len(self._buffer))

    def _take(self, size: int) -> bytes:
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data


# --- Frame variants ---


@dataclass(frozen=True)
class ChallengeFrame:
    """Server to client: asks the front end for credentials."""
    cookie: str
    challenge: str = "*"

    def to_dict(self) -> dict:
        return {"command": "authorize", "cookie": self.cookie, "challenge": self.challenge}


@dataclass(frozen=True)
class ResponseFrame:
    """Client to server: the answer to a challenge."""
    response: Optional[str]

    def to_dict(self) -> dict:
        return {"command": "authorize", "response": self.response}


@dataclass(frozen=True)
class InitFailureFrame:
    """Terminal frame: ends the session with a classified problem."""
    problem: str
    message: str
    auth_method_results: Optional[dict] = None

    def to_dict(self) -> dict:
        msg = {"command": "init", "problem": self.problem, "message": self.message}
        if self.auth_method_results is not None:
            msg["auth-method-results"] = dict(self.auth_method_results)
        return msg


ControlFrame = Union[ChallengeFrame, ResponseFrame, InitFailureFrame]


def parse_frame(msg: dict) -> ControlFrame:
    """Convert a decoded control message into its frame variant."""
    command = msg.get("command")
    if command == "authorize":
        if "challenge" in msg:
            return ChallengeFrame(cookie=str(msg.get("cookie", "")), challenge=msg["challenge"])
        return ResponseFrame(response=msg.get("response"))
    if command == "init" and "problem" in msg:
        return InitFailureFrame(
            problem=msg["problem"],
            message=msg.get("message", ""),
            auth_method_results=msg.get("auth-method-results"),
        )
    raise ProtocolError(f"unexpected control message: {command!r}")


# --- Wire codec ---


def encode_message(msg: dict) -> bytes:
    """Encode a control message as one length-prefixed frame."""
    payload = json.dumps(msg, separators=(",", ":")).encode("utf-8")
    return f"{len(payload) + 1}\n\n".encode("ascii") + payload


def decode_message(reader: ByteReader) -> dict:
    """Read and decode one control frame.

    Raises:
        ProtocolError: bad length prefix, truncated payload or bad JSON
    """
    line = reader.readline(limit=MAX_SIZE_DIGITS + 1)
    digits = line.strip()
    # A positive decimal without leading zeros
    if not digits.isdigit() or digits.startswith(b"0") or len(digits) > MAX_SIZE_DIGITS:
        raise ProtocolError(ERR_INVALID_SIZE)
    if not line.endswith(b"\n") and not reader.eof:
        raise ProtocolError(ERR_INVALID_SIZE)
    size = int(digits)

    data = reader.read(size)
    if len(data) < size:
        raise ProtocolError(ERR_TOO_SHORT)

    try:
        msg = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ProtocolError(ERR_INVALID_JSON) from None
    if not isinstance(msg, dict):
        raise ProtocolError(ERR_INVALID_JSON)
    return msg


def write_all(fd: int, data: bytes) -> None:
    """Write every byte of ``data`` to a blocking descriptor."""
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


class ControlChannel:
    """The control protocol on a pair of file descriptors (stdin/stdout)."""

    def __init__(self, in_fd: int, out_fd: int):
        self.in_fd = in_fd
        self.out_fd = out_fd
        self.reader = ByteReader(lambda size: os.read(in_fd, size))

    def send_message(self, msg: dict) -> None:
        logger.debug(f"Sending control message: {redact_secrets(msg)}")
        write_all(self.out_fd, encode_message(msg))

    def read_message(self) -> dict:
        msg = decode_message(self.reader)
        logger.debug(f"Received control message: {redact_secrets(msg)}")
        return msg

    def send(self, frame: ControlFrame) -> None:
        self.send_message(frame.to_dict())

    def read(self) -> ControlFrame:
        return parse_frame(self.read_message())

    def take_buffered(self) -> bytes:
        """Bytes the peer sent after the last frame read."""
        return self.reader.take_buffered()
