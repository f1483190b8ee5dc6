"""Message framing for byte-stream transports.

Two framings are supported:

* newline-delimited JSON, one message per line (the default), and
* ``Content-Length`` headers followed by a JSON body, as used by LSP-style
  clients.

The framer keeps an accumulation buffer, so ``parse`` can be fed arbitrary
chunks and returns every complete message found so far.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from mcp_engine.errors import JsonRpcError, MessageTooLarge
from mcp_engine.protocol.jsonrpc import (
    INVALID_REQUEST,
    JSONRPC_VERSION,
    decode,
    encode,
    extract_id,
    make_error,
    validate_envelope,
)

logger = logging.getLogger(__name__)

HEADER_TERMINATOR = b"\r\n\r\n"
_CONTENT_LENGTH = re.compile(rb"^content-length:\s*(\d+)\s*$", re.IGNORECASE | re.MULTILINE)


@dataclass
class RejectedFrame:
    """A complete frame whose body could not be accepted."""

    raw: bytes
    error: dict[str, Any]


class MessageFramer:
    """Converts between JSON-RPC messages and framed bytes."""

    def __init__(
        self,
        use_content_length: bool = False,
        max_message_size: int = 1_048_576,
        line_delimiter: str | bytes = b"\n",
    ) -> None:
        """Initialize the framer.

        Args:
            use_content_length: Use Content-Length framing instead of lines.
            max_message_size: Largest accepted message body in bytes.
            line_delimiter: Delimiter for line framing.
        """
        if isinstance(line_delimiter, str):
            line_delimiter = line_delimiter.encode("utf-8")
        self.use_content_length = use_content_length
        self.max_message_size = max_message_size
        self.line_delimiter = line_delimiter
        self._buffer = bytearray()
        self._rejected: list[RejectedFrame] = []
        self._overflow: MessageTooLarge | None = None
        self._stats = {
            "messages_framed": 0,
            "messages_parsed": 0,
            "parse_errors": 0,
            "protocol_errors": 0,
            "buffer_overflows": 0,
        }

    def frame(self, message: dict[str, Any] | list[Any], enforce_limit: bool = True) -> bytes:
        """Serialize one message (or batch) into a frame.

        Args:
            message: Message dictionary, or a list of them.
            enforce_limit: Apply max_message_size to the body. Error
                replies generated by a transport are framed without it.

        Returns:
            Framed bytes ready to write.

        Raises:
            InvalidRequest: If a message envelope is malformed.
            MessageTooLarge: If the body exceeds max_message_size.
        """
        if isinstance(message, list):
            message = [self._prepare(item) for item in message]
        else:
            message = self._prepare(message)

        body = encode(message)
        if enforce_limit and len(body) > self.max_message_size:
            raise MessageTooLarge(
                f"Message of {len(body)} bytes exceeds {self.max_message_size} limit"
            )

        self._stats["messages_framed"] += 1
        if self.use_content_length:
            header = (
                f"Content-Length: {len(body)}\r\n"
                "Content-Type: application/json\r\n\r\n"
            ).encode("ascii")
            return header + body
        return body + self.line_delimiter

    @staticmethod
    def _prepare(message: dict[str, Any]) -> dict[str, Any]:
        if isinstance(message, dict) and "jsonrpc" not in message:
            message = {"jsonrpc": JSONRPC_VERSION, **message}
        return validate_envelope(message)

    def parse(self, chunk: bytes | str) -> list[Any]:
        """Append a chunk and extract every complete message.

        Frames with invalid JSON or an invalid envelope are skipped and
        recorded; fetch them with ``drain_rejected()``. Batch arrays are
        returned as a single list item.

        Extraction stops at an oversized frame. Messages completed before
        it are returned and the overflow is raised by the next call, which
        keeps its chunk buffered. ``parse(b"")`` raises a pending overflow
        or picks up frames left behind by one.

        Args:
            chunk: Newly received bytes.

        Returns:
            Messages completed by this chunk, in arrival order.

        Raises:
            MessageTooLarge: If a frame exceeds max_message_size or the
                buffer grows past it without a frame boundary.
        """
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer.extend(chunk)
        self._raise_overflow()

        if self.use_content_length:
            bodies = self._extract_content_length_frames()
        else:
            bodies = self._extract_lines()

        messages = []
        for body in bodies:
            message = self._decode_body(body)
            if message is not None:
                messages.append(message)
        if not messages:
            self._raise_overflow()
        return messages

    @property
    def overflow_pending(self) -> bool:
        """True when an overflow is waiting to be raised by ``parse``."""
        return self._overflow is not None

    def _raise_overflow(self) -> None:
        if self._overflow is not None:
            error, self._overflow = self._overflow, None
            raise error

    def _overflowed(self, message: str, clear: bool = True) -> None:
        if clear:
            self._buffer.clear()
        self._stats["buffer_overflows"] += 1
        self._overflow = MessageTooLarge(message)

    def _extract_lines(self) -> list[bytes]:
        bodies = []
        while True:
            index = self._buffer.find(self.line_delimiter)
            if index < 0:
                if len(self._buffer) > self.max_message_size:
                    self._overflowed(
                        f"Buffered {len(self._buffer)} bytes without a complete frame "
                        f"(limit {self.max_message_size})"
                    )
                break
            line = bytes(self._buffer[:index]).strip()
            del self._buffer[: index + len(self.line_delimiter)]
            if not line:
                continue
            if len(line) > self.max_message_size:
                # Later lines stay buffered for the next call
                self._overflowed(
                    f"Message of {len(line)} bytes exceeds {self.max_message_size} limit",
                    clear=False,
                )
                break
            bodies.append(line)
        return bodies

    def _extract_content_length_frames(self) -> list[bytes]:
        bodies = []
        while True:
            # Tolerate blank lines between frames
            while self._buffer[:2] == b"\r\n" or self._buffer[:1] == b"\n":
                del self._buffer[: 2 if self._buffer[:2] == b"\r\n" else 1]

            header_end = self._buffer.find(HEADER_TERMINATOR)
            if header_end < 0:
                if len(self._buffer) > self.max_message_size:
                    self._overflowed(
                        f"Buffered {len(self._buffer)} bytes without a complete frame "
                        f"(limit {self.max_message_size})"
                    )
                break

            headers = bytes(self._buffer[:header_end])
            match = _CONTENT_LENGTH.search(headers)
            if match is None:
                del self._buffer[: header_end + len(HEADER_TERMINATOR)]
                self._stats["protocol_errors"] += 1
                logger.warning("Discarding frame without Content-Length header")
                continue

            length = int(match.group(1))
            if length > self.max_message_size:
                self._overflowed(
                    f"Declared Content-Length {length} exceeds {self.max_message_size} limit"
                )
                break

            body_start = header_end + len(HEADER_TERMINATOR)
            if len(self._buffer) - body_start < length:
                break

            bodies.append(bytes(self._buffer[body_start : body_start + length]))
            del self._buffer[: body_start + length]
        return bodies

    def _decode_body(self, body: bytes) -> Any | None:
        try:
            message = decode(body)
        except JsonRpcError as e:
            self._reject(body, make_error(None, e.code, "Parse error", str(e)))
            self._stats["parse_errors"] += 1
            return None

        if isinstance(message, list):
            # Batches are validated item by item downstream
            if not message:
                error = make_error(None, INVALID_REQUEST, "Invalid Request", "Empty batch")
                self._reject(body, error)
                self._stats["protocol_errors"] += 1
                return None
            self._stats["messages_parsed"] += 1
            return message

        try:
            validate_envelope(message)
        except JsonRpcError as e:
            self._reject(body, make_error(extract_id(message), e.code, "Invalid Request", e.message))
            self._stats["protocol_errors"] += 1
            return None

        self._stats["messages_parsed"] += 1
        return message

    def _reject(self, raw: bytes, error: dict[str, Any]) -> None:
        logger.debug("Rejected frame: %s", error["error"].get("data"))
        self._rejected.append(RejectedFrame(raw=raw, error=error))

    def drain_rejected(self) -> list[RejectedFrame]:
        """Return and forget the frames rejected since the last call."""
        rejected, self._rejected = self._rejected, []
        return rejected

    def reset(self) -> None:
        """Discard buffered bytes and rejected frames."""
        self._buffer.clear()
        self._rejected.clear()
        self._overflow = None

    @property
    def buffer_size(self) -> int:
        """Number of bytes waiting for a frame boundary."""
        return len(self._buffer)

    @property
    def stats(self) -> dict[str, int]:
        """Copy of the framing counters."""
        return {**self._stats, "buffer_size": len(self._buffer)}
