"""Byte-stream I/O with bounded waits and write retries.

A StreamHandler wraps one binary stream (stdin, stdout, a pipe or an
in-memory buffer) and never blocks longer than its configured timeouts.
"""

from __future__ import annotations

import io
import logging
import os
import select
import time
from typing import Any, BinaryIO

from mcp_engine.config import deep_merge
from mcp_engine.errors import BufferOverflow, TransportException, WriteFailure

logger = logging.getLogger(__name__)

DEFAULT_STREAM_CONFIG: dict[str, Any] = {
    "read_timeout": 0.1,
    "write_timeout": 5.0,
    "buffer_size": 8192,
    "max_buffer_size": 1_048_576,
    "retry_attempts": 3,
    "retry_delay": 0.1,
}


class StreamHandler:
    """Timeout-bounded reader or writer over a binary stream.

    Streams without a usable file descriptor (such as ``io.BytesIO``) are
    treated as always ready, so they can stand in for pipes in tests.
    """

    def __init__(
        self,
        stream: BinaryIO,
        mode: str = "r",
        config: dict[str, Any] | None = None,
        close_stream: bool = False,
    ) -> None:
        """Initialize the handler.

        Args:
            stream: Binary stream to wrap.
            mode: "r" for reading or "w" for writing.
            config: Overrides for DEFAULT_STREAM_CONFIG.
            close_stream: Close the underlying stream on close().

        Raises:
            ValueError: If mode is not "r" or "w".
        """
        if mode not in ("r", "w"):
            raise ValueError(f"Unsupported stream mode: {mode}")

        self._stream = stream
        self._mode = mode
        self._config = deep_merge(DEFAULT_STREAM_CONFIG, config)
        self._close_stream = close_stream
        self._fd = self._resolve_fileno(stream)
        self._line_buffer = bytearray()
        self._open = True
        self._eof = False
        self._stats = {
            "bytes_read": 0,
            "bytes_written": 0,
            "read_operations": 0,
            "write_operations": 0,
            "errors": 0,
            "timeouts": 0,
        }

    @staticmethod
    def _resolve_fileno(stream: Any) -> int | None:
        try:
            return stream.fileno()
        except (AttributeError, OSError, ValueError, io.UnsupportedOperation):
            return None

    @property
    def mode(self) -> str:
        """Stream direction, "r" or "w"."""
        return self._mode

    @property
    def is_open(self) -> bool:
        """Whether the handler accepts I/O."""
        return self._open

    @property
    def is_eof(self) -> bool:
        """Whether the last read hit end of stream."""
        return self._eof

    @property
    def buffered(self) -> int:
        """Number of bytes held in the line buffer."""
        return len(self._line_buffer)

    def open(self) -> None:
        """Reopen the handler after close()."""
        self._open = True

    def close(self) -> None:
        """Stop accepting I/O and optionally close the stream."""
        if not self._open:
            return
        self._open = False
        self._line_buffer.clear()
        if self._close_stream:
            try:
                self._stream.close()
            except OSError as e:
                logger.warning("Error closing stream: %s", e)

    def _ensure(self, mode: str) -> None:
        if not self._open:
            raise TransportException("Stream is closed", transport_type="stream")
        if self._mode != mode:
            op = "read from" if mode == "r" else "write to"
            raise TransportException(f"Cannot {op} a stream opened in mode '{self._mode}'")

    def wait_for_readable(self, timeout: float | None = None) -> bool:
        """Wait until the stream has data or the timeout expires.

        Args:
            timeout: Seconds to wait, defaults to read_timeout.

        Returns:
            True if a read will not block.
        """
        if self._fd is None:
            return True
        if timeout is None:
            timeout = self._config["read_timeout"]
        try:
            readable, _, _ = select.select([self._fd], [], [], timeout)
        except (OSError, ValueError) as e:
            self._stats["errors"] += 1
            logger.debug("select() on fd %s failed: %s", self._fd, e)
            return False
        return bool(readable)

    def wait_for_writable(self, timeout: float | None = None) -> bool:
        """Wait until the stream accepts data or the timeout expires."""
        if self._fd is None:
            return True
        if timeout is None:
            timeout = self._config["write_timeout"]
        try:
            _, writable, _ = select.select([], [self._fd], [], timeout)
        except (OSError, ValueError) as e:
            self._stats["errors"] += 1
            logger.debug("select() on fd %s failed: %s", self._fd, e)
            return False
        return bool(writable)

    def read(self, max_bytes: int | None = None) -> bytes | None:
        """Read whatever is available, waiting at most read_timeout.

        Args:
            max_bytes: Upper bound on bytes returned, defaults to buffer_size.

        Returns:
            Bytes read, or None on timeout or end of stream.

        Raises:
            TransportException: If the stream is closed, not readable or fails.
        """
        self._ensure("r")
        size = max_bytes or self._config["buffer_size"]

        if not self.wait_for_readable():
            self._stats["timeouts"] += 1
            return None

        try:
            if self._fd is not None:
                data = os.read(self._fd, size)
            elif hasattr(self._stream, "read1"):
                data = self._stream.read1(size)
            else:
                data = self._stream.read(size)
        except BlockingIOError:
            return None
        except (OSError, ValueError) as e:
            self._stats["errors"] += 1
            raise TransportException(f"Read failed: {e}", transport_type="stream", cause=e) from e

        self._stats["read_operations"] += 1
        if not data:
            self._eof = True
            return None

        self._eof = False
        self._stats["bytes_read"] += len(data)
        return data

    def read_line(self, delimiter: bytes = b"\n") -> bytes | None:
        """Read one delimited line.

        Partial lines stay buffered across calls. A trailing partial line is
        returned once the stream reaches end of file.

        Returns:
            Line without its delimiter, or None if no full line is available.

        Raises:
            BufferOverflow: If the buffered line exceeds max_buffer_size.
        """
        while True:
            index = self._line_buffer.find(delimiter)
            if index >= 0:
                line = bytes(self._line_buffer[:index])
                del self._line_buffer[: index + len(delimiter)]
                return line

            chunk = self.read()
            if chunk is None:
                if self._eof and self._line_buffer:
                    line = bytes(self._line_buffer)
                    self._line_buffer.clear()
                    return line
                return None

            self._line_buffer.extend(chunk)
            if len(self._line_buffer) > self._config["max_buffer_size"]:
                size = len(self._line_buffer)
                self._line_buffer.clear()
                self._stats["errors"] += 1
                raise BufferOverflow(
                    f"Line buffer of {size} bytes exceeds {self._config['max_buffer_size']} limit",
                    transport_type="stream",
                )

    def write(self, data: bytes | str) -> int:
        """Write all of ``data``, retrying on failure.

        Each failed or partial attempt sleeps ``retry_delay * attempt``
        seconds before the next one.

        Returns:
            Number of bytes written.

        Raises:
            WriteFailure: If data remains unwritten after retry_attempts.
        """
        self._ensure("w")
        if isinstance(data, str):
            data = data.encode("utf-8")

        remaining = memoryview(data)
        written = 0
        attempts = max(1, int(self._config["retry_attempts"]))
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            try:
                if not self.wait_for_writable():
                    self._stats["timeouts"] += 1
                    raise TimeoutError("Stream not writable before write_timeout")
                count = self._stream.write(remaining)
                if count is None:
                    count = len(remaining)
                written += count
                remaining = remaining[count:]
                if not remaining:
                    self._stream.flush()
                    self._stats["write_operations"] += 1
                    self._stats["bytes_written"] += written
                    return written
            except (OSError, ValueError) as e:
                last_error = e
                self._stats["errors"] += 1
                logger.debug("Write attempt %d/%d failed: %s", attempt, attempts, e)

            if attempt < attempts:
                time.sleep(self._config["retry_delay"] * attempt)

        self._stats["bytes_written"] += written
        raise WriteFailure(
            f"Write failed after {attempts} attempts ({len(remaining)} bytes unwritten)",
            transport_type="stream",
            cause=last_error,
        )

    def write_line(self, data: bytes | str, delimiter: bytes = b"\n") -> int:
        """Write ``data`` followed by the delimiter."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return self.write(data + delimiter)

    @property
    def stats(self) -> dict[str, int]:
        """Copy of the I/O counters."""
        return dict(self._stats)

    def health_check(self) -> dict[str, Any]:
        """Report whether the stream is usable.

        Returns:
            Dictionary with healthy flag and per-check results.
        """
        checks = {
            "open": self._open,
            "buffer_within_limit": len(self._line_buffer) <= self._config["max_buffer_size"],
        }
        return {
            "healthy": all(checks.values()),
            "mode": self._mode,
            "eof": self._eof,
            "checks": checks,
            "stats": self.stats,
        }
