"""STDIO transport for MCP communication.

Reads framed JSON-RPC messages from stdin and writes responses to stdout.
Logging goes to stderr to avoid corrupting the protocol stream.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any, BinaryIO, TextIO

from mcp_engine.errors import (
    INTERNAL_ERROR,
    JsonRpcError,
    MessageTooLarge,
    TransportException,
)
from mcp_engine.protocol.jsonrpc import extract_id, make_error
from mcp_engine.transport.base import MessageHandler, Transport
from mcp_engine.transport.framing import MessageFramer
from mcp_engine.transport.stream import StreamHandler

logger = logging.getLogger(__name__)

SHUTDOWN = "shutdown"
RELOAD = "reload"


def _signal_actions() -> dict[int, str]:
    actions = {signal.SIGTERM: SHUTDOWN, signal.SIGINT: SHUTDOWN}
    sighup = getattr(signal, "SIGHUP", None)
    if sighup is not None:
        actions[sighup] = RELOAD
    return actions


class StdioTransport(Transport):
    """Transport over the process's standard streams.

    ``listen()`` runs the serving loop: it polls stdin without blocking,
    hands each message to the bound handler and writes any response.
    End of file on stdin does not end the loop; only ``stop()`` or a
    termination signal does.
    """

    transport_type = "stdio"
    DRIVER_DEFAULTS: dict[str, Any] = {
        "buffer_size": 8192,
        "line_delimiter": "\n",
        "max_message_size": 1_048_576,
        "blocking_mode": False,
        "read_timeout": 0.1,
        "write_timeout": 5.0,
        "use_content_length": False,
        "idle_sleep": 0.001,
        "handle_signals": True,
    }

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        handler: MessageHandler | None = None,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        stderr: TextIO | None = None,
        on_reload: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            config: Transport configuration overrides.
            handler: Message handler to bind.
            stdin: Binary input stream (defaults to sys.stdin.buffer).
            stdout: Binary output stream (defaults to sys.stdout.buffer).
            stderr: Log stream (defaults to sys.stderr).
            on_reload: Called when SIGHUP is received.
        """
        self._stdin = stdin
        self._stdout = stdout
        self._stderr = stderr
        self._on_reload = on_reload
        self._input: StreamHandler | None = None
        self._output: StreamHandler | None = None
        self._framer = MessageFramer()
        self._inbox: deque[Any] = deque()
        self._previous_handlers: dict[int, Any] = {}
        self._eof_logged = False
        self._rescan = False
        super().__init__(config, handler)

    def _on_initialize(self) -> None:
        self._framer = MessageFramer(
            use_content_length=self._config["use_content_length"],
            max_message_size=self._config["max_message_size"],
            line_delimiter=self._config["line_delimiter"],
        )
        self._inbox.clear()

    def _stream_config(self) -> dict[str, Any]:
        read_timeout = None if self._config["blocking_mode"] else self._config["read_timeout"]
        return {
            "read_timeout": read_timeout,
            "write_timeout": self._config["write_timeout"],
            "buffer_size": self._config["buffer_size"],
            "max_buffer_size": self._config["max_message_size"],
            "retry_attempts": self._config["retry_attempts"],
            "retry_delay": self._config["retry_delay"],
        }

    @property
    def framer(self) -> MessageFramer:
        return self._framer

    # -- driver hooks ----------------------------------------------------------

    def _do_start(self) -> None:
        stream_config = self._stream_config()
        self._input = StreamHandler(self._stdin or sys.stdin.buffer, "r", stream_config)
        self._output = StreamHandler(self._stdout or sys.stdout.buffer, "w", stream_config)
        self._framer.reset()
        self._inbox.clear()
        self._eof_logged = False
        self._rescan = False
        if self._config["handle_signals"]:
            self._install_signal_handlers()

    def _do_stop(self) -> None:
        self._restore_signal_handlers()
        for stream in (self._input, self._output):
            if stream is not None:
                stream.close()

    def _do_send(self, message: Any) -> int:
        if self._output is None:
            raise TransportException("Output stream is not open", transport_type=self.transport_type)
        # Error replies are always written, even past max_message_size
        enforce_limit = not (isinstance(message, dict) and "error" in message)
        return self._output.write(self._framer.frame(message, enforce_limit=enforce_limit))

    def _do_receive(self) -> Any | None:
        if self._inbox:
            return self._inbox.popleft()
        if self._framer.overflow_pending:
            self._rescan = True
            self._framer.parse(b"")
        if self._input is None:
            return None

        chunk = self._input.read()
        if chunk is None and self._rescan:
            # Frames buffered behind an overflow
            chunk = b""
        self._rescan = False
        if chunk is None:
            if self._input.is_eof and not self._eof_logged:
                logger.debug("stdin reached EOF, waiting for more input")
                self._eof_logged = True
            return None

        self._eof_logged = False
        with self._lock:
            self._stats["bytes_received"] += len(chunk)
        self._inbox.extend(self._framer.parse(chunk))
        return self._inbox.popleft() if self._inbox else None

    def _driver_health_checks(self) -> dict[str, bool]:
        limit = self._config.get("max_message_size", 1_048_576) * 0.9
        return {
            "input_stream": self._input is not None and self._input.is_open,
            "output_stream": self._output is not None and self._output.is_open,
            "framer_buffer": self._framer.buffer_size < limit,
        }

    def stats(self) -> dict[str, Any]:
        snapshot = super().stats()
        snapshot["framer"] = self._framer.stats
        if self._input is not None:
            snapshot["input"] = self._input.stats
        if self._output is not None:
            snapshot["output"] = self._output.stats
        return snapshot

    # -- signals -----------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not in main thread, skipping signal handlers")
            return
        for signum in _signal_actions():
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous)
        self._previous_handlers.clear()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        action = _signal_actions().get(signum)
        if action == RELOAD:
            self.reload()
            return
        logger.info("Received signal %s, shutting down", signum)
        self.stop()
        sys.exit(0)

    def reload(self) -> None:
        """Handle a reload request. The transport keeps running."""
        logger.info("Reload requested")
        if self._on_reload is not None:
            self._on_reload()

    # -- serving loop --------------------------------------------------------------

    def listen(self, max_iterations: int | None = None) -> None:
        """Serve messages until stopped.

        Args:
            max_iterations: Stop after this many polls. Mostly for tests.

        Raises:
            TransportException: If no handler is bound or start fails.
        """
        if self._handler is None:
            raise TransportException("No message handler bound", transport_type=self.transport_type)
        self.start()

        iterations = 0
        while self._running:
            if max_iterations is not None and iterations >= max_iterations:
                break
            iterations += 1
            if not self.process_once():
                time.sleep(self._config["idle_sleep"])

    def process_once(self) -> bool:
        """Receive and handle at most one message.

        Returns:
            True if anything was processed or answered.
        """
        overflow = None
        try:
            message = self.receive()
        except MessageTooLarge as e:
            overflow, message = e, None
        except TransportException as e:
            logger.error("Receive failed: %s", e)
            return False

        answered = False
        for rejected in self._framer.drain_rejected():
            self._safe_send(rejected.error)
            answered = True
        if overflow is not None:
            self._safe_send(make_error(None, INTERNAL_ERROR, "Internal error", overflow.message))
            answered = True

        if message is None:
            return answered
        self._dispatch(message)
        return True

    def _dispatch(self, message: Any) -> None:
        try:
            response = self._handler.handle(message, self)
        except JsonRpcError as e:
            response = make_error(extract_id(message), e.code, e.message, e.data)
        except Exception as e:
            logger.exception("Handler failed while processing message")
            data = {"message": str(e)} if self._config["debug"] else None
            response = make_error(extract_id(message), INTERNAL_ERROR, "Internal error", data)

        if response:
            self._safe_send(response)

    def _safe_send(self, response: Any) -> None:
        try:
            self.send(response)
        except TransportException as e:
            logger.error("Failed to write response: %s", e)

    def run(self) -> int:
        """Serve until stopped.

        Returns:
            Exit code (0 for success, 1 for errors).
        """
        if self._handler is None:
            self.log("No message handler bound")
            return 1
        try:
            self.listen()
        except TransportException as e:
            self.log(f"Error: {e}")
            return 1
        finally:
            self.stop()
        return 0

    def log(self, message: str) -> None:
        """Write a log message to stderr.

        Args:
            message: Log message.
        """
        stream = self._stderr or sys.stderr
        stream.write(f"[MCP] {message}\n")
        stream.flush()
