"""Tests for StdioTransport."""

from __future__ import annotations

import io
import json

import pytest

from mcp_engine.errors import INTERNAL_ERROR, PARSE_ERROR, TransportException
from mcp_engine.protocol.processor import MessageProcessor
from mcp_engine.transport.stdio import StdioTransport
from tests.doubles import RecordingHandler

QUIET = {"handle_signals": False, "idle_sleep": 0}


def make_transport(data: bytes, handler=None, **config) -> tuple[StdioTransport, io.BytesIO, io.StringIO]:
    stdout = io.BytesIO()
    stderr = io.StringIO()
    transport = StdioTransport(
        config={**QUIET, **config},
        handler=handler,
        stdin=io.BytesIO(data),
        stdout=stdout,
        stderr=stderr,
    )
    return transport, stdout, stderr


def written(stdout: io.BytesIO) -> list[dict]:
    return [json.loads(line) for line in stdout.getvalue().splitlines() if line]


class TestStdioConfig:
    """Tests for driver defaults."""

    def test_defaults(self):
        """Driver defaults are merged over the base defaults."""
        transport = StdioTransport(config={})
        assert transport.config["line_delimiter"] == "\n"
        assert transport.config["max_message_size"] == 1_048_576
        assert transport.config["use_content_length"] is False
        assert transport.config["timeout"] == 30

    def test_framer_follows_config(self):
        """The framer is rebuilt from the effective configuration."""
        transport = StdioTransport(config={"use_content_length": True, "max_message_size": 512})
        assert transport.framer.use_content_length is True
        assert transport.framer.max_message_size == 512


class TestProcessOnce:
    """Tests for single-message processing."""

    def test_ping_round_trip(self):
        """A ping request is answered with an empty result."""
        processor = MessageProcessor()
        transport, stdout, _ = make_transport(
            b'{"jsonrpc":"2.0","method":"ping","id":1}\n', handler=processor
        )
        transport.start()
        assert transport.process_once() is True

        assert stdout.getvalue().endswith(b"\n")
        assert written(stdout) == [{"jsonrpc": "2.0", "result": {}, "id": 1}]

    def test_multiple_messages_in_one_chunk(self):
        """Every message in a chunk is handled, one per call."""
        handler = RecordingHandler()
        data = (
            b'{"jsonrpc":"2.0","method":"a","id":1}\n'
            b'{"jsonrpc":"2.0","method":"b","id":2}\n'
        )
        transport, stdout, _ = make_transport(data, handler=handler)
        transport.start()
        transport.process_once()
        transport.process_once()

        assert [m["id"] for m in written(stdout)] == [1, 2]
        assert [m["method"] for m in handler.messages] == ["a", "b"]

    def test_notifications_get_no_reply(self):
        """Handlers returning None write nothing."""
        handler = RecordingHandler()
        transport, stdout, _ = make_transport(
            b'{"jsonrpc":"2.0","method":"notifications/initialized"}\n', handler=handler
        )
        transport.start()
        assert transport.process_once() is True
        assert stdout.getvalue() == b""

    def test_invalid_json_gets_parse_error(self):
        """Unparseable lines are answered with a parse error and a null id."""
        transport, stdout, _ = make_transport(b"not json\n", handler=RecordingHandler())
        transport.start()
        assert transport.process_once() is True

        [response] = written(stdout)
        assert response["error"]["code"] == PARSE_ERROR
        assert response["id"] is None

    def test_oversized_input_gets_internal_error(self):
        """Input past max_message_size is answered even when the reply is over the limit."""
        transport, stdout, _ = make_transport(b"x" * 200, handler=RecordingHandler(), max_message_size=64)
        transport.start()
        assert transport.process_once() is True

        [response] = written(stdout)
        assert response["error"]["code"] == INTERNAL_ERROR
        assert response["id"] is None

    def test_oversized_line_does_not_drop_neighbours(self):
        """Messages around an oversized line are still handled, in order."""
        handler = RecordingHandler()
        data = (
            b'{"jsonrpc":"2.0","method":"a","id":1}\n'
            + b"y" * 200
            + b'\n{"jsonrpc":"2.0","method":"b","id":2}\n'
        )
        transport, stdout, _ = make_transport(data, handler=handler, max_message_size=64)
        transport.start()
        for _ in range(3):
            assert transport.process_once() is True

        replies = written(stdout)
        assert replies[0]["id"] == 1
        assert replies[1]["error"]["code"] == INTERNAL_ERROR
        assert replies[2]["id"] == 2
        assert [m["method"] for m in handler.messages] == ["a", "b"]

    def test_eof_keeps_transport_running(self):
        """End of input is not a disconnect."""
        transport, _, _ = make_transport(b"", handler=RecordingHandler())
        transport.start()
        assert transport.process_once() is False
        assert transport.process_once() is False
        assert transport.is_connected()

    def test_handler_failure_returns_internal_error(self):
        """Handler exceptions become an internal error response."""

        class Exploding(RecordingHandler):
            def handle(self, message, transport):
                raise RuntimeError("boom")

        transport, stdout, _ = make_transport(
            b'{"jsonrpc":"2.0","method":"x","id":7}\n', handler=Exploding()
        )
        transport.start()
        transport.process_once()

        [response] = written(stdout)
        assert response["id"] == 7
        assert response["error"]["code"] == -32603
        assert "data" not in response["error"]


class TestListenAndRun:
    """Tests for the serving loop."""

    def test_listen_requires_handler(self):
        """listen() without a handler raises."""
        transport, _, _ = make_transport(b"")
        with pytest.raises(TransportException):
            transport.listen(max_iterations=1)

    def test_listen_serves_until_iteration_limit(self):
        """listen() starts the transport and processes input."""
        handler = RecordingHandler()
        transport, stdout, _ = make_transport(
            b'{"jsonrpc":"2.0","method":"ping","id":3}\n', handler=handler
        )
        transport.listen(max_iterations=3)

        assert transport.is_connected()
        assert handler.events == ["connect"]
        assert written(stdout)[0]["id"] == 3

    def test_run_without_handler(self):
        """run() reports the missing handler on stderr and returns 1."""
        transport, _, stderr = make_transport(b"")
        assert transport.run() == 1
        assert "[MCP] No message handler bound" in stderr.getvalue()

    def test_log_writes_to_stderr(self):
        """log() prefixes messages and never touches stdout."""
        transport, stdout, stderr = make_transport(b"")
        transport.log("hello")
        assert stderr.getvalue() == "[MCP] hello\n"
        assert stdout.getvalue() == b""


class TestLifecycle:
    """Tests for start, stop and reload."""

    def test_stop_closes_streams_and_notifies(self):
        """stop() disconnects and tells the handler."""
        handler = RecordingHandler()
        transport, _, _ = make_transport(b"", handler=handler)
        transport.start()
        transport.stop()

        assert not transport.is_connected()
        assert handler.events == ["connect", "disconnect"]

    def test_health_check(self):
        """A started transport reports open streams."""
        transport, _, _ = make_transport(b"", handler=RecordingHandler())
        transport.start()
        report = transport.health_check()
        assert report["healthy"] is True
        assert report["checks"]["input_stream"] is True
        assert report["checks"]["output_stream"] is True

    def test_reload_calls_callback(self):
        """reload() runs the reload callback without stopping."""
        calls = []
        transport = StdioTransport(
            config=QUIET,
            stdin=io.BytesIO(),
            stdout=io.BytesIO(),
            on_reload=lambda: calls.append("reload"),
        )
        transport.start()
        transport.reload()
        assert calls == ["reload"]
        assert transport.is_connected()

    def test_content_length_framing(self):
        """Content-Length mode frames responses with headers."""
        body = b'{"jsonrpc":"2.0","method":"ping","id":1}'
        data = b"Content-Length: %d\r\n\r\n" % len(body) + body
        transport, stdout, _ = make_transport(
            data, handler=RecordingHandler(), use_content_length=True
        )
        transport.start()
        transport.process_once()
        assert stdout.getvalue().startswith(b"Content-Length: ")
