"""Tests for the command-line entry point."""

from __future__ import annotations

import json

import pytest

from mcp_engine import __version__, cli
from mcp_engine.config import EngineConfig
from mcp_engine.protocol.scheduler import SyncScheduler, ThreadPoolScheduler
from mcp_engine.transport.stdio import StdioTransport


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Run each test where no default config file exists."""
    monkeypatch.chdir(tmp_path)


class TestParser:
    """Tests for argument parsing."""

    def test_version(self, capsys):
        """--version prints the version and exits."""
        with pytest.raises(SystemExit) as exc_info:
            cli.build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert f"mcp-engine {__version__}" in capsys.readouterr().out

    def test_rejects_unknown_transport(self):
        """Only stdio and http can be served."""
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--transport", "carrier-pigeon"])


class TestBuilders:
    """Tests for the wiring helpers."""

    def test_resolve_config_defaults(self):
        """Without a config file the defaults are used."""
        assert cli.resolve_config(None) == EngineConfig()

    def test_resolve_config_default_path(self, tmp_path):
        """config/transports.yaml is picked up when present."""
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "transports.yaml").write_text("server:\n  name: from-file\n")
        assert cli.resolve_config(None).server_name == "from-file"

    def test_builtin_registries(self):
        """The echo tool and server info resource are available."""
        tools, resources, prompts = cli.build_registries(EngineConfig(server_name="engine-test"))
        assert tools.invoke("echo", {"text": "hi"}) == "hi"

        contents = resources.invoke("engine://server/info", {})["contents"]
        assert json.loads(contents[0]["text"])["name"] == "engine-test"
        assert len(prompts) == 0

    def test_scheduler_follows_queue_setting(self):
        """Queued notifications run on a thread pool."""
        assert isinstance(cli.build_scheduler(EngineConfig()), SyncScheduler)
        queued = EngineConfig(notifications={"queue_notifications": True})
        scheduler = cli.build_scheduler(queued)
        assert isinstance(scheduler, ThreadPoolScheduler)
        scheduler.shutdown()

    def test_interceptors(self, tmp_path):
        """Audit and rate limiting are added only when configured."""
        assert cli.build_interceptors(EngineConfig()) == []
        config = EngineConfig(audit_log_file=str(tmp_path / "audit.jsonl"), requests_per_minute=10)
        assert len(cli.build_interceptors(config)) == 2


class TestMain:
    """Tests for main()."""

    def test_missing_config_file(self, tmp_path, capsys):
        """A missing explicit config file is reported and exits 1."""
        assert cli.main(["--config", str(tmp_path / "missing.yaml")]) == 1
        assert "Error loading config" in capsys.readouterr().err

    def test_serves_stdio(self, monkeypatch):
        """The stdio transport runs with the processor bound."""
        served = []

        def fake_run(self):
            served.append(self)
            return 0

        monkeypatch.setattr(StdioTransport, "run", fake_run)
        assert cli.main(["--transport", "stdio"]) == 0
        assert served[0].handler is not None
        assert "ping" in served[0].handler.supported_methods()

    def test_serves_http(self, monkeypatch):
        """HTTP is served by uvicorn with the overridden port."""
        calls = []
        monkeypatch.setattr(cli.uvicorn, "run", lambda app, **kwargs: calls.append(kwargs))
        assert cli.main(["--transport", "http", "--port", "9100", "--host", "0.0.0.0"]) == 0
        assert calls[0]["port"] == 9100
        assert calls[0]["host"] == "0.0.0.0"
        assert "ssl_certfile" not in calls[0]

    def test_interrupt_exit_code(self, monkeypatch):
        """Ctrl-C exits with 130."""

        def interrupted(self):
            raise KeyboardInterrupt

        monkeypatch.setattr(StdioTransport, "run", interrupted)
        assert cli.main([]) == 130

    def test_unexpected_error_exit_code(self, monkeypatch):
        """Unexpected errors exit with 1."""

        def failing(self):
            raise RuntimeError("boom")

        monkeypatch.setattr(StdioTransport, "run", failing)
        assert cli.main([]) == 1
