"""Command-line entry point for the MCP engine.

Serves the built-in registries over stdio (the default) or HTTP:

    mcp-engine --config config/transports.yaml
    mcp-engine --transport http --port 8080

Logs go to stderr; stdout is reserved for protocol traffic in stdio mode.
"""

from __future__ import annotations

import argparse
import json
import logging
import platform
import sys
from pathlib import Path
from typing import Any

import uvicorn

from mcp_engine import __version__
from mcp_engine.audit import AuditLogger
from mcp_engine.config import ConfigLoadError, EngineConfig, load_config
from mcp_engine.protocol.notifications import NotificationHandler
from mcp_engine.protocol.processor import MessageProcessor
from mcp_engine.protocol.scheduler import Scheduler, SyncScheduler, ThreadPoolScheduler
from mcp_engine.ratelimiter import RateLimiter
from mcp_engine.registry import ResourceDefinition, StaticRegistry, ToolDefinition
from mcp_engine.transport.http import HttpTransport
from mcp_engine.transport.interceptors import Interceptor, audit_interceptor, rate_limit_interceptor
from mcp_engine.transport.manager import TransportManager
from mcp_engine.transport.stdio import StdioTransport

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/transports.yaml")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-engine",
        description="MCP transport and message-processing engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help=f"Path to configuration YAML file (default: {DEFAULT_CONFIG_PATH} if present)",
    )
    parser.add_argument(
        "--transport",
        "-t",
        choices=["stdio", "http"],
        default=None,
        help="Transport to serve on (default: the configured default)",
    )
    parser.add_argument("--host", default=None, help="HTTP bind address")
    parser.add_argument("--port", type=int, default=None, help="HTTP port")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (default: from config, else INFO)",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"mcp-engine {__version__}",
    )
    return parser


def configure_logging(level: str) -> None:
    """Send log records to stderr at ``level``."""
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)


def resolve_config(path: Path | None) -> EngineConfig:
    """Load the config file, falling back to defaults when none is present.

    Raises:
        ConfigLoadError: If an explicitly given file is missing or invalid.
    """
    if path is not None:
        return load_config(path)
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return EngineConfig()


def build_registries(config: EngineConfig) -> tuple[StaticRegistry, StaticRegistry, StaticRegistry]:
    """Create the built-in tool, resource and prompt registries."""
    tools = StaticRegistry()
    tools.register(
        ToolDefinition(
            name="echo",
            description="Return the given text unchanged",
            input_schema={
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        ),
        lambda arguments: str(arguments.get("text", "")),
    )

    resources = StaticRegistry()
    resources.register(
        ResourceDefinition(
            uri="engine://server/info",
            name="Server information",
            mime_type="application/json",
        ),
        lambda arguments: {
            "contents": [
                {
                    "uri": "engine://server/info",
                    "mimeType": "application/json",
                    "text": json.dumps(
                        {
                            "name": config.server_name,
                            "version": config.server_version,
                            "python": platform.python_version(),
                        }
                    ),
                }
            ]
        },
    )

    prompts = StaticRegistry()
    return tools, resources, prompts


def build_scheduler(config: EngineConfig) -> Scheduler:
    if config.notifications.get("queue_notifications"):
        return ThreadPoolScheduler()
    return SyncScheduler()


def build_interceptors(config: EngineConfig) -> list[Interceptor]:
    """Audit and rate-limit interceptors, when configured."""
    interceptors: list[Interceptor] = []
    if config.audit_log_file:
        interceptors.append(audit_interceptor(AuditLogger(Path(config.audit_log_file))))
    if config.requests_per_minute > 0:
        interceptors.append(rate_limit_interceptor(RateLimiter(), config.requests_per_minute))
    return interceptors


def build_manager(
    config: EngineConfig,
    processor: MessageProcessor,
    notifications: NotificationHandler,
) -> TransportManager:
    """Create a transport manager whose HTTP driver serves the event stream."""
    manager = TransportManager(config, handler=processor)
    interceptors = build_interceptors(config)
    manager.extend(
        "http",
        lambda driver_config: HttpTransport(
            driver_config, notifications=notifications, interceptors=interceptors
        ),
    )
    return manager


def _http_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    return overrides


def serve_stdio(transport: StdioTransport, notifications: NotificationHandler) -> int:
    notifications.subscribe("stdio", transport=transport)
    transport.log(f"MCP engine {__version__} started on stdio")
    return transport.run()


def serve_http(transport: HttpTransport, log_level: str) -> int:
    ssl = transport.config.get("ssl") or {}
    options: dict[str, Any] = {}
    if ssl.get("enabled"):
        options["ssl_certfile"] = ssl.get("cert_path")
        options["ssl_keyfile"] = ssl.get("key_path")

    logger.info("Serving MCP over HTTP at %s", transport.base_url())
    uvicorn.run(
        transport.create_app(),
        host=transport.config["host"],
        port=int(transport.config["port"]),
        log_level=log_level.lower(),
        **options,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the MCP engine.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)

    try:
        config = resolve_config(args.config)
    except ConfigLoadError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    log_level = args.log_level or config.log_level
    configure_logging(log_level)

    tools, resources, prompts = build_registries(config)
    processor = MessageProcessor(
        tools=tools,
        resources=resources,
        prompts=prompts,
        server_info=config.server_info,
        debug=log_level == "DEBUG",
    )
    scheduler = build_scheduler(config)
    notifications = NotificationHandler(scheduler=scheduler, config=config.notifications)
    manager = build_manager(config, processor, notifications)

    name = args.transport or config.default_transport
    overrides = _http_overrides(args) if name == "http" else {}
    try:
        transport = manager.create_transport(name, overrides)
        manager.register_transport(name, transport)
        if isinstance(transport, StdioTransport):
            return serve_stdio(transport, notifications)
        if isinstance(transport, HttpTransport):
            return serve_http(transport, log_level)
        print(f"Error: transport '{name}' cannot be served from the command line", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 130  # Standard exit code for SIGINT
    except Exception as e:
        logger.error("Error: %s", e)
        return 1
    finally:
        manager.cleanup()
        scheduler.shutdown(wait=False)
