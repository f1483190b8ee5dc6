"""MCP transport and message-processing engine."""

__version__ = "1.0.0"
