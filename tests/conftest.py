"""Shared fixtures for the engine tests."""

from __future__ import annotations

from typing import Any

import pytest

from mcp_engine.registry import (
    PromptDefinition,
    ResourceDefinition,
    StaticRegistry,
    ToolDefinition,
)
from tests.doubles import FakeTransport


@pytest.fixture
def fake_transport() -> FakeTransport:
    """A started FakeTransport."""
    transport = FakeTransport(config={})
    transport.start()
    return transport


@pytest.fixture
def tool_registry() -> StaticRegistry:
    """Registry with an echo tool and a failing tool."""
    registry = StaticRegistry()
    registry.register(
        ToolDefinition(name="echo", description="Echo text back"),
        lambda arguments: arguments.get("text", ""),
    )
    registry.register(
        ToolDefinition(name="structured", description="Return a content dict"),
        lambda arguments: {"content": [{"type": "text", "text": "raw"}], "isError": False},
    )

    def explode(arguments: dict[str, Any]) -> Any:
        raise RuntimeError("tool exploded")

    registry.register(ToolDefinition(name="explode", description="Always fails"), explode)
    return registry


@pytest.fixture
def resource_registry() -> StaticRegistry:
    """Registry with one text resource and one template."""
    registry = StaticRegistry()
    registry.register(
        ResourceDefinition(uri="file:///readme.md", name="README"),
        lambda arguments: "# Hello",
    )
    registry.add_template("file:///{path}", "Project files")
    return registry


@pytest.fixture
def prompt_registry() -> StaticRegistry:
    """Registry with one prompt."""
    registry = StaticRegistry()
    registry.register(
        PromptDefinition(
            name="summarize",
            description="Summarize text",
            arguments=[{"name": "text", "required": True}],
        ),
        lambda arguments: f"Summarize: {arguments.get('text', '')}",
    )
    return registry
