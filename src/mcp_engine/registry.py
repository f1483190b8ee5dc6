"""Capability registries.

The message processor talks to tools, resources and prompts only through
the ``Registry`` interface: ``list()`` and ``invoke(name, args)``.
``StaticRegistry`` is an in-memory implementation backed by plain callables.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any


class ComponentNotFound(Exception):
    """Raised when a registry has no component with the requested name."""

    pass


class Registry(ABC):
    """Interface for a source of tools, resources or prompts."""

    @abstractmethod
    def list(self) -> list[dict[str, Any]]:
        """Return component descriptions in MCP list format."""
        pass

    @abstractmethod
    def invoke(self, name: str, arguments: dict[str, Any]) -> Any:
        """Run a component.

        Args:
            name: Tool name, resource URI or prompt name.
            arguments: Call arguments.

        Returns:
            Component result.

        Raises:
            ComponentNotFound: If no component has that name.
        """
        pass

    def templates(self) -> list[dict[str, Any]]:
        """Return resource templates, if the registry has any."""
        return []


@dataclass
class ToolDefinition:
    """Definition of a tool."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})

    @property
    def key(self) -> str:
        return self.name

    def to_dict(self) -> dict[str, Any]:
        """Convert to MCP tools/list format."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class ResourceDefinition:
    """Definition of a readable resource."""

    uri: str
    name: str
    description: str = ""
    mime_type: str = "text/plain"

    @property
    def key(self) -> str:
        return self.uri

    def to_dict(self) -> dict[str, Any]:
        """Convert to MCP resources/list format."""
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }


@dataclass
class PromptDefinition:
    """Definition of a prompt template."""

    name: str
    description: str = ""
    arguments: list[dict[str, Any]] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.name

    def to_dict(self) -> dict[str, Any]:
        """Convert to MCP prompts/list format."""
        return {
            "name": self.name,
            "description": self.description,
            "arguments": self.arguments,
        }


Definition = ToolDefinition | ResourceDefinition | PromptDefinition


class StaticRegistry(Registry):
    """In-memory registry mapping names to (definition, callable) pairs."""

    def __init__(self) -> None:
        self._components: dict[str, tuple[Definition, Callable[[dict[str, Any]], Any]]] = {}
        self._templates: list[dict[str, Any]] = []

    def register(self, definition: Definition, func: Callable[[dict[str, Any]], Any]) -> None:
        """Register a component.

        Args:
            definition: Component definition; its key must be unique.
            func: Called with the argument dict on invoke.

        Raises:
            ValueError: If a component with the same key exists.
        """
        if definition.key in self._components:
            raise ValueError(f"Component already registered: {definition.key}")
        self._components[definition.key] = (definition, func)

    def unregister(self, name: str) -> bool:
        """Remove a component. Returns True if it existed."""
        return self._components.pop(name, None) is not None

    def add_template(self, uri_template: str, name: str, description: str = "") -> None:
        """Advertise a resource URI template."""
        self._templates.append(
            {"uriTemplate": uri_template, "name": name, "description": description}
        )

    def list(self) -> list[dict[str, Any]]:
        return [definition.to_dict() for definition, _ in self._components.values()]

    def invoke(self, name: str, arguments: dict[str, Any]) -> Any:
        entry = self._components.get(name)
        if entry is None:
            raise ComponentNotFound(f"Component not found: {name}")
        _, func = entry
        return func(arguments)

    def templates(self) -> list[dict[str, Any]]:
        return list(self._templates)

    def __contains__(self, name: object) -> bool:
        return name in self._components

    def __len__(self) -> int:
        return len(self._components)
