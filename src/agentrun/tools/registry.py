"""
Per-agent tool registry.

Each Agent owns one ToolRegistry. Schemas are handed to the model provider
sorted by name so that the tool list in a request is stable between steps.
"""

from typing import Any

from .base import BaseTool


class ToolNotFoundError(Exception):
    """The model asked for a tool the agent does not have."""


class DuplicateToolError(Exception):
    """A second tool was registered under a name already in use."""


class ToolRegistry:
    """Name -> tool mapping of one agent."""

    def __init__(self, tools: list[BaseTool] | None = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: BaseTool, allow_override: bool = False) -> None:
        """Register a tool.

        Raises:
            DuplicateToolError: If the name is taken and allow_override=False
        """
        if not allow_override and tool.name in self._tools:
            raise DuplicateToolError(f"An agent cannot have two tools named '{tool.name}'")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> BaseTool:
        """Resolve the tool of a model tool call.

        Raises:
            ToolNotFoundError: If the agent has no tool with that name; the
                message lists the names it does have.
        """
        try:
            return self._tools[name]
        except KeyError:
            known = ", ".join(sorted(self._tools)) or "(none)"
            raise ToolNotFoundError(f"Tool '{name}' not found. Available tools: {known}") from None

    def get_schemas(self) -> list[dict[str, Any]]:
        return [self._tools[name].get_schema() for name in sorted(self._tools)]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __repr__(self) -> str:
        return f"<ToolRegistry(tools={self.names})>"
