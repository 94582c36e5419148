"""
Abstract base for tools callable by agents.

Defines the common interface every tool implements: an async execute(),
argument validation through a Pydantic model and JSON Schema generation for
OpenAI-style function calling.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

if TYPE_CHECKING:
    from ..core.context import OperationContext
    from ..streaming.merge import StreamMerger

__all__ = ["BaseTool", "ToolContext", "ToolResult"]


class ToolResult(BaseModel):
    """Result of a tool execution.

    Attributes:
        success: True if the tool ran correctly
        output: Output of the tool (always a string)
        error: Error message if success=False, None otherwise
    """

    success: bool
    output: str
    error: str | None = None

    model_config = {"extra": "forbid"}


@dataclass
class ToolContext:
    """What a tool gets to know about the run that called it.

    Attributes:
        operation: Context of the calling run.
        tool_call_id: Id of this call.
        stream: Merged stream of the calling run when it is streaming, else
            None. Only handed over once the call's tool-call part has been
            written, so anything a tool injects follows it.
    """

    operation: "OperationContext"
    tool_call_id: str
    stream: "StreamMerger | None" = None


class BaseTool(ABC):
    """Abstract base class for all tools.

    Each tool must:
    1. Define name, description and args_model
    2. Implement execute()

    get_schema() builds the OpenAI function-calling schema from args_model.
    """

    name: str
    description: str
    args_model: type[BaseModel]

    @abstractmethod
    async def execute(self, context: ToolContext, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            context: Calling run and stream.
            **kwargs: Arguments validated by args_model

        Returns:
            ToolResult. Exceptions raised here are reported by the caller as
            tool errors.
        """

    def get_schema(self) -> dict[str, Any]:
        """OpenAI function-calling schema of the tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }

    def validate_args(self, args: dict[str, Any]) -> BaseModel:
        """Validate arguments with args_model.

        Raises:
            ValidationError: If the arguments are invalid
        """
        return self.args_model(**args)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}')>"
