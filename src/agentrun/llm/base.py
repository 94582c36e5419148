"""
Model provider contract and normalized response types.

Agents talk to language models only through ModelProvider. Providers take
messages in OpenAI chat format and OpenAI function-calling tool schemas,
honour a cancellation event, and return provider-independent types.
"""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from pydantic import BaseModel, Field

__all__ = [
    "ChunkCallback",
    "ModelProvider",
    "ModelResponse",
    "StreamChunk",
    "ToolCall",
]


class StreamChunk(BaseModel):
    """A text fragment produced while the model is generating."""

    type: str = Field(default="content", description="Chunk type: 'content'")
    data: str = Field(description="Chunk content")

    model_config = {"extra": "forbid"}


class ToolCall(BaseModel):
    """A tool call requested by the model, independent of the provider."""

    id: str = Field(description="Unique ID of the tool call")
    name: str = Field(description="Name of the tool to execute")
    arguments: dict[str, Any] = Field(description="Arguments for the tool")

    model_config = {"extra": "forbid"}


class ModelResponse(BaseModel):
    """Normalized result of one model step."""

    content: str | None = Field(default=None, description="Generated text")
    tool_calls: list[ToolCall] = Field(
        default_factory=list,
        description="Tool calls requested by the model",
    )
    finish_reason: str = Field(
        default="stop",
        description="Finish reason: stop, tool_calls, length, cancelled, etc.",
    )
    usage: dict[str, Any] | None = Field(default=None, description="Token usage information")

    model_config = {"extra": "forbid"}


ChunkCallback = Callable[[StreamChunk], Awaitable[None] | None]


class ModelProvider(Protocol):
    """What an Agent needs from a language model."""

    model_name: str

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> ModelResponse:
        """Run one model step and return the complete response."""
        ...

    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk | ModelResponse]:
        """Run one model step, yielding chunks and then the complete response."""
        ...
