"""
Shared fixtures: a scripted model provider and a few simple tools.
"""

import asyncio
from typing import Any

import pytest
from pydantic import BaseModel

from agentrun.llm.base import ModelResponse, StreamChunk, ToolCall
from agentrun.tools.base import BaseTool, ToolContext, ToolResult


class ScriptedProvider:
    """ModelProvider that replays a fixed list of responses.

    Items may be ModelResponse objects or exceptions (raised on that step).
    Once the script is exhausted, every step answers "done".
    """

    def __init__(
        self,
        responses: list[ModelResponse | Exception] | None = None,
        model_name: str = "scripted-model",
        chunk_delay: float = 0.0,
    ) -> None:
        self.responses = list(responses or [])
        self.model_name = model_name
        self.chunk_delay = chunk_delay
        self.calls: list[dict[str, Any]] = []

    def _next(self, messages: list[dict[str, Any]], tools: Any) -> ModelResponse:
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools})
        if not self.responses:
            return ModelResponse(content="done")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def generate(self, messages, tools=None, *, cancel_event=None, on_chunk=None):
        await asyncio.sleep(0)
        return self._next(messages, tools)

    async def stream(self, messages, tools=None, *, cancel_event=None):
        response = self._next(messages, tools)
        emitted: list[str] = []
        for word in (response.content or "").split(" "):
            if cancel_event is not None and cancel_event.is_set():
                yield ModelResponse(content=" ".join(emitted) or None, finish_reason="cancelled")
                return
            await asyncio.sleep(self.chunk_delay)
            chunk = word if not emitted else f" {word}"
            emitted.append(word)
            if word:
                yield StreamChunk(data=chunk)
        yield response


def text_response(content: str, tokens: int = 10) -> ModelResponse:
    return ModelResponse(
        content=content,
        usage={"prompt_tokens": tokens, "completion_tokens": tokens, "total_tokens": 2 * tokens},
    )


def tool_response(name: str, arguments: dict[str, Any], call_id: str = "call-1") -> ModelResponse:
    return ModelResponse(
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)],
        finish_reason="tool_calls",
    )


class EchoArgs(BaseModel):
    text: str

    model_config = {"extra": "forbid"}


class EchoTool(BaseTool):
    name = "echo"
    description = "Echo the given text"
    args_model = EchoArgs

    def __init__(self) -> None:
        self.contexts: list[ToolContext] = []

    async def execute(self, context: ToolContext, **kwargs: Any) -> ToolResult:
        self.contexts.append(context)
        return ToolResult(success=True, output=f"echo: {kwargs['text']}")


class FailingTool(BaseTool):
    name = "explode"
    description = "Always raises"
    args_model = EchoArgs

    async def execute(self, context: ToolContext, **kwargs: Any) -> ToolResult:
        raise RuntimeError("boom")


@pytest.fixture
def make_provider():
    """Factory for ScriptedProvider instances."""
    return ScriptedProvider


@pytest.fixture
def text():
    """Factory for plain text responses."""
    return text_response


@pytest.fixture
def tool_call():
    """Factory for single tool call responses."""
    return tool_response


@pytest.fixture
def echo_tool() -> EchoTool:
    return EchoTool()


@pytest.fixture
def failing_tool() -> FailingTool:
    return FailingTool()
