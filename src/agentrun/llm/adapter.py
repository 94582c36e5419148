"""
LiteLLM provider - async access to any model supported by LiteLLM.

Implements ModelProvider on top of litellm.acompletion with:
- Retries only for transient errors (RateLimitError, ServiceUnavailableError,
  APIConnectionError, Timeout); authentication and configuration errors are
  raised immediately.
- Structured logging on each retry with attempt number and wait time.
- Cooperative cancellation: the cancel event is checked between chunks and a
  cancelled step returns what was generated so far with
  finish_reason="cancelled".
"""

import asyncio
import inspect
import json
import os
from typing import Any, AsyncIterator

import litellm
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config.schema import LLMConfig
from .base import ChunkCallback, ModelResponse, StreamChunk, ToolCall

logger = structlog.get_logger()

__all__ = ["LiteLLMProvider"]

# Transient errors that justify retries
_RETRYABLE_ERRORS = (
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.APIConnectionError,
    litellm.Timeout,
)


class LiteLLMProvider:
    """ModelProvider backed by LiteLLM."""

    def __init__(self, config: LLMConfig) -> None:
        self.config = config
        self.model_name = config.model
        self.log = logger.bind(component="llm_provider", model=config.model)
        self._api_key = os.environ.get(config.api_key_env)
        if not self._api_key:
            self.log.warning("llm.no_api_key", env_var=config.api_key_env)

        litellm.suppress_debug_info = True

    def _on_retry_sleep(self, retry_state: RetryCallState) -> None:
        next_wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self.log.warning(
            "llm.retry",
            attempt=retry_state.attempt_number,
            wait_seconds=round(next_wait, 1),
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )

    async def _call_with_retry(self, **kwargs: Any) -> Any:
        """Call litellm.acompletion, retrying transient errors only."""
        max_attempts = self.config.retries + 1
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=2, max=60),
            before_sleep=self._on_retry_sleep,
            reraise=True,
        ):
            with attempt:
                return await litellm.acompletion(**kwargs)

    def _request_kwargs(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None, stream: bool
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "timeout": self.config.timeout,
            "stream": stream,
        }
        if stream:
            kwargs["stream_options"] = {"include_usage": True}
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if tools:
            kwargs["tools"] = tools
        return kwargs

    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> ModelResponse:
        """Run one model step.

        Without on_chunk the call is non-streaming. With on_chunk, the step is
        streamed and each text chunk is passed to the callback.
        """
        if on_chunk is not None:
            response: ModelResponse | None = None
            async for item in self.stream(messages, tools, cancel_event=cancel_event):
                if isinstance(item, StreamChunk):
                    result = on_chunk(item)
                    if inspect.isawaitable(result):
                        await result
                else:
                    response = item
            return response or ModelResponse(finish_reason="cancelled")

        self.log.info(
            "llm.completion.start",
            messages_count=len(messages),
            tools_count=len(tools or []),
        )
        try:
            raw = await self._call_with_retry(**self._request_kwargs(messages, tools, stream=False))
        except Exception as e:
            self.log.error("llm.completion.error", error=str(e), error_type=type(e).__name__)
            raise

        response = self._normalize_response(raw)
        self.log.info(
            "llm.completion.success",
            finish_reason=response.finish_reason,
            tool_calls_count=len(response.tool_calls),
            usage=response.usage,
        )
        return response

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk | ModelResponse]:
        """Stream one model step.

        Yields:
            StreamChunk: Text fragments as they are generated.
            ModelResponse: The complete response (last item).
        """
        self.log.info("llm.completion_stream.start", messages_count=len(messages))

        collected_content: list[str] = []
        collected_tool_calls: dict[int, dict[str, Any]] = {}
        finish_reason = "stop"
        usage_info: dict[str, Any] | None = None

        try:
            response = await self._call_with_retry(
                **self._request_kwargs(messages, tools, stream=True)
            )
            async for chunk in response:
                if cancel_event is not None and cancel_event.is_set():
                    finish_reason = "cancelled"
                    break

                if getattr(chunk, "usage", None):
                    usage_info = {
                        "prompt_tokens": getattr(chunk.usage, "prompt_tokens", 0) or 0,
                        "completion_tokens": getattr(chunk.usage, "completion_tokens", 0) or 0,
                        "total_tokens": getattr(chunk.usage, "total_tokens", 0) or 0,
                    }

                choice = chunk.choices[0] if chunk.choices else None
                if not choice:
                    continue
                delta = choice.delta

                if getattr(delta, "content", None):
                    collected_content.append(delta.content)
                    yield StreamChunk(data=delta.content)

                # Tool calls arrive in fragments, keyed by index
                for tc_delta in getattr(delta, "tool_calls", None) or []:
                    entry = collected_tool_calls.setdefault(
                        tc_delta.index, {"id": "", "name": "", "arguments": ""}
                    )
                    if tc_delta.id:
                        entry["id"] = tc_delta.id
                    function = getattr(tc_delta, "function", None)
                    if function is not None:
                        if function.name:
                            entry["name"] = function.name
                        if function.arguments:
                            entry["arguments"] += function.arguments

                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except Exception as e:
            self.log.error("llm.completion_stream.error", error=str(e), error_type=type(e).__name__)
            raise

        tool_calls = [
            ToolCall(id=tc["id"], name=tc["name"], arguments=self._parse_arguments(tc["arguments"]))
            for tc in collected_tool_calls.values()
        ]
        result = ModelResponse(
            content="".join(collected_content) or None,
            tool_calls=tool_calls if finish_reason != "cancelled" else [],
            finish_reason=finish_reason,
            usage=usage_info,
        )
        self.log.info(
            "llm.completion_stream.complete",
            finish_reason=result.finish_reason,
            tool_calls_count=len(result.tool_calls),
            usage=result.usage,
        )
        yield result

    def _normalize_response(self, response: Any) -> ModelResponse:
        choice = response.choices[0]
        message = choice.message

        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=self._parse_arguments(tc.function.arguments),
            )
            for tc in (getattr(message, "tool_calls", None) or [])
        ]

        usage = None
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": getattr(response.usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(response.usage, "completion_tokens", 0) or 0,
                "total_tokens": getattr(response.usage, "total_tokens", 0) or 0,
            }

        return ModelResponse(
            content=getattr(message, "content", None),
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    def _parse_arguments(self, arguments: Any) -> dict[str, Any]:
        """Parse tool call arguments (JSON string or dict)."""
        if isinstance(arguments, dict):
            return arguments
        if isinstance(arguments, str) and arguments:
            try:
                return json.loads(arguments)
            except json.JSONDecodeError:
                self.log.warning("llm.arguments_parse_error", arguments=arguments)
        return {}

    def __repr__(self) -> str:
        return f"<LiteLLMProvider(model='{self.config.model}')>"
