"""
Agent - drives one run from input to final output.

Flow of a run:

1. A run record and its OperationContext are created; agent:start is
   published (with the run span opened).
2. Optional retriever call (retriever:start / terminal).
3. Loop, up to max_steps:
   a. Model step (streamed or not).
   b. No tool calls -> done.
   c. Each tool call runs in order: tool:start, tool span, execution,
      tool terminal. Tool failures are reported back to the model.
4. The run record gets its final output, status and usage, then the
   terminal agent event is published.

Errors:
- Model errors end the run: agent:error, record status error, and
  ModelGenerationError raised to the caller.
- Cancellation (cancel event set, or the consumer abandoning the stream)
  ends the run as cancelled: record status cancelled, agent:cancel, and in
  streaming mode a final finish part with finishReason="cancelled".
  Model calls, stream chunk waits and tool calls in flight are abandoned
  as soon as the cancel event fires.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Protocol, TypeVar

import structlog

from ..config.schema import AgentConfig, StreamingConfig
from ..core.context import OperationContext, create_operation_context
from ..core.hooks import RunHooks
from ..core.lifecycle import LifecyclePublisher
from ..core.steps import Step
from ..events.bus import EventBus
from ..history.models import RunStatus, UsageInfo
from ..history.recorder import HistoryRecorder
from ..llm.base import ModelProvider, ModelResponse, StreamChunk, ToolCall
from ..streaming.events import FINISH, TEXT_DELTA, TOOL_CALL, TOOL_RESULT, StreamEvent
from ..streaming.merge import StreamMerger
from ..telemetry.otel import NoopTracer, RunTracer
from ..tools.base import BaseTool, ToolContext
from ..tools.registry import ToolRegistry
from .delegation import SubAgentManager

logger = structlog.get_logger()

T = TypeVar("T")

__all__ = [
    "Agent",
    "ModelGenerationError",
    "Retriever",
    "RunResult",
    "StreamTextResult",
]


class ModelGenerationError(Exception):
    """The model provider failed during a run."""

    def __init__(self, message: str, run_id: str, agent_name: str) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.agent_name = agent_name


class Retriever(Protocol):
    """Supplies extra context for a run before the first model step."""

    name: str

    async def retrieve(self, input: Any, context: OperationContext) -> str: ...


@dataclass
class RunResult:
    """Outcome of a finished run."""

    run_id: str
    text: str
    status: RunStatus
    usage: UsageInfo
    finish_reason: str
    steps: list[Step] = field(default_factory=list)


@dataclass
class _RunState:
    text: str = ""
    usage: UsageInfo = field(default_factory=UsageInfo)
    finish_reason: str = "stop"
    status: RunStatus = RunStatus.WORKING


class StreamTextResult:
    """Handle of a streaming run.

    Iterate it to consume the merged stream (own parts plus parts forwarded
    from sub-agents). result() is available once the stream is exhausted.

    A consumer that may stop early should use the handle as an async context
    manager, so that leaving the block (break, return, exception) closes the
    stream and the run ends as cancelled right away:

        async with await agent.stream_text("question") as run:
            async for part in run:
                if done(part):
                    break
    """

    def __init__(
        self,
        context: OperationContext,
        merger: StreamMerger,
        parts: AsyncIterator[StreamEvent],
        state: _RunState,
    ) -> None:
        self.context = context
        self.merger = merger
        self._parts = parts
        self._state = state

    @property
    def run_id(self) -> str:
        return self.context.id

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._parts

    async def text_stream(self) -> AsyncIterator[str]:
        """Only the run's own text deltas."""
        async for part in self._parts:
            if part.type == TEXT_DELTA and not part.from_sub_agent:
                yield part.text

    async def aclose(self) -> None:
        """Stop consuming; the run ends as cancelled if still active."""
        aclose = getattr(self._parts, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "StreamTextResult":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def result(self) -> RunResult:
        if self._state.status is RunStatus.WORKING:
            raise RuntimeError("The stream has not finished yet")
        return RunResult(
            run_id=self.context.id,
            text=self._state.text,
            status=self._state.status,
            usage=self._state.usage,
            finish_reason=self._state.finish_reason,
            steps=self.context.step_log.snapshot(),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Interrupted(Exception):
    """The cancel event fired while a model or tool call was in flight."""


async def _until_cancelled(ctx: OperationContext, awaitable: Awaitable[T]) -> T:
    """Await awaitable, abandoning it as soon as the run's cancel event is set.

    Raises:
        _Interrupted: If the cancel event won the race; the call is cancelled
            and awaited before this returns.
    """
    if ctx.cancel_event is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    cancel_waiter = asyncio.ensure_future(ctx.cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        cancel_waiter.cancel()

    if task in done:
        return task.result()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise _Interrupted()


class Agent:
    """A named agent bound to a model provider, tools and sub-agents."""

    def __init__(
        self,
        name: str,
        provider: ModelProvider,
        *,
        instructions: str = "",
        tools: list[BaseTool] | None = None,
        sub_agents: list["Agent"] | None = None,
        history: HistoryRecorder | None = None,
        bus: EventBus | None = None,
        tracer: RunTracer | NoopTracer | None = None,
        hooks: RunHooks | None = None,
        retriever: Retriever | None = None,
        config: AgentConfig | None = None,
        streaming: StreamingConfig | None = None,
        agent_id: str | None = None,
    ) -> None:
        """Initialize the agent.

        Args:
            name: Display name; also the default id.
            provider: Model provider.
            instructions: System prompt.
            tools: Tools the model can call.
            sub_agents: Agents this one can delegate to (adds delegate_task).
            history: Run recorder. Defaults to an in-memory recorder.
            bus: Event bus. Delegated runs use the bus of the delegating run.
            tracer: OpenTelemetry tracer. Defaults to NoopTracer.
            hooks: Agent-level hooks; call-level hooks override them per stage.
            retriever: Optional context retriever.
            config: Run settings (max_steps, forwarded part types).
            streaming: Stream merge settings.
            agent_id: Stable id for history; defaults to name.
        """
        self.id = agent_id or name
        self.name = name
        self.provider = provider
        self.instructions = instructions
        self.config = config or AgentConfig()
        self.streaming = streaming or StreamingConfig()
        self.bus = bus or EventBus()
        self.history = history or HistoryRecorder(self.id, bus=self.bus)
        self.tracer = tracer or NoopTracer()
        self.hooks = hooks or RunHooks()
        self.retriever = retriever
        self.tools = ToolRegistry(tools)
        self.sub_agents = SubAgentManager(
            self, sub_agents or [], forward_event_types=self.config.forward_event_types
        )
        self.events = LifecyclePublisher(self.id, name, self.history, self.tracer)
        self.log = logger.bind(component="agent", agent=name)

    @property
    def max_steps(self) -> int:
        return self.sub_agents.calculate_max_steps(self.config.max_steps)

    # ── Public API ────────────────────────────────────────────────────────

    async def generate_text(
        self,
        input: str | list[dict[str, Any]],
        *,
        parent_context: OperationContext | None = None,
        user_context: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        hooks: RunHooks | None = None,
        user_id: str | None = None,
        conversation_id: str | None = None,
        max_steps: int | None = None,
    ) -> RunResult:
        """Run to completion without streaming.

        Raises:
            ModelGenerationError: If the model provider fails.
        """
        ctx, run_hooks, state = await self._begin_run(
            input,
            "generate_text",
            parent_context=parent_context,
            user_context=user_context,
            cancel_event=cancel_event,
            hooks=hooks,
            user_id=user_id,
            conversation_id=conversation_id,
        )
        parts = self._run(ctx, input, run_hooks, state, max_steps=max_steps)
        try:
            async for _ in parts:
                pass
        finally:
            await parts.aclose()

        return RunResult(
            run_id=ctx.id,
            text=state.text,
            status=state.status,
            usage=state.usage,
            finish_reason=state.finish_reason,
            steps=ctx.step_log.snapshot(),
        )

    async def stream_text(
        self,
        input: str | list[dict[str, Any]],
        *,
        parent_context: OperationContext | None = None,
        user_context: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        hooks: RunHooks | None = None,
        user_id: str | None = None,
        conversation_id: str | None = None,
        max_steps: int | None = None,
    ) -> StreamTextResult:
        """Start a streaming run.

        The run record and agent:start exist when this returns; the model is
        only called as the returned handle is iterated.
        """
        ctx, run_hooks, state = await self._begin_run(
            input,
            "stream_text",
            parent_context=parent_context,
            user_context=user_context,
            cancel_event=cancel_event,
            hooks=hooks,
            user_id=user_id,
            conversation_id=conversation_id,
        )
        merger = StreamMerger.from_config(self.streaming)
        primary = self._run(ctx, input, run_hooks, state, merger=merger, max_steps=max_steps)
        return StreamTextResult(ctx, merger, merger.merge(primary), state)

    # ── Run lifecycle ─────────────────────────────────────────────────────

    async def _begin_run(
        self,
        input: Any,
        operation_name: str,
        *,
        parent_context: OperationContext | None,
        user_context: dict[str, Any] | None,
        cancel_event: asyncio.Event | None,
        hooks: RunHooks | None,
        user_id: str | None,
        conversation_id: str | None,
    ) -> tuple[OperationContext, RunHooks, _RunState]:
        metadata: dict[str, Any] = {"operation": operation_name}
        if parent_context is not None:
            metadata["parent_run_id"] = parent_context.id

        record = await self.history.create_record(
            input,
            metadata=metadata,
            user_id=user_id,
            conversation_id=conversation_id,
            model=getattr(self.provider, "model_name", None),
        )
        ctx = create_operation_context(
            record,
            parent_context.bus if parent_context is not None else self.bus,
            operation_name=operation_name,
            parent=parent_context,
            user_context=user_context,
            cancel_event=cancel_event,
        )
        await self.events.agent_start(
            ctx,
            input,
            model=record.model,
            parent_span=parent_context.run_span if parent_context is not None else None,
        )
        self.log.info(
            "agent.run.start",
            run_id=ctx.id,
            operation=operation_name,
            parent_run_id=ctx.parent_run_id,
        )
        return ctx, self.hooks.merged(hooks), _RunState()

    async def _run(
        self,
        ctx: OperationContext,
        input: Any,
        hooks: RunHooks,
        state: _RunState,
        merger: StreamMerger | None = None,
        max_steps: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Primary stream of a run. Also used, drained, by generate_text."""
        streaming = merger is not None
        try:
            await hooks.invoke("on_start", agent=self, context=ctx)
            messages = await self._build_messages(ctx, input)
            tool_schemas = self.tools.get_schemas() or None

            limit = max_steps or self.max_steps
            for step in range(limit):
                if ctx.is_cancelled:
                    break

                self.log.debug("agent.step.start", run_id=ctx.id, step=step)
                response: ModelResponse | None = None
                try:
                    if streaming:
                        streamed: list[str] = []
                        chunks = self.provider.stream(
                            messages, tool_schemas, cancel_event=ctx.cancel_event
                        )
                        try:
                            while True:
                                try:
                                    item = await _until_cancelled(ctx, chunks.__anext__())
                                except StopAsyncIteration:
                                    break
                                if isinstance(item, StreamChunk):
                                    streamed.append(item.data)
                                    yield StreamEvent(TEXT_DELTA, {"text": item.data})
                                else:
                                    response = item
                        except _Interrupted:
                            response = ModelResponse(
                                content="".join(streamed) or None, finish_reason="cancelled"
                            )
                        finally:
                            aclose = getattr(chunks, "aclose", None)
                            if aclose is not None:
                                await aclose()
                    else:
                        try:
                            response = await _until_cancelled(
                                ctx,
                                self.provider.generate(
                                    messages, tool_schemas, cancel_event=ctx.cancel_event
                                ),
                            )
                        except _Interrupted:
                            response = ModelResponse(finish_reason="cancelled")
                except Exception as e:
                    await self._finish_error(ctx, state, hooks, e)
                    raise ModelGenerationError(
                        f"Model call failed in agent '{self.name}': {e}", ctx.id, self.name
                    ) from e

                if response is None:
                    response = ModelResponse(finish_reason="cancelled")
                state.usage.add(response.usage)

                if response.content:
                    state.text = response.content
                    await self._record_step(
                        ctx, hooks, Step(type="text", run_id=ctx.id, content=response.content)
                    )

                if response.finish_reason == "cancelled" or ctx.is_cancelled:
                    break

                state.finish_reason = response.finish_reason
                if not response.tool_calls:
                    break

                messages.append(self._assistant_message(response))
                for call in response.tool_calls:
                    yield StreamEvent(
                        TOOL_CALL,
                        {"toolCallId": call.id, "toolName": call.name, "args": call.arguments},
                    )
                    output, error = await self._execute_tool(ctx, hooks, call, merger)
                    yield StreamEvent(
                        TOOL_RESULT,
                        {
                            "toolCallId": call.id,
                            "toolName": call.name,
                            "result": output,
                            "isError": error is not None,
                        },
                    )
                    messages.append({"role": "tool", "tool_call_id": call.id, "content": output})
                    if ctx.is_cancelled:
                        break
            else:
                state.finish_reason = "max_steps"
                self.log.warning("agent.max_steps_reached", run_id=ctx.id, max_steps=limit)

            if ctx.is_cancelled:
                await self._finish_cancelled(ctx, state, hooks)
            else:
                await self._finish_success(ctx, state, hooks)
        except (asyncio.CancelledError, GeneratorExit):
            if ctx.is_active:
                await self._finish_cancelled(ctx, state, hooks, reason="Run interrupted")
            raise
        except Exception as e:
            # Model errors are already finished; anything else (e.g. a store
            # failure) still needs the run's terminal event
            if ctx.is_active:
                self.log.error(
                    "agent.run.error", run_id=ctx.id, error=str(e), error_type=type(e).__name__
                )
                await self._finish_error(ctx, state, hooks, e)
            raise

        yield StreamEvent(
            FINISH,
            {
                "finishReason": state.finish_reason,
                "usage": state.usage.to_dict(),
                "text": state.text,
            },
        )

    async def _finish_success(self, ctx: OperationContext, state: _RunState, hooks: RunHooks) -> None:
        state.status = RunStatus.COMPLETED
        updates: dict[str, Any] = {
            "output": state.text,
            "status": RunStatus.COMPLETED,
            "end_time": _utc_now(),
            "usage": state.usage,
        }
        if not ctx.is_delegated:
            # Top-level record holds the unified log, delegated steps included
            updates["steps"] = [s.to_dict() for s in ctx.step_log.snapshot()]
        await self.history.update_record(ctx.id, **updates)
        await self.events.agent_success(ctx, state.text, state.usage)
        await hooks.invoke("on_end", agent=self, context=ctx, output=state.text, error=None)
        self.log.info(
            "agent.run.complete",
            run_id=ctx.id,
            finish_reason=state.finish_reason,
            total_tokens=state.usage.total_tokens,
        )

    async def _finish_error(
        self, ctx: OperationContext, state: _RunState, hooks: RunHooks, error: Exception
    ) -> None:
        state.status = RunStatus.ERROR
        state.finish_reason = "error"
        self.log.error(
            "agent.llm_error", run_id=ctx.id, error=str(error), error_type=type(error).__name__
        )
        try:
            await self.history.update_record(
                ctx.id,
                output=state.text,
                status=RunStatus.ERROR,
                end_time=_utc_now(),
                usage=state.usage,
            )
        except Exception as e:
            # The run may be failing because of the store itself
            self.log.error(
                "agent.record_update.error", run_id=ctx.id, error=str(e), error_type=type(e).__name__
            )
        await self.events.agent_error(ctx, error)
        await hooks.invoke("on_error", agent=self, context=ctx, error=error)
        await hooks.invoke("on_end", agent=self, context=ctx, output=None, error=error)

    async def _finish_cancelled(
        self,
        ctx: OperationContext,
        state: _RunState,
        hooks: RunHooks,
        reason: str = "Operation cancelled",
    ) -> None:
        state.status = RunStatus.CANCELLED
        state.finish_reason = "cancelled"
        await self.history.update_record(
            ctx.id,
            output=state.text,
            status=RunStatus.CANCELLED,
            end_time=_utc_now(),
            usage=state.usage,
        )
        await self.events.agent_cancel(ctx, reason)
        await hooks.invoke("on_end", agent=self, context=ctx, output=state.text, error=None)
        self.log.info("agent.run.cancelled", run_id=ctx.id, reason=reason)

    # ── Steps, tools, retrieval ───────────────────────────────────────────

    async def _record_step(self, ctx: OperationContext, hooks: RunHooks, step: Step) -> None:
        if ctx.is_delegated:
            step = replace(step, sub_agent_id=self.id, sub_agent_name=self.name)
        ctx.step_log.append(step)
        await self.history.add_steps(ctx.id, [step.to_dict()])
        await hooks.invoke("on_step_finish", agent=self, context=ctx, step=step)

    async def _execute_tool(
        self,
        ctx: OperationContext,
        hooks: RunHooks,
        call: ToolCall,
        merger: StreamMerger | None,
    ) -> tuple[str, BaseException | str | None]:
        """Execute one tool call. Never raises (except cancellation)."""
        self.log.info("agent.tool_call.execute", run_id=ctx.id, tool=call.name, call_id=call.id)
        await self.events.tool_start(ctx, call.id, call.name, call.arguments)
        await hooks.invoke(
            "on_tool_start", agent=self, context=ctx, tool_name=call.name, arguments=call.arguments
        )
        await self._record_step(
            ctx,
            hooks,
            Step(
                type="tool_call",
                run_id=ctx.id,
                name=call.name,
                tool_call_id=call.id,
                arguments=call.arguments,
            ),
        )

        error: BaseException | str | None = None
        try:
            tool = self.tools.get(call.name)
            args = tool.validate_args(call.arguments)
            result = await _until_cancelled(
                ctx, tool.execute(ToolContext(ctx, call.id, merger), **args.model_dump())
            )
            if result.success:
                output = result.output
            else:
                error = result.error or "Tool reported a failure"
                output = f"Error: {error}"
        except _Interrupted:
            error = "Tool call cancelled"
            output = f"Error: {error}"
            self.log.info("agent.tool_call.cancelled", run_id=ctx.id, tool=call.name)
        except Exception as e:
            error = e
            output = f"Error executing tool '{call.name}': {e}"
            self.log.warning(
                "agent.tool_call.error",
                run_id=ctx.id,
                tool=call.name,
                error=str(e),
                error_type=type(e).__name__,
            )

        await self.events.tool_end(
            ctx, call.id, result=output if error is None else None, error=error
        )
        await hooks.invoke(
            "on_tool_end",
            agent=self,
            context=ctx,
            tool_name=call.name,
            result=output if error is None else None,
            error=error,
        )
        await self._record_step(
            ctx,
            hooks,
            Step(
                type="tool_result",
                run_id=ctx.id,
                name=call.name,
                tool_call_id=call.id,
                result=output,
            ),
        )
        return output, error

    async def _retrieve(self, ctx: OperationContext, input: Any) -> str | None:
        assert self.retriever is not None
        call_id = f"retriever-{uuid.uuid4()}"
        await self.events.retriever_start(ctx, call_id, self.retriever.name, input)
        try:
            retrieved = await self.retriever.retrieve(input, ctx)
        except Exception as e:
            self.log.warning(
                "agent.retriever.error", run_id=ctx.id, error=str(e), error_type=type(e).__name__
            )
            await self.events.retriever_end(ctx, call_id, error=e)
            return None
        await self.events.retriever_end(ctx, call_id, result=retrieved)
        return retrieved

    async def _build_messages(self, ctx: OperationContext, input: Any) -> list[dict[str, Any]]:
        system = self.sub_agents.generate_supervisor_instructions(self.instructions)
        if self.retriever is not None:
            retrieved = await self._retrieve(ctx, input)
            if retrieved:
                system = f"{system}\n\nRelevant context:\n{retrieved}".strip()

        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        if isinstance(input, str):
            messages.append({"role": "user", "content": input})
        else:
            messages.extend(dict(m) for m in input)
        return messages

    @staticmethod
    def _assistant_message(response: ModelResponse) -> dict[str, Any]:
        return {
            "role": "assistant",
            "content": response.content,
            "tool_calls": [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in response.tool_calls
            ],
        }

    def __repr__(self) -> str:
        return (
            f"<Agent(name='{self.name}', tools={len(self.tools)}, "
            f"sub_agents={len(self.sub_agents)})>"
        )
