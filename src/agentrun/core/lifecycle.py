"""
Lifecycle publishing - start/terminal event pairs for runs, tools and retrievers.

LifecyclePublisher is the only writer of timeline events. Each event is
first persisted through the HistoryRecorder and then fanned out on the
context's EventBus, so subscribers never see an event the store lacks.

Invariants:
- agent:start is published once per run, before any tool or retriever event.
- Exactly one terminal agent event (success, error or cancel) per run; it
  deactivates the context. Later terminal attempts are ignored with a warning.
- Every start event gets at most one terminal event, whose
  parent_event_id is the start event id. Tool/retriever starts link to
  agent:start.
- Operations still open when the run ends are closed with an error terminal
  before the agent terminal is published.
"""

from typing import Any

import structlog

from ..events.types import EventEntity, EventKind, TimelineEvent, new_event
from ..history.models import UsageInfo
from ..history.recorder import HistoryRecorder
from ..telemetry.otel import NoopTracer, RunTracer
from .context import OperationContext

logger = structlog.get_logger()

__all__ = ["LifecyclePublisher"]


def _status_message(error: BaseException | str) -> dict[str, Any]:
    if isinstance(error, BaseException):
        return {"message": str(error) or type(error).__name__, "type": type(error).__name__}
    return {"message": error}


class LifecyclePublisher:
    """Publishes the timeline events of one agent's runs."""

    def __init__(
        self,
        agent_id: str,
        agent_name: str,
        history: HistoryRecorder,
        tracer: RunTracer | NoopTracer | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.agent_name = agent_name
        self.history = history
        self.tracer = tracer or NoopTracer()
        self.log = logger.bind(component="lifecycle", agent=agent_name)

    def _metadata(self, ctx: OperationContext, **extra: Any) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "agent_id": self.agent_id,
            "display_name": self.agent_name,
            "user_context": ctx.user_context_snapshot(),
        }
        if ctx.parent_run_id:
            metadata["parent_run_id"] = ctx.parent_run_id
            metadata["parent_history_entry_id"] = ctx.parent_history_entry_id
        metadata.update({k: v for k, v in extra.items() if v is not None})
        return metadata

    async def _publish(self, ctx: OperationContext, event: TimelineEvent) -> TimelineEvent:
        await self.history.append_timeline_event(ctx.id, event)
        await ctx.bus.publish(event)
        return event

    # ── Agent run ─────────────────────────────────────────────────────────

    async def agent_start(
        self,
        ctx: OperationContext,
        input: Any,
        model: str | None = None,
        parent_span: Any = None,
    ) -> TimelineEvent:
        """Open the run span and publish agent:start."""
        if ctx.start_event is not None:
            self.log.warning("lifecycle.agent_start.duplicate", run_id=ctx.id)
            return ctx.start_event

        ctx.run_span = self.tracer.start_run_span(
            self.agent_name, ctx.id, ctx.operation_name, model=model, parent_span=parent_span
        )
        event = new_event(
            EventEntity.AGENT,
            EventKind.START,
            ctx.id,
            input={"input": input},
            metadata=self._metadata(ctx, operation=ctx.operation_name, model=model),
        )
        ctx.start_event = event
        return await self._publish(ctx, event)

    async def agent_success(
        self, ctx: OperationContext, output: str, usage: UsageInfo | None = None
    ) -> TimelineEvent | None:
        return await self._agent_terminal(
            ctx,
            EventKind.SUCCESS,
            output={"text": output, "usage": usage.to_dict() if usage else None},
            usage=usage,
        )

    async def agent_error(
        self, ctx: OperationContext, error: BaseException
    ) -> TimelineEvent | None:
        return await self._agent_terminal(ctx, EventKind.ERROR, error=error)

    async def agent_cancel(
        self, ctx: OperationContext, reason: str = "Operation cancelled"
    ) -> TimelineEvent | None:
        return await self._agent_terminal(
            ctx,
            EventKind.CANCEL,
            status_message={"message": reason, "code": "USER_CANCELLED"},
        )

    async def _agent_terminal(
        self,
        ctx: OperationContext,
        kind: EventKind,
        output: dict[str, Any] | None = None,
        error: BaseException | None = None,
        status_message: dict[str, Any] | None = None,
        usage: UsageInfo | None = None,
    ) -> TimelineEvent | None:
        if not ctx.deactivate():
            self.log.warning(
                "lifecycle.agent_terminal.duplicate", run_id=ctx.id, kind=kind.value
            )
            return None

        for call_id in list(ctx.open_events):
            await self._operation_end(
                ctx, call_id, error=f"Run ended before the operation finished ({kind.value})"
            )

        event = new_event(
            EventEntity.AGENT,
            kind,
            ctx.id,
            parent_event_id=ctx.start_event.id if ctx.start_event else None,
            start_time=ctx.start_event.start_time if ctx.start_event else None,
            output=output,
            status_message=status_message or (_status_message(error) if error else None),
            metadata=self._metadata(ctx, operation=ctx.operation_name),
        )
        await self._publish(ctx, event)

        if ctx.run_span is not None:
            span_error: BaseException | str | None = None
            if kind is not EventKind.SUCCESS:
                span_error = error or (event.status_message or {}).get("message", kind.value)
            self.tracer.end_span(
                ctx.run_span,
                error=span_error,
                attributes={
                    "agentrun.status": kind.value,
                    "gen_ai.usage.input_tokens": usage.prompt_tokens if usage else None,
                    "gen_ai.usage.output_tokens": usage.completion_tokens if usage else None,
                },
            )
            ctx.run_span = None

        ctx.bus.close_trace(ctx.id)
        return event

    # ── Tools and retrievers ──────────────────────────────────────────────

    async def tool_start(
        self,
        ctx: OperationContext,
        tool_call_id: str,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> TimelineEvent:
        """Open the tool span and publish tool:start.

        A call id that is already open keeps its first span and start event;
        the repeated start is logged and returns the existing event.
        """
        existing = ctx.open_events.get(tool_call_id)
        if existing is not None or tool_call_id in ctx.tool_spans:
            self.log.warning(
                "lifecycle.tool_start.duplicate", run_id=ctx.id, tool_call_id=tool_call_id
            )
            if existing is not None:
                return existing
            # Span without a start event: drop it so the new pair stays matched
            self.tracer.end_span(ctx.close_tool_span(tool_call_id), error="Superseded tool span")

        span = self.tracer.start_tool_span(
            tool_name, tool_call_id, arguments, parent_span=ctx.run_span
        )
        ctx.open_tool_span(tool_call_id, span)
        return await self._operation_start(
            ctx,
            EventEntity.TOOL,
            tool_call_id,
            input=arguments,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
        )

    async def tool_end(
        self,
        ctx: OperationContext,
        tool_call_id: str,
        result: Any = None,
        error: BaseException | str | None = None,
    ) -> TimelineEvent | None:
        """Close the tool span and publish tool:success or tool:error."""
        return await self._operation_end(ctx, tool_call_id, result=result, error=error)

    async def retriever_start(
        self, ctx: OperationContext, call_id: str, retriever_name: str, input: Any
    ) -> TimelineEvent:
        return await self._operation_start(
            ctx,
            EventEntity.RETRIEVER,
            call_id,
            input={"input": input},
            retriever_name=retriever_name,
        )

    async def retriever_end(
        self,
        ctx: OperationContext,
        call_id: str,
        result: Any = None,
        error: BaseException | str | None = None,
    ) -> TimelineEvent | None:
        return await self._operation_end(ctx, call_id, result=result, error=error)

    async def _operation_start(
        self,
        ctx: OperationContext,
        entity: EventEntity,
        call_id: str,
        input: dict[str, Any],
        **metadata: Any,
    ) -> TimelineEvent:
        if ctx.start_event is None:
            self.log.warning("lifecycle.operation_before_start", run_id=ctx.id, entity=entity.value)
        event = new_event(
            entity,
            EventKind.START,
            ctx.id,
            parent_event_id=ctx.start_event.id if ctx.start_event else None,
            input=input,
            metadata=self._metadata(ctx, **metadata),
        )
        ctx.open_events[call_id] = event
        return await self._publish(ctx, event)

    async def _operation_end(
        self,
        ctx: OperationContext,
        call_id: str,
        result: Any = None,
        error: BaseException | str | None = None,
    ) -> TimelineEvent | None:
        start = ctx.open_events.pop(call_id, None)
        if start is None:
            self.log.warning("lifecycle.operation_end.unknown", run_id=ctx.id, call_id=call_id)
            return None

        if start.type is EventEntity.TOOL:
            span = ctx.close_tool_span(call_id)
            if span is not None:
                self.tracer.end_span(span, error=error)

        event = new_event(
            start.type,
            EventKind.ERROR if error is not None else EventKind.SUCCESS,
            ctx.id,
            parent_event_id=start.id,
            start_time=start.start_time,
            output={"result": result} if error is None else None,
            status_message=_status_message(error) if error is not None else None,
            metadata=dict(start.metadata),
        )
        return await self._publish(ctx, event)

    def __repr__(self) -> str:
        return f"<LifecyclePublisher(agent='{self.agent_name}')>"
