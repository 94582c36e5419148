"""
OperationContext - per-run mutable state.

One OperationContext exists per run (top-level or delegated). It carries the
run's identity, its user-supplied context map, the links to a parent run,
the open tool spans and the shared step log.

Invariants:
- id equals the id of the run record created together with the context.
- is_active goes True -> False exactly once, when the run's terminal event
  is published.
- At most one open span per tool call id. Duplicate opens and unknown closes
  are logged and ignored.
- user_context is shared by reference with delegated runs and copied
  (user_context_snapshot) whenever it is handed outside the run.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from ..events.bus import EventBus
from ..events.types import TimelineEvent
from ..history.models import RunRecord
from .steps import StepLog

logger = structlog.get_logger()

__all__ = ["OperationContext", "create_operation_context"]


@dataclass
class OperationContext:
    """State of one run.

    Attributes:
        history_entry: Run record created with the context.
        bus: Event bus the run publishes to.
        user_context: Caller-supplied map, shared with delegated runs.
        step_log: Step log, shared with the parent run when delegated.
        parent_run_id: Id of the delegating run, if any.
        parent_history_entry_id: Run record id of the delegating run, if any.
        cancel_event: Set by the caller to cancel the run (and its delegates).
        operation_name: "generate_text" or "stream_text".
        run_span: Tracing span of the run.
    """

    history_entry: RunRecord
    bus: EventBus
    user_context: dict[str, Any] = field(default_factory=dict)
    step_log: StepLog = field(default_factory=StepLog)
    parent_run_id: str | None = None
    parent_history_entry_id: str | None = None
    cancel_event: asyncio.Event | None = None
    operation_name: str = ""
    run_span: Any = None
    tool_spans: dict[str, Any] = field(default_factory=dict)
    is_active: bool = field(default=True, init=False)
    start_event: TimelineEvent | None = field(default=None, init=False)
    # tool_call_id / retriever call id -> start event
    open_events: dict[str, TimelineEvent] = field(default_factory=dict, init=False)

    def __post_init__(self) -> None:
        self.log = logger.bind(component="operation", run_id=self.id)

    @property
    def id(self) -> str:
        return self.history_entry.id

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    @property
    def is_delegated(self) -> bool:
        return self.parent_run_id is not None

    def deactivate(self) -> bool:
        """Mark the run finished.

        Returns:
            True the first time, False if the run was already inactive.
        """
        if not self.is_active:
            return False
        self.is_active = False
        return True

    def user_context_snapshot(self) -> dict[str, Any]:
        return dict(self.user_context)

    # ── Tool spans ────────────────────────────────────────────────────────

    def open_tool_span(self, tool_call_id: str, span: Any) -> bool:
        """Register the span of a tool call.

        Returns:
            False (and logs a warning) if a span is already open for the id.
        """
        if tool_call_id in self.tool_spans:
            self.log.warning("operation.tool_span.duplicate", tool_call_id=tool_call_id)
            return False
        self.tool_spans[tool_call_id] = span
        return True

    def close_tool_span(self, tool_call_id: str) -> Any:
        """Remove and return the span of a tool call.

        Returns:
            The span, or None (and logs a warning) if none is open.
        """
        span = self.tool_spans.pop(tool_call_id, None)
        if span is None:
            self.log.warning("operation.tool_span.not_found", tool_call_id=tool_call_id)
        return span

    def __repr__(self) -> str:
        return (
            f"<OperationContext(id='{self.id}', active={self.is_active}, "
            f"parent='{self.parent_run_id}', open_spans={len(self.tool_spans)})>"
        )


def create_operation_context(
    history_entry: RunRecord,
    bus: EventBus,
    *,
    operation_name: str = "",
    parent: OperationContext | None = None,
    user_context: dict[str, Any] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> OperationContext:
    """Build the context of a new run.

    A delegated run (parent given) shares the parent's user context, step log
    and cancel event unless the caller supplies its own user context or
    cancel event; it records the parent's ids as back-references.
    """
    if parent is None:
        return OperationContext(
            history_entry=history_entry,
            bus=bus,
            user_context=user_context if user_context is not None else {},
            cancel_event=cancel_event,
            operation_name=operation_name,
        )

    return OperationContext(
        history_entry=history_entry,
        bus=bus,
        user_context=user_context if user_context is not None else parent.user_context,
        step_log=parent.step_log,
        parent_run_id=parent.id,
        parent_history_entry_id=parent.history_entry.id,
        cancel_event=cancel_event if cancel_event is not None else parent.cancel_event,
        operation_name=operation_name,
    )
