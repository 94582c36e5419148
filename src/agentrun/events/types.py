"""
Timeline event taxonomy.

Every observable unit of work in a run (the agent run itself, each tool call,
each retriever call) is recorded as a pair of events: a start event and one
terminal event. Events are immutable once built.

Naming: "<entity>:<kind>", e.g. "agent:start", "tool:success".

Linkage:
- trace_id is the id of the run that owns the event.
- parent_event_id, when present, is the id of an event of the same trace that
  was published before this one (tool:start -> agent:start,
  tool:success -> tool:start).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

__all__ = [
    "EventEntity",
    "EventKind",
    "EventStatus",
    "TimelineEvent",
    "new_event",
    "utc_now_iso",
]


class EventEntity(str, Enum):
    """What the event describes."""

    AGENT = "agent"
    TOOL = "tool"
    RETRIEVER = "retriever"


class EventKind(str, Enum):
    """Position of the event in its start/terminal pair."""

    START = "start"
    SUCCESS = "success"
    ERROR = "error"
    # Only agent runs can be cancelled
    CANCEL = "cancel"

    @property
    def is_terminal(self) -> bool:
        return self is not EventKind.START


class EventStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


_KIND_STATUS = {
    EventKind.START: EventStatus.RUNNING,
    EventKind.SUCCESS: EventStatus.COMPLETED,
    EventKind.ERROR: EventStatus.ERROR,
    EventKind.CANCEL: EventStatus.CANCELLED,
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TimelineEvent(BaseModel):
    """An immutable lifecycle event of a run."""

    id: str = Field(description="Unique event id")
    name: str = Field(description="'<entity>:<kind>', e.g. 'tool:start'")
    type: EventEntity
    status: EventStatus
    level: str = "INFO"
    start_time: str = Field(description="ISO-8601 UTC timestamp")
    end_time: str | None = None
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    status_message: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    trace_id: str = Field(description="Id of the run that owns this event")
    parent_event_id: str | None = None

    model_config = {"extra": "forbid", "frozen": True}

    @property
    def entity(self) -> EventEntity:
        return self.type

    @property
    def kind(self) -> EventKind:
        return EventKind(self.name.split(":", 1)[1])

    @property
    def is_terminal(self) -> bool:
        return self.kind.is_terminal

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe representation for stores and the telemetry backend."""
        return self.model_dump(mode="json")


def new_event(
    entity: EventEntity,
    kind: EventKind,
    trace_id: str,
    *,
    parent_event_id: str | None = None,
    start_time: str | None = None,
    input: dict[str, Any] | None = None,
    output: dict[str, Any] | None = None,
    status_message: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> TimelineEvent:
    """Build a TimelineEvent with a fresh id.

    Terminal events get end_time = now; start_time defaults to now, callers
    pass the start event's start_time for terminal events so the pair spans
    the whole operation.
    """
    now = utc_now_iso()
    return TimelineEvent(
        id=str(uuid.uuid4()),
        name=f"{entity.value}:{kind.value}",
        type=entity,
        status=_KIND_STATUS[kind],
        level="ERROR" if kind is EventKind.ERROR else "INFO",
        start_time=start_time or now,
        end_time=now if kind.is_terminal else None,
        input=input,
        output=output,
        status_message=status_message,
        metadata=metadata or {},
        trace_id=trace_id,
        parent_event_id=parent_event_id,
    )
