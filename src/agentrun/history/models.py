"""
Run record data structures.

RunRecord is the durable summary of one run: created when the run starts,
mutated only through the HistoryRecorder, serialisable to/from plain dicts
for JSON stores and the telemetry backend.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

__all__ = [
    "RunRecord",
    "RunStatus",
    "UsageInfo",
]


class RunStatus(str, Enum):
    """Status of a run record."""

    WORKING = "working"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self is not RunStatus.WORKING


@dataclass
class UsageInfo:
    """Token usage. Additive across model calls and delegated runs."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "UsageInfo | dict[str, Any] | None") -> None:
        if other is None:
            return
        if isinstance(other, dict):
            other = UsageInfo.from_dict(other)
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageInfo":
        prompt = int(data.get("prompt_tokens", 0) or 0)
        completion = int(data.get("completion_tokens", 0) or 0)
        total = int(data.get("total_tokens", 0) or 0) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class RunRecord:
    """Durable summary of one run.

    Attributes:
        id: Run id, shared with the run's OperationContext.
        agent_id: Id of the agent that executed the run.
        input: Original input (text or list of messages).
        output: Final text output, empty until the run finishes.
        status: working until the run reaches a final status.
        steps: Step dicts in append order.
    """

    id: str
    agent_id: str
    input: Any
    output: str = ""
    status: RunStatus = RunStatus.WORKING
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    usage: UsageInfo | None = None
    steps: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    conversation_id: str | None = None
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-compatible dict."""
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "input": self.input,
            "output": self.output,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "usage": self.usage.to_dict() if self.usage else None,
            "steps": list(self.steps),
            "metadata": dict(self.metadata),
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunRecord":
        """Build a RunRecord from a dict, ignoring unknown keys."""
        valid = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in valid}
        kwargs["status"] = RunStatus(kwargs.get("status", RunStatus.WORKING.value))
        if isinstance(kwargs.get("start_time"), str):
            kwargs["start_time"] = datetime.fromisoformat(kwargs["start_time"])
        if isinstance(kwargs.get("end_time"), str):
            kwargs["end_time"] = datetime.fromisoformat(kwargs["end_time"])
        if isinstance(kwargs.get("usage"), dict):
            kwargs["usage"] = UsageInfo.from_dict(kwargs["usage"])
        return cls(**kwargs)

    def __repr__(self) -> str:
        return (
            f"<RunRecord(id='{self.id}', agent='{self.agent_id}', "
            f"status={self.status.value}, steps={len(self.steps)})>"
        )
