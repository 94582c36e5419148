"""
Conversation steps and the shared step log.

A StepLog is created by a top-level run and handed by reference to every
sub-agent run it delegates to, so the parent ends up with the unified,
append-ordered record of everything that happened beneath it. Appends may
come from several concurrent runs (and from worker threads running blocking
tools), hence the lock.
"""

import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Iterator, Literal

__all__ = ["Step", "StepLog", "StepType"]

StepType = Literal["text", "tool_call", "tool_result"]


@dataclass(frozen=True)
class Step:
    """One entry of the step log.

    Attributes:
        type: text, tool_call or tool_result.
        run_id: Run that produced the step.
        sub_agent_id / sub_agent_name: Set when the step comes from a delegated run.
    """

    type: StepType
    run_id: str
    content: str | None = None
    name: str | None = None
    tool_call_id: str | None = None
    arguments: dict[str, Any] | None = None
    result: Any = None
    sub_agent_id: str | None = None
    sub_agent_name: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class StepLog:
    """Append-only, thread-safe log of steps."""

    def __init__(self) -> None:
        self._steps: list[Step] = []
        self._lock = threading.Lock()

    def append(self, step: Step) -> None:
        with self._lock:
            self._steps.append(step)

    def extend(self, steps: list[Step]) -> None:
        with self._lock:
            self._steps.extend(steps)

    def snapshot(self) -> list[Step]:
        """Copy of the steps in append order."""
        with self._lock:
            return list(self._steps)

    def for_run(self, run_id: str) -> list[Step]:
        return [s for s in self.snapshot() if s.run_id == run_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        return f"<StepLog({len(self)} steps)>"
