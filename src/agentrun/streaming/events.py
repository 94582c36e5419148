"""
Stream parts emitted by streaming runs.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any

__all__ = [
    "StreamEvent",
    "TEXT_DELTA",
    "TOOL_CALL",
    "TOOL_RESULT",
    "FINISH",
]

TEXT_DELTA = "text-delta"
TOOL_CALL = "tool-call"
TOOL_RESULT = "tool-result"
FINISH = "finish"


@dataclass(frozen=True)
class StreamEvent:
    """One part of a run's output stream.

    Attributes:
        type: text-delta, tool-call, tool-result or finish.
        data: Part payload (text, toolCallId, toolName, args, result, ...).
        sub_agent_id / sub_agent_name: Set on parts injected from a sub-agent run.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    sub_agent_id: str | None = None
    sub_agent_name: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        return self.data.get("text", "") if self.type == TEXT_DELTA else ""

    @property
    def from_sub_agent(self) -> bool:
        return self.sub_agent_id is not None

    def tagged(self, sub_agent_id: str, sub_agent_name: str) -> "StreamEvent":
        """Copy of the part attributed to a sub-agent.

        Tool names are prefixed with the sub-agent name so the parent stream
        shows who called what ("researcher: web_search").
        """
        data = dict(self.data)
        tool_name = data.get("toolName")
        if tool_name and not str(tool_name).startswith(f"{sub_agent_name}: "):
            data["toolName"] = f"{sub_agent_name}: {tool_name}"
        return replace(self, data=data, sub_agent_id=sub_agent_id, sub_agent_name=sub_agent_name)
