"""
Streaming module - stream parts, the merge engine and sub-agent forwarding.
"""

from .events import FINISH, TEXT_DELTA, TOOL_CALL, TOOL_RESULT, StreamEvent
from .forwarder import DEFAULT_FORWARD_TYPES, ForwardFn, StreamEventForwarder
from .merge import StreamMerger, SubAgentState

__all__ = [
    "StreamEvent",
    "TEXT_DELTA",
    "TOOL_CALL",
    "TOOL_RESULT",
    "FINISH",
    "DEFAULT_FORWARD_TYPES",
    "ForwardFn",
    "StreamEventForwarder",
    "StreamMerger",
    "SubAgentState",
]
