"""
agentrun - run-concurrency core for LLM agents.

Operation contexts and timeline events, a stream merge engine for
supervisor/sub-agent output, run history with asynchronous export to a
telemetry backend, and sub-agent delegation.
"""

from .agents import Agent, ModelGenerationError, RunResult, StreamTextResult
from .config import AppConfig, load_config
from .core import OperationContext, RunHooks
from .events import EventBus, TimelineEvent
from .history import HistoryRecorder, RunRecord, RunStatus
from .runtime import Runtime
from .streaming import StreamEvent, StreamMerger
from .tools import BaseTool, ToolContext, ToolResult

__version__ = "0.1.0"

__all__ = [
    "Agent",
    "ModelGenerationError",
    "RunResult",
    "StreamTextResult",
    "AppConfig",
    "load_config",
    "OperationContext",
    "RunHooks",
    "EventBus",
    "TimelineEvent",
    "HistoryRecorder",
    "RunRecord",
    "RunStatus",
    "Runtime",
    "StreamEvent",
    "StreamMerger",
    "BaseTool",
    "ToolContext",
    "ToolResult",
    "__version__",
]
