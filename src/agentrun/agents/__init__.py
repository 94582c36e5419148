"""
Agents module - run orchestration and sub-agent delegation.
"""

from .agent import Agent, ModelGenerationError, Retriever, RunResult, StreamTextResult
from .delegation import DelegateTaskTool, HandoffResult, SubAgentManager

__all__ = [
    "Agent",
    "ModelGenerationError",
    "Retriever",
    "RunResult",
    "StreamTextResult",
    "DelegateTaskTool",
    "HandoffResult",
    "SubAgentManager",
]
