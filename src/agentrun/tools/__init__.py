"""
Tools module - tool contract and registry.
"""

from .base import BaseTool, ToolContext, ToolResult
from .registry import DuplicateToolError, ToolNotFoundError, ToolRegistry

__all__ = [
    "BaseTool",
    "ToolContext",
    "ToolResult",
    "ToolRegistry",
    "ToolNotFoundError",
    "DuplicateToolError",
]
