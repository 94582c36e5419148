"""
LLM module - model provider contract and the LiteLLM implementation.
"""

from .adapter import LiteLLMProvider
from .base import ModelProvider, ModelResponse, StreamChunk, ToolCall

__all__ = [
    "LiteLLMProvider",
    "ModelProvider",
    "ModelResponse",
    "StreamChunk",
    "ToolCall",
]
