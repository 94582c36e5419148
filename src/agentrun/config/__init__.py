"""
Configuration module for agentrun.

Exports the main components for convenient imports.
"""

from .loader import deep_merge, load_config
from .schema import (
    AgentConfig,
    AppConfig,
    ExporterConfig,
    HistoryConfig,
    LLMConfig,
    LoggingConfig,
    QueueConfig,
    StreamingConfig,
    TelemetryConfig,
)

__all__ = [
    "load_config",
    "deep_merge",
    "AppConfig",
    "AgentConfig",
    "ExporterConfig",
    "HistoryConfig",
    "LLMConfig",
    "LoggingConfig",
    "QueueConfig",
    "StreamingConfig",
    "TelemetryConfig",
]
