"""
Pydantic models for agentrun configuration.

Defines all configuration schemas using Pydantic v2 for validation,
defaults, and serialization. Durations are expressed in seconds.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field


class LLMConfig(BaseModel):
    """LLM provider configuration (LiteLLM)."""

    model: str = "gpt-4o"
    api_base: str | None = None
    api_key_env: str = "LITELLM_API_KEY"
    timeout: int = 60
    retries: int = 2

    model_config = {"extra": "forbid"}


class QueueConfig(BaseModel):
    """Settings for a bounded background work queue."""

    max_concurrency: int = Field(
        default=3,
        ge=1,
        description="Maximum number of tasks running at the same time",
    )
    default_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Per-attempt timeout in seconds for tasks without their own",
    )
    default_retries: int = Field(
        default=2,
        ge=0,
        description="Retries after the first attempt for tasks without their own",
    )
    retry_base_delay: float = Field(
        default=0.05,
        ge=0,
        description="Base delay in seconds; doubles on every retry",
    )

    model_config = {"extra": "forbid"}


class StreamingConfig(BaseModel):
    """Stream merge settings."""

    grace_window: float = Field(
        default=0.1,
        ge=0,
        description=(
            "Seconds the merged stream stays open after the primary stream ends, "
            "so late sub-agent events can still be delivered"
        ),
    )
    max_buffer: int = Field(
        default=0,
        ge=0,
        description="Maximum buffered items in the merged stream. 0 = unbounded.",
    )

    model_config = {"extra": "forbid"}


class HistoryConfig(BaseModel):
    """Run history settings."""

    max_entries: int = Field(
        default=0,
        ge=0,
        description="Maximum run records per agent. 0 = unlimited. Oldest are evicted first.",
    )
    store: Literal["memory", "json"] = "memory"
    directory: Path = Field(
        default=Path(".agentrun/history"),
        description="Directory of the json store",
    )

    model_config = {"extra": "forbid"}


class ExporterConfig(BaseModel):
    """Remote telemetry backend settings."""

    enabled: bool = False
    base_url: str = "http://localhost:8000/functions/v1"
    public_key: str = ""
    secret_key_env: str = "AGENTRUN_SECRET_KEY"
    request_timeout: float = 30.0
    queue: QueueConfig = Field(
        default_factory=lambda: QueueConfig(
            max_concurrency=10,
            default_timeout=30.0,
            default_retries=5,
        )
    )

    model_config = {"extra": "forbid"}


class TelemetryConfig(BaseModel):
    """OpenTelemetry tracing configuration."""

    enabled: bool = False
    exporter: Literal["otlp", "console", "json-file"] = "console"
    endpoint: str = "http://localhost:4317"
    trace_file: str | None = None

    model_config = {"extra": "forbid"}


class AgentConfig(BaseModel):
    """Per-agent run settings."""

    max_steps: int | None = Field(
        default=None,
        ge=1,
        description="Model steps per run. None = 10, or 10 per sub-agent for supervisors",
    )
    forward_event_types: list[str] = Field(
        default_factory=lambda: ["tool-call", "tool-result"],
        description="Sub-agent stream part types forwarded into the parent stream",
    )

    model_config = {"extra": "forbid"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["debug", "info", "warning", "error"] = "warning"
    file: Path | None = None
    verbose: int = 0

    model_config = {"extra": "forbid"}


class AppConfig(BaseModel):
    """Root configuration.

    Aggregates every section. Missing sections take their defaults.
    """

    llm: LLMConfig = Field(default_factory=LLMConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    exporter: ExporterConfig = Field(default_factory=ExporterConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"extra": "forbid"}
