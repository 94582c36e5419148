"""
Runtime - assembles the shared services from an AppConfig.

One Runtime holds what every agent of a process shares: the event bus, the
history store, the optional telemetry exporter and the tracer. Agents built
with create_agent() are wired to them.
"""

from typing import Any

import structlog

from .agents.agent import Agent
from .config.schema import AppConfig
from .events.bus import EventBus
from .history.recorder import HistoryRecorder
from .history.store import HistoryStore, InMemoryHistoryStore, JsonFileHistoryStore
from .llm.adapter import LiteLLMProvider
from .llm.base import ModelProvider
from .telemetry.exporter import TelemetryExporter
from .telemetry.otel import NoopTracer, RunTracer, create_tracer

logger = structlog.get_logger()

__all__ = ["Runtime"]


class Runtime:
    """Shared services for the agents of one process."""

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        bus: EventBus | None = None,
        store: HistoryStore | None = None,
        exporter: TelemetryExporter | None = None,
        tracer: RunTracer | NoopTracer | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.bus = bus or EventBus()
        self.store: HistoryStore = store if store is not None else InMemoryHistoryStore()
        self.exporter = exporter
        self.tracer = tracer or NoopTracer()
        self._recorders: dict[str, HistoryRecorder] = {}
        self.log = logger.bind(component="runtime")

    @classmethod
    def from_config(cls, config: AppConfig) -> "Runtime":
        """Build the services the configuration asks for."""
        store: HistoryStore
        if config.history.store == "json":
            store = JsonFileHistoryStore(config.history.directory)
        else:
            store = InMemoryHistoryStore()

        exporter = TelemetryExporter.from_config(config.exporter) if config.exporter.enabled else None
        tracer = create_tracer(
            enabled=config.telemetry.enabled,
            exporter=config.telemetry.exporter,
            endpoint=config.telemetry.endpoint,
            trace_file=config.telemetry.trace_file,
        )
        logger.info(
            "runtime.created",
            history_store=config.history.store,
            exporter=exporter is not None,
            tracing=tracer.enabled,
        )
        return cls(config, store=store, exporter=exporter, tracer=tracer)

    def history_for(self, agent_id: str) -> HistoryRecorder:
        """Recorder of an agent; one per agent id."""
        recorder = self._recorders.get(agent_id)
        if recorder is None:
            recorder = HistoryRecorder(
                agent_id,
                store=self.store,
                max_entries=self.config.history.max_entries,
                exporter=self.exporter,
                bus=self.bus,
            )
            self._recorders[agent_id] = recorder
        return recorder

    def create_agent(
        self,
        name: str,
        provider: ModelProvider | None = None,
        *,
        agent_id: str | None = None,
        **kwargs: Any,
    ) -> Agent:
        """Build an agent wired to the shared services.

        Args:
            name: Agent name.
            provider: Model provider. Defaults to LiteLLM with the llm config.
            agent_id: Stable id; defaults to name.
            **kwargs: Passed to Agent (instructions, tools, sub_agents, hooks, ...).
        """
        resolved_id = agent_id or name
        return Agent(
            name,
            provider or LiteLLMProvider(self.config.llm),
            agent_id=resolved_id,
            history=self.history_for(resolved_id),
            bus=self.bus,
            tracer=self.tracer,
            config=kwargs.pop("config", self.config.agent),
            streaming=kwargs.pop("streaming", self.config.streaming),
            **kwargs,
        )

    async def aclose(self) -> None:
        """Drain pending exports, then release the HTTP client and the tracer."""
        if self.exporter is not None:
            await self.exporter.aclose()
        self.tracer.shutdown()
        self.log.info("runtime.closed")

    def __repr__(self) -> str:
        return f"<Runtime(agents={len(self._recorders)}, exporter={self.exporter is not None})>"
