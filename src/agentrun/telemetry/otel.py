"""
OpenTelemetry integration - distributed traces for agent runs.

RunTracer emits one span per run and one child span per tool call. Spans are
opened and closed explicitly (not as context managers) because a run's
lifetime spans many awaits of an async generator, and each tool span is
owned by the run's OperationContext until its terminal event.

Attributes follow the OpenTelemetry GenAI Semantic Conventions where they
apply (gen_ai.request.model, gen_ai.usage.input_tokens, ...).

Supported exporters:
- otlp: OpenTelemetry Protocol (gRPC)
- console: prints spans to stderr (debugging)
- json-file: appends spans as JSON lines to a file

If OpenTelemetry is not installed, NoopTracer keeps the same interface.
"""

import json
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()

__all__ = [
    "NoopSpan",
    "NoopTracer",
    "RunTracer",
    "create_tracer",
]

# OpenTelemetry is an optional dependency (extra: telemetry)
try:
    from opentelemetry import trace  # type: ignore[import-untyped]
    from opentelemetry.sdk.resources import Resource  # type: ignore[import-untyped]
    from opentelemetry.sdk.trace import TracerProvider  # type: ignore[import-untyped]
    from opentelemetry.sdk.trace.export import (  # type: ignore[import-untyped]
        BatchSpanProcessor,
        ConsoleSpanExporter,
        SimpleSpanProcessor,
    )
    from opentelemetry.trace import Status, StatusCode  # type: ignore[import-untyped]

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False


SERVICE_NAME = "agentrun"
SERVICE_VERSION = "0.1.0"


class NoopSpan:
    """Span that does nothing (when OTel is unavailable or disabled)."""

    def set_attribute(self, key: str, value: Any) -> None:
        """No-op."""

    def set_status(self, status: Any) -> None:
        """No-op."""

    def record_exception(self, exception: BaseException) -> None:
        """No-op."""

    def end(self) -> None:
        """No-op."""


class NoopTracer:
    """Tracer that does nothing.

    Lets run code open and close spans without conditionals.
    """

    enabled = False

    def start_run_span(
        self,
        agent_name: str,
        run_id: str,
        operation: str,
        model: str | None = None,
        parent_span: Any = None,
    ) -> NoopSpan:
        return NoopSpan()

    def start_tool_span(
        self,
        tool_name: str,
        tool_call_id: str,
        arguments: dict[str, Any] | None = None,
        parent_span: Any = None,
    ) -> NoopSpan:
        return NoopSpan()

    def end_span(
        self,
        span: Any,
        error: BaseException | str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """No-op."""

    def shutdown(self) -> None:
        """No-op."""


class RunTracer:
    """OpenTelemetry tracer for agent runs and tool calls.

    Attributes:
        enabled: Whether spans are actually emitted.
        exporter_type: Configured exporter name.
    """

    enabled = True

    def __init__(
        self,
        exporter: str = "console",
        endpoint: str = "http://localhost:4317",
        trace_file: str | None = None,
    ) -> None:
        """Set up the provider and exporter.

        Args:
            exporter: Exporter type ('otlp', 'console', 'json-file').
            endpoint: OTLP endpoint.
            trace_file: Output path for the json-file exporter.
        """
        self.exporter_type = exporter
        self.log = logger.bind(component="telemetry")

        resource = Resource.create({
            "service.name": SERVICE_NAME,
            "service.version": SERVICE_VERSION,
        })
        self._provider = TracerProvider(resource=resource)

        match exporter:
            case "otlp":
                self._setup_otlp(endpoint)
            case "console":
                self._setup_console()
            case "json-file":
                self._setup_json_file(trace_file)
            case _:
                self.log.warning("telemetry.unknown_exporter", exporter=exporter)
                self._setup_console()

        # Private provider: embedding apps keep control of the global one
        self._tracer = self._provider.get_tracer(SERVICE_NAME, SERVICE_VERSION)

        self.log.info(
            "telemetry.initialized",
            exporter=exporter,
            endpoint=endpoint if exporter == "otlp" else None,
        )

    def _setup_otlp(self, endpoint: str) -> None:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (  # type: ignore[import-untyped]
                OTLPSpanExporter,
            )
        except ImportError:
            self.log.warning(
                "telemetry.otlp_not_available",
                msg="opentelemetry-exporter-otlp not installed. Using console.",
            )
            self._setup_console()
            return

        self._provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    def _setup_console(self) -> None:
        self._provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    def _setup_json_file(self, trace_file: str | None) -> None:
        from opentelemetry.sdk.trace.export import (  # type: ignore[import-untyped]
            SpanExporter,
            SpanExportResult,
        )

        path = Path(trace_file or ".agentrun/traces.jsonl")
        path.parent.mkdir(parents=True, exist_ok=True)

        class JsonFileExporter(SpanExporter):
            """Appends spans as JSON lines."""

            def export(self, spans: Any) -> Any:
                with open(path, "a", encoding="utf-8") as f:
                    for span in spans:
                        data = {
                            "name": span.name,
                            "trace_id": format(span.context.trace_id, "032x"),
                            "span_id": format(span.context.span_id, "016x"),
                            "parent_span_id": (
                                format(span.parent.span_id, "016x") if span.parent else None
                            ),
                            "start_time": span.start_time,
                            "end_time": span.end_time,
                            "attributes": dict(span.attributes) if span.attributes else {},
                            "status": span.status.status_code.name,
                        }
                        f.write(json.dumps(data, default=str) + "\n")
                return SpanExportResult.SUCCESS

            def shutdown(self) -> None:
                pass

        self._provider.add_span_processor(SimpleSpanProcessor(JsonFileExporter()))

    def _context_for(self, parent_span: Any) -> Any:
        if parent_span is None or isinstance(parent_span, NoopSpan):
            return None
        return trace.set_span_in_context(parent_span)

    def start_run_span(
        self,
        agent_name: str,
        run_id: str,
        operation: str,
        model: str | None = None,
        parent_span: Any = None,
    ) -> Any:
        """Open the span of a run. Sub-agent runs pass the parent run span."""
        attributes: dict[str, Any] = {
            "agentrun.agent": agent_name,
            "agentrun.run_id": run_id,
            "agentrun.operation": operation,
        }
        if model:
            attributes["gen_ai.request.model"] = model
        return self._tracer.start_span(
            f"agentrun.run.{agent_name}",
            context=self._context_for(parent_span),
            attributes=attributes,
        )

    def start_tool_span(
        self,
        tool_name: str,
        tool_call_id: str,
        arguments: dict[str, Any] | None = None,
        parent_span: Any = None,
    ) -> Any:
        """Open the span of a tool call as a child of the run span."""
        attributes: dict[str, Any] = {
            "agentrun.tool.name": tool_name,
            "agentrun.tool.call_id": tool_call_id,
        }
        if arguments:
            attributes["agentrun.tool.arguments"] = json.dumps(arguments, default=str)[:1000]
        return self._tracer.start_span(
            f"agentrun.tool.{tool_name}",
            context=self._context_for(parent_span),
            attributes=attributes,
        )

    def end_span(
        self,
        span: Any,
        error: BaseException | str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """Set the final status and attributes of a span and end it.

        Args:
            span: Span returned by start_run_span / start_tool_span.
            error: Exception or error message; None marks the span OK.
            attributes: Extra attributes; None values are skipped.
        """
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        if error is not None:
            if isinstance(error, BaseException):
                span.record_exception(error)
            span.set_status(Status(StatusCode.ERROR, str(error)))
        else:
            span.set_status(Status(StatusCode.OK))
        span.end()

    def shutdown(self) -> None:
        """Flush pending spans and stop the provider."""
        try:
            self._provider.shutdown()
        except Exception as e:
            self.log.warning("telemetry.shutdown_error", error=str(e))


def create_tracer(
    enabled: bool = False,
    exporter: str = "console",
    endpoint: str = "http://localhost:4317",
    trace_file: str | None = None,
) -> RunTracer | NoopTracer:
    """Factory for the appropriate tracer.

    Returns NoopTracer when disabled or when OpenTelemetry is not installed.
    """
    if not enabled:
        return NoopTracer()

    if not OTEL_AVAILABLE:
        logger.warning(
            "telemetry.otel_not_installed",
            msg="OpenTelemetry not available. Install with: pip install agentrun[telemetry]",
        )
        return NoopTracer()

    return RunTracer(exporter=exporter, endpoint=endpoint, trace_file=trace_file)
