"""
Telemetry module - backend export and OpenTelemetry tracing.

The backend exporter is fire-and-forget through a BackgroundQueue.
OpenTelemetry is optional: install with `pip install agentrun[telemetry]`.
"""

from .client import TelemetryApiClient, TelemetryExportError
from .exporter import TelemetryExporter
from .otel import NoopTracer, RunTracer, create_tracer

__all__ = [
    "TelemetryApiClient",
    "TelemetryExportError",
    "TelemetryExporter",
    "NoopTracer",
    "RunTracer",
    "create_tracer",
]
