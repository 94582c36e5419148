"""
Telemetry exporter - fire-and-forget delivery of run data to the backend.

Every export call builds a QueueTask around a TelemetryApiClient call and
enqueues it on a dedicated BackgroundQueue. Callers never wait for the
network and never see export failures; the queue retries and logs them.

Task ids:
    export-history-<run id>
    update-history-<run id>
    export-timeline-<event id>
    export-steps-<run id>
"""

import os
from typing import Any

import structlog

from ..config.schema import ExporterConfig
from ..queue.background import BackgroundQueue, QueueTask
from .client import TelemetryApiClient, TelemetryExportError

logger = structlog.get_logger()

__all__ = ["TelemetryExporter"]


class TelemetryExporter:
    """Queues run records, updates, timeline events and steps for export."""

    def __init__(self, client: TelemetryApiClient, queue: BackgroundQueue) -> None:
        self.client = client
        self.queue = queue
        self.log = logger.bind(component="telemetry_exporter")

    @classmethod
    def from_config(cls, config: ExporterConfig) -> "TelemetryExporter":
        """Build an exporter from configuration.

        The secret key is read from the environment variable named by
        config.secret_key_env; it is never stored in configuration files.
        """
        secret_key = os.environ.get(config.secret_key_env, "")
        if not secret_key:
            logger.warning(
                "telemetry_exporter.missing_secret_key",
                env_var=config.secret_key_env,
            )
        client = TelemetryApiClient(
            base_url=config.base_url,
            public_key=config.public_key,
            secret_key=secret_key,
            timeout=config.request_timeout,
        )
        return cls(client, BackgroundQueue.from_config(config.queue, name="telemetry"))

    def _enqueue(self, task_id: str, call: Any, payload: dict[str, Any]) -> QueueTask:
        async def _operation() -> Any:
            try:
                return await call(payload)
            except TelemetryExportError as e:
                if e.is_auth_error:
                    self.log.error(
                        "telemetry_exporter.unauthorized",
                        task_id=task_id,
                        msg="Check the public key and the secret key environment variable",
                    )
                raise

        return self.queue.enqueue(QueueTask(id=task_id, operation=_operation))

    def export_history_async(self, payload: dict[str, Any]) -> QueueTask:
        return self._enqueue(f"export-history-{payload['id']}", self.client.export_history, payload)

    def update_history_async(self, record_id: str, updates: dict[str, Any]) -> QueueTask:
        payload = {"id": record_id, "updates": updates}
        return self._enqueue(f"update-history-{record_id}", self.client.update_history, payload)

    def export_timeline_event_async(
        self, agent_id: str, record_id: str, event: dict[str, Any]
    ) -> QueueTask:
        payload = {"agent_id": agent_id, "history_id": record_id, "event": event}
        return self._enqueue(
            f"export-timeline-{event['id']}", self.client.export_timeline_event, payload
        )

    def export_steps_async(
        self, agent_id: str, record_id: str, steps: list[dict[str, Any]]
    ) -> QueueTask:
        payload = {"agent_id": agent_id, "history_id": record_id, "steps": steps}
        return self._enqueue(f"export-steps-{record_id}", self.client.export_steps, payload)

    async def flush(self) -> None:
        """Wait for every queued export to finish (succeed or fail)."""
        await self.queue.join()

    async def aclose(self) -> None:
        """Flush pending exports and close the HTTP client."""
        await self.flush()
        await self.client.aclose()
        self.log.info("telemetry_exporter.closed", **self.queue.stats)

    def __repr__(self) -> str:
        return f"<TelemetryExporter(client={self.client!r}, queue={self.queue!r})>"
