"""
HistoryRecorder - durable run records plus asynchronous export.

Every write goes to the store first (awaited, so the change is visible to
readers as soon as the call returns) and only then is mirrored to the
telemetry backend through the exporter's background queue. Export problems
are logged and never reach the caller.

Invariants:
- Updates export only the exportable fields whose values changed; an update
  that changes nothing exports nothing.
- With max_entries > 0, an agent never holds more than max_entries records:
  the oldest (by start time) are evicted before a new one is stored.
"""

import uuid
from datetime import datetime
from typing import Any

import structlog

from ..events.bus import EventBus
from ..events.types import TimelineEvent
from ..telemetry.exporter import TelemetryExporter
from .models import RunRecord, RunStatus, UsageInfo
from .store import HistoryStore, InMemoryHistoryStore

logger = structlog.get_logger()

__all__ = ["HistoryRecorder", "EXPORTABLE_FIELDS"]

# Fields mirrored to the backend on update
EXPORTABLE_FIELDS = ("output", "status", "usage", "metadata", "end_time")


def _export_value(value: Any) -> Any:
    if isinstance(value, RunStatus):
        return value.value
    if isinstance(value, UsageInfo):
        return value.to_dict()
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class HistoryRecorder:
    """Records runs of one agent."""

    def __init__(
        self,
        agent_id: str,
        store: HistoryStore | None = None,
        max_entries: int = 0,
        exporter: TelemetryExporter | None = None,
        bus: EventBus | None = None,
    ) -> None:
        """Initialize the recorder.

        Args:
            agent_id: Agent whose runs are recorded.
            store: Durable store. Defaults to an InMemoryHistoryStore.
            max_entries: Maximum records kept for the agent. 0 = unlimited.
            exporter: Optional telemetry exporter.
            bus: Optional event bus notified of record creation and updates.
        """
        self.agent_id = agent_id
        self.store: HistoryStore = store if store is not None else InMemoryHistoryStore()
        self.max_entries = max_entries
        self.exporter = exporter
        self.bus = bus
        self.log = logger.bind(component="history", agent_id=agent_id)

    # ── Records ───────────────────────────────────────────────────────────

    async def create_record(
        self,
        input: Any,
        *,
        record_id: str | None = None,
        status: RunStatus = RunStatus.WORKING,
        metadata: dict[str, Any] | None = None,
        user_id: str | None = None,
        conversation_id: str | None = None,
        model: str | None = None,
    ) -> RunRecord:
        """Create and store a new run record.

        Returns:
            The stored record.
        """
        record = RunRecord(
            id=record_id or str(uuid.uuid4()),
            agent_id=self.agent_id,
            input=input,
            status=status,
            metadata=dict(metadata or {}),
            user_id=user_id,
            conversation_id=conversation_id,
            model=model,
        )

        await self._evict_if_full()
        await self.store.create(record)
        self.log.debug("history.record.created", record_id=record.id)

        if self.bus:
            await self.bus.emit_history_created(self.agent_id, record)

        self._export(
            lambda exporter: exporter.export_history_async(record.to_dict()),
            record_id=record.id,
        )
        return record

    async def update_record(self, record_id: str, **updates: Any) -> RunRecord | None:
        """Apply field updates to a record.

        Args:
            record_id: Record to update.
            **updates: RunRecord fields and their new values.

        Returns:
            The updated record, or None if it does not exist.
        """
        before = await self.store.get(record_id)
        if before is None:
            self.log.warning("history.record.not_found", record_id=record_id)
            return None

        updated = await self.store.update(record_id, updates)
        if updated is None:
            return None

        changed = {
            name: _export_value(getattr(updated, name))
            for name in EXPORTABLE_FIELDS
            if name in updates and getattr(before, name) != getattr(updated, name)
        }

        if self.bus:
            await self.bus.emit_history_updated(self.agent_id, updated)

        if changed:
            self._export(
                lambda exporter: exporter.update_history_async(record_id, changed),
                record_id=record_id,
            )
        return updated

    async def add_steps(self, record_id: str, steps: list[dict[str, Any]]) -> RunRecord | None:
        """Append steps to a record and export them."""
        if not steps:
            return await self.store.get(record_id)

        updated = await self.store.add_steps(record_id, steps)
        if updated is None:
            self.log.warning("history.record.not_found", record_id=record_id)
            return None

        self._export(
            lambda exporter: exporter.export_steps_async(self.agent_id, record_id, steps),
            record_id=record_id,
        )
        return updated

    # ── Timeline ──────────────────────────────────────────────────────────

    async def append_timeline_event(self, record_id: str, event: TimelineEvent) -> None:
        """Store a timeline event of a run and export it."""
        await self.store.add_timeline_event(record_id, event)
        self._export(
            lambda exporter: exporter.export_timeline_event_async(
                self.agent_id, record_id, event.to_payload()
            ),
            record_id=record_id,
        )

    async def get_timeline_events(self, record_id: str) -> list[TimelineEvent]:
        return await self.store.get_timeline_events(record_id)

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_record(self, record_id: str) -> RunRecord | None:
        return await self.store.get(record_id)

    async def list_records(self) -> list[RunRecord]:
        """Records of this agent, oldest first."""
        return await self.store.list_records(self.agent_id)

    # ── Internals ─────────────────────────────────────────────────────────

    async def _evict_if_full(self) -> None:
        if self.max_entries <= 0:
            return
        records = await self.store.list_records(self.agent_id)
        excess = len(records) - self.max_entries + 1
        if excess <= 0:
            return
        # Runs still in progress are never evicted, even if that overfills
        finished = [r for r in records if r.status is not RunStatus.WORKING]
        for record in finished[:excess]:
            await self.store.delete(record.id)
            self.log.info("history.record.evicted", record_id=record.id)
        if len(finished) < excess:
            self.log.warning(
                "history.eviction.short",
                max_entries=self.max_entries,
                working=len(records) - len(finished),
            )

    def _export(self, action: Any, **log_kw: Any) -> None:
        if self.exporter is None:
            return
        try:
            action(self.exporter)
        except Exception as e:
            self.log.warning(
                "history.export.enqueue_failed",
                error=str(e),
                error_type=type(e).__name__,
                **log_kw,
            )

    def __repr__(self) -> str:
        return f"<HistoryRecorder(agent_id='{self.agent_id}', max_entries={self.max_entries})>"
