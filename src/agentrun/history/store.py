"""
Durable stores for run records and their timeline events.

HistoryStore is the contract the HistoryRecorder writes through. Two
implementations ship with the package:

- InMemoryHistoryStore: process-local, the default.
- JsonFileHistoryStore: one JSON document per run in a directory
  (`<directory>/<run_id>.json`), holding the record and its events.

Both return detached copies: mutating a returned record never changes
stored state.
"""

import copy
import json
from pathlib import Path
from typing import Any, Protocol

import structlog

from ..events.types import TimelineEvent
from .models import RunRecord

logger = structlog.get_logger()

__all__ = [
    "HistoryStore",
    "InMemoryHistoryStore",
    "JsonFileHistoryStore",
]


class HistoryStore(Protocol):
    """Storage contract for run records."""

    async def create(self, record: RunRecord) -> None: ...

    async def get(self, record_id: str) -> RunRecord | None: ...

    async def update(self, record_id: str, updates: dict[str, Any]) -> RunRecord | None: ...

    async def delete(self, record_id: str) -> bool: ...

    async def list_records(self, agent_id: str) -> list[RunRecord]:
        """Records of an agent, oldest first."""
        ...

    async def add_steps(self, record_id: str, steps: list[dict[str, Any]]) -> RunRecord | None: ...

    async def add_timeline_event(self, record_id: str, event: TimelineEvent) -> None: ...

    async def get_timeline_events(self, record_id: str) -> list[TimelineEvent]: ...


def _apply_updates(record: RunRecord, updates: dict[str, Any]) -> None:
    for key, value in updates.items():
        if not hasattr(record, key) or key == "id":
            raise ValueError(f"Unknown or immutable run record field: {key}")
        setattr(record, key, value)


class InMemoryHistoryStore:
    """Process-local HistoryStore."""

    def __init__(self) -> None:
        self._records: dict[str, RunRecord] = {}
        self._events: dict[str, list[TimelineEvent]] = {}
        self.log = logger.bind(component="history_store", store="memory")

    async def create(self, record: RunRecord) -> None:
        self._records[record.id] = copy.deepcopy(record)
        self._events.setdefault(record.id, [])

    async def get(self, record_id: str) -> RunRecord | None:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record else None

    async def update(self, record_id: str, updates: dict[str, Any]) -> RunRecord | None:
        record = self._records.get(record_id)
        if record is None:
            return None
        _apply_updates(record, copy.deepcopy(updates))
        return copy.deepcopy(record)

    async def delete(self, record_id: str) -> bool:
        self._events.pop(record_id, None)
        return self._records.pop(record_id, None) is not None

    async def list_records(self, agent_id: str) -> list[RunRecord]:
        records = [r for r in self._records.values() if r.agent_id == agent_id]
        return [copy.deepcopy(r) for r in sorted(records, key=lambda r: r.start_time)]

    async def add_steps(self, record_id: str, steps: list[dict[str, Any]]) -> RunRecord | None:
        record = self._records.get(record_id)
        if record is None:
            return None
        record.steps.extend(copy.deepcopy(steps))
        return copy.deepcopy(record)

    async def add_timeline_event(self, record_id: str, event: TimelineEvent) -> None:
        events = self._events.get(record_id)
        if events is None:
            self.log.warning("history_store.event_for_unknown_record", record_id=record_id)
            return
        # Events are frozen; no copy needed
        events.append(event)

    async def get_timeline_events(self, record_id: str) -> list[TimelineEvent]:
        return list(self._events.get(record_id, []))

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"<InMemoryHistoryStore({len(self)} records)>"


class JsonFileHistoryStore:
    """HistoryStore persisting each run as a JSON file.

    Layout: `<directory>/<run_id>.json` with keys "record" and "events".
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.log = logger.bind(component="history_store", directory=str(self.directory))

    def _path(self, record_id: str) -> Path:
        return self.directory / f"{record_id}.json"

    def _read(self, record_id: str) -> dict[str, Any] | None:
        path = self._path(record_id)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            self.log.error("history_store.read_error", record_id=record_id, error=str(e))
            return None

    def _write(self, record_id: str, document: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(record_id).write_text(
            json.dumps(document, indent=2, default=str, ensure_ascii=False),
            encoding="utf-8",
        )

    async def create(self, record: RunRecord) -> None:
        self._write(record.id, {"record": record.to_dict(), "events": []})
        self.log.debug("history_store.created", record_id=record.id)

    async def get(self, record_id: str) -> RunRecord | None:
        document = self._read(record_id)
        return RunRecord.from_dict(document["record"]) if document else None

    async def update(self, record_id: str, updates: dict[str, Any]) -> RunRecord | None:
        document = self._read(record_id)
        if document is None:
            return None
        record = RunRecord.from_dict(document["record"])
        _apply_updates(record, updates)
        document["record"] = record.to_dict()
        self._write(record_id, document)
        return record

    async def delete(self, record_id: str) -> bool:
        path = self._path(record_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    async def list_records(self, agent_id: str) -> list[RunRecord]:
        if not self.directory.exists():
            return []
        records = []
        for path in self.directory.glob("*.json"):
            document = self._read(path.stem)
            if document and document["record"].get("agent_id") == agent_id:
                records.append(RunRecord.from_dict(document["record"]))
        return sorted(records, key=lambda r: r.start_time)

    async def add_steps(self, record_id: str, steps: list[dict[str, Any]]) -> RunRecord | None:
        document = self._read(record_id)
        if document is None:
            return None
        document["record"].setdefault("steps", []).extend(steps)
        self._write(record_id, document)
        return RunRecord.from_dict(document["record"])

    async def add_timeline_event(self, record_id: str, event: TimelineEvent) -> None:
        document = self._read(record_id)
        if document is None:
            self.log.warning("history_store.event_for_unknown_record", record_id=record_id)
            return
        document["events"].append(event.to_payload())
        self._write(record_id, document)

    async def get_timeline_events(self, record_id: str) -> list[TimelineEvent]:
        document = self._read(record_id)
        if document is None:
            return []
        return [TimelineEvent(**payload) for payload in document["events"]]

    def __repr__(self) -> str:
        return f"<JsonFileHistoryStore(directory='{self.directory}')>"
