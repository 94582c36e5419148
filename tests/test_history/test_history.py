"""
Tests for run records, history stores and the history recorder.

Covers:
- UsageInfo accumulation and RunRecord serialisation
- InMemoryHistoryStore isolation and JsonFileHistoryStore persistence
- HistoryRecorder create/update/steps/timeline
- Export of changed fields only, export failures kept off the caller
- Oldest-first eviction with max_entries, runs in progress kept
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from agentrun.events import EventBus, EventEntity, EventKind, new_event
from agentrun.history import (
    HistoryRecorder,
    InMemoryHistoryStore,
    JsonFileHistoryStore,
    RunRecord,
    RunStatus,
    UsageInfo,
)
from agentrun.telemetry import TelemetryExporter


@pytest.fixture
def exporter() -> MagicMock:
    return MagicMock(spec=TelemetryExporter)


# -- Tests: models -----------------------------------------------------------


class TestUsageInfo:
    """Tests for token usage accumulation."""

    def test_add_usage_and_dict(self):
        usage = UsageInfo()
        usage.add(UsageInfo(1, 2, 3))
        usage.add({"prompt_tokens": 10, "completion_tokens": 5})
        usage.add(None)
        assert usage.to_dict() == {
            "prompt_tokens": 11,
            "completion_tokens": 7,
            "total_tokens": 18,
        }

    def test_from_dict_derives_total(self):
        assert UsageInfo.from_dict({"prompt_tokens": 2, "completion_tokens": 3}).total_tokens == 5


class TestRunRecord:
    """Tests for record serialisation."""

    def test_dict_roundtrip(self):
        record = RunRecord(
            id="r1",
            agent_id="a",
            input="hi",
            output="hello",
            status=RunStatus.COMPLETED,
            end_time=datetime.now(timezone.utc),
            usage=UsageInfo(1, 1, 2),
            metadata={"k": "v"},
        )
        restored = RunRecord.from_dict(record.to_dict())
        assert restored == record

    def test_from_dict_ignores_unknown_keys(self):
        record = RunRecord.from_dict({"id": "r", "agent_id": "a", "input": "", "extra": 1})
        assert record.status is RunStatus.WORKING

    def test_final_statuses(self):
        assert not RunStatus.WORKING.is_final
        assert all(s.is_final for s in (RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED))


# -- Tests: stores -----------------------------------------------------------


class TestInMemoryHistoryStore:
    """Tests for the in-memory store."""

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self):
        store = InMemoryHistoryStore()
        await store.create(RunRecord(id="r", agent_id="a", input=""))
        record = await store.get("r")
        record.output = "mutated"
        assert (await store.get("r")).output == ""

    @pytest.mark.asyncio
    async def test_update_unknown_field_rejected(self):
        store = InMemoryHistoryStore()
        await store.create(RunRecord(id="r", agent_id="a", input=""))
        with pytest.raises(ValueError):
            await store.update("r", {"bogus": 1})
        with pytest.raises(ValueError):
            await store.update("r", {"id": "other"})

    @pytest.mark.asyncio
    async def test_update_missing_record(self):
        assert await InMemoryHistoryStore().update("missing", {"output": "x"}) is None

    @pytest.mark.asyncio
    async def test_list_oldest_first_per_agent(self):
        store = InMemoryHistoryStore()
        now = datetime.now(timezone.utc)
        await store.create(RunRecord(id="new", agent_id="a", input="", start_time=now))
        await store.create(
            RunRecord(id="old", agent_id="a", input="", start_time=now - timedelta(seconds=5))
        )
        await store.create(RunRecord(id="other", agent_id="b", input=""))
        assert [r.id for r in await store.list_records("a")] == ["old", "new"]

    @pytest.mark.asyncio
    async def test_delete_drops_events(self):
        store = InMemoryHistoryStore()
        await store.create(RunRecord(id="r", agent_id="a", input=""))
        await store.add_timeline_event("r", new_event(EventEntity.AGENT, EventKind.START, "r"))
        assert await store.delete("r") is True
        assert await store.delete("r") is False
        assert await store.get_timeline_events("r") == []
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_event_for_unknown_record_skipped(self):
        store = InMemoryHistoryStore()
        with capture_logs() as logs:
            await store.add_timeline_event("ghost", new_event(EventEntity.AGENT, EventKind.START, "ghost"))
        assert await store.get_timeline_events("ghost") == []
        assert logs[0]["event"] == "history_store.event_for_unknown_record"

        # A deleted record does not come back through a late event
        await store.create(RunRecord(id="r", agent_id="a", input=""))
        await store.delete("r")
        await store.add_timeline_event("r", new_event(EventEntity.AGENT, EventKind.SUCCESS, "r"))
        assert "r" not in store._events


class TestJsonFileHistoryStore:
    """Tests for the JSON file store."""

    @pytest.mark.asyncio
    async def test_persists_record_steps_and_events(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path / "history")
        await store.create(RunRecord(id="r1", agent_id="a", input="hi"))
        await store.update(
            "r1",
            {"output": "hello", "status": RunStatus.COMPLETED, "usage": UsageInfo(1, 2, 3)},
        )
        await store.add_steps("r1", [{"type": "text", "content": "hello"}])
        event = new_event(EventEntity.AGENT, EventKind.START, "r1")
        await store.add_timeline_event("r1", event)

        reopened = JsonFileHistoryStore(tmp_path / "history")
        record = await reopened.get("r1")
        assert record.output == "hello"
        assert record.status is RunStatus.COMPLETED
        assert record.usage == UsageInfo(1, 2, 3)
        assert record.steps == [{"type": "text", "content": "hello"}]
        assert await reopened.get_timeline_events("r1") == [event]
        assert (tmp_path / "history" / "r1.json").exists()

    @pytest.mark.asyncio
    async def test_list_and_delete(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path)
        await store.create(RunRecord(id="r1", agent_id="a", input=""))
        await store.create(RunRecord(id="r2", agent_id="b", input=""))
        assert [r.id for r in await store.list_records("a")] == ["r1"]
        assert await store.delete("r1") is True
        assert await store.get("r1") is None

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        store = JsonFileHistoryStore(tmp_path / "nope")
        assert await store.list_records("a") == []
        assert await store.get("r") is None


# -- Tests: HistoryRecorder --------------------------------------------------


class TestHistoryRecorder:
    """Tests for record lifecycle through the recorder."""

    @pytest.mark.asyncio
    async def test_create_record(self, exporter):
        recorder = HistoryRecorder("agent-a", exporter=exporter)
        record = await recorder.create_record(
            "hi", user_id="u1", conversation_id="c1", model="m", metadata={"k": 1}
        )
        assert record.agent_id == "agent-a"
        assert record.status is RunStatus.WORKING
        assert (await recorder.get_record(record.id)).user_id == "u1"

        exporter.export_history_async.assert_called_once()
        payload = exporter.export_history_async.call_args.args[0]
        assert payload["id"] == record.id
        assert payload["status"] == "working"

    @pytest.mark.asyncio
    async def test_update_exports_changed_fields_only(self, exporter):
        recorder = HistoryRecorder("agent-a", exporter=exporter)
        record = await recorder.create_record("hi")
        updated = await recorder.update_record(
            record.id, output="hello", status=RunStatus.COMPLETED, metadata={}
        )

        assert updated.output == "hello"
        record_id, changed = exporter.update_history_async.call_args.args
        assert record_id == record.id
        assert changed == {"output": "hello", "status": "completed"}

    @pytest.mark.asyncio
    async def test_update_without_changes_exports_nothing(self, exporter):
        recorder = HistoryRecorder("agent-a", exporter=exporter)
        record = await recorder.create_record("hi")
        await recorder.update_record(record.id, output="", status=RunStatus.WORKING)
        exporter.update_history_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_serialises_values(self, exporter):
        recorder = HistoryRecorder("agent-a", exporter=exporter)
        record = await recorder.create_record("hi")
        end = datetime.now(timezone.utc)
        await recorder.update_record(record.id, usage=UsageInfo(1, 1, 2), end_time=end)
        _, changed = exporter.update_history_async.call_args.args
        assert changed == {"usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
                           "end_time": end.isoformat()}

    @pytest.mark.asyncio
    async def test_update_unknown_record(self, exporter):
        recorder = HistoryRecorder("agent-a", exporter=exporter)
        with capture_logs() as logs:
            assert await recorder.update_record("missing", output="x") is None
        assert logs[0]["event"] == "history.record.not_found"
        exporter.update_history_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_steps_and_timeline_exported(self, exporter):
        recorder = HistoryRecorder("agent-a", exporter=exporter)
        record = await recorder.create_record("hi")
        await recorder.add_steps(record.id, [{"type": "text", "content": "x"}])
        await recorder.add_steps(record.id, [])
        event = new_event(EventEntity.AGENT, EventKind.START, record.id)
        await recorder.append_timeline_event(record.id, event)

        assert (await recorder.get_record(record.id)).steps == [{"type": "text", "content": "x"}]
        exporter.export_steps_async.assert_called_once_with(
            "agent-a", record.id, [{"type": "text", "content": "x"}]
        )
        exporter.export_timeline_event_async.assert_called_once_with(
            "agent-a", record.id, event.to_payload()
        )
        assert await recorder.get_timeline_events(record.id) == [event]

    @pytest.mark.asyncio
    async def test_export_failure_does_not_reach_caller(self, exporter):
        exporter.export_history_async.side_effect = RuntimeError("no loop")
        recorder = HistoryRecorder("agent-a", exporter=exporter)
        with capture_logs() as logs:
            record = await recorder.create_record("hi")
        assert await recorder.get_record(record.id) is not None
        assert any(log["event"] == "history.export.enqueue_failed" for log in logs)

    @pytest.mark.asyncio
    async def test_bus_notifications(self):
        bus = EventBus()
        created, updated = [], []
        bus.on_history_created(lambda agent_id, r: created.append(r.id))
        bus.on_history_updated(lambda agent_id, r: updated.append(r.status))
        recorder = HistoryRecorder("agent-a", bus=bus)

        record = await recorder.create_record("hi")
        await recorder.update_record(record.id, status=RunStatus.COMPLETED)
        assert created == [record.id]
        assert updated == [RunStatus.COMPLETED]


class TestEviction:
    """Tests for max_entries."""

    @pytest.mark.asyncio
    async def test_oldest_evicted_first(self):
        recorder = HistoryRecorder("agent-a", max_entries=2)
        done = RunStatus.COMPLETED
        first = await recorder.create_record("1", status=done)
        second = await recorder.create_record("2", status=done)
        third = await recorder.create_record("3", status=done)

        ids = [r.id for r in await recorder.list_records()]
        assert ids == [second.id, third.id]
        assert await recorder.get_record(first.id) is None

    @pytest.mark.asyncio
    async def test_unlimited_by_default(self):
        recorder = HistoryRecorder("agent-a")
        for i in range(5):
            await recorder.create_record(str(i))
        assert len(await recorder.list_records()) == 5

    @pytest.mark.asyncio
    async def test_other_agents_untouched(self):
        store = InMemoryHistoryStore()
        a = HistoryRecorder("agent-a", store=store, max_entries=1)
        b = HistoryRecorder("agent-b", store=store, max_entries=1)
        await b.create_record("b")
        await a.create_record("a1", status=RunStatus.COMPLETED)
        await a.create_record("a2")
        assert len(await b.list_records()) == 1
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_working_runs_never_evicted(self):
        recorder = HistoryRecorder("agent-a", max_entries=2)
        running = await recorder.create_record("running")
        finished = await recorder.create_record("finished")
        await recorder.update_record(finished.id, status=RunStatus.COMPLETED)

        newest = await recorder.create_record("newest")
        ids = [r.id for r in await recorder.list_records()]
        assert ids == [running.id, newest.id]

        # Only runs in progress left: the store overfills rather than drop one
        with capture_logs() as logs:
            extra = await recorder.create_record("extra")
        assert [r.id for r in await recorder.list_records()] == [running.id, newest.id, extra.id]
        assert any(log["event"] == "history.eviction.short" for log in logs)
