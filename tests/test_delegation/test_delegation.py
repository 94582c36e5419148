"""
Tests for sub-agent delegation.

Covers:
- SubAgentManager registry, max steps and supervisor instructions
- handoff_task (non-streaming and streaming), error reporting, on_handoff
- handoff_to_multiple concurrency and ordering
- DelegateTaskTool validation and result format
"""

import asyncio
import json

import pytest

from agentrun.agents import Agent, DelegateTaskTool, HandoffResult, SubAgentManager
from agentrun.config.schema import StreamingConfig
from agentrun.core import RunHooks, create_operation_context
from agentrun.events import EventBus
from agentrun.history import RunRecord, RunStatus
from agentrun.streaming import StreamEvent, StreamMerger, TEXT_DELTA, TOOL_CALL
from agentrun.tools import ToolContext


FAST_STREAM = StreamingConfig(grace_window=0.01)


@pytest.fixture
def parent_context():
    return create_operation_context(
        RunRecord(id="parent-run", agent_id="supervisor", input="question"),
        EventBus(),
        operation_name="generate_text",
        user_context={"tenant": "acme"},
    )


def make_agent(name, provider, **kwargs) -> Agent:
    kwargs.setdefault("streaming", FAST_STREAM)
    return Agent(name, provider, **kwargs)


# -- Tests: SubAgentManager --------------------------------------------------


class TestSubAgentManager:
    """Tests for registry and supervisor settings."""

    def test_registry(self, make_provider):
        a = make_agent("a", make_provider())
        b = make_agent("b", make_provider())
        supervisor = make_agent("boss", make_provider(), sub_agents=[a])
        manager = supervisor.sub_agents

        manager.add_sub_agent(b)
        assert manager.names == ["a", "b"]
        assert manager.get("b") is b
        assert manager.remove_sub_agent("a") is True
        assert manager.remove_sub_agent("a") is False
        assert len(manager) == 1

    def test_delegate_tool_follows_sub_agents(self, make_provider):
        agent = make_agent("boss", make_provider())
        assert not agent.tools.has_tool("delegate_task")

        agent.sub_agents.add_sub_agent(make_agent("worker", make_provider()))
        assert agent.tools.has_tool("delegate_task")
        agent.sub_agents.add_sub_agent(make_agent("other", make_provider()))
        assert len(agent.tools) == 1

        agent.sub_agents.remove_sub_agent("worker")
        assert agent.tools.has_tool("delegate_task")
        agent.sub_agents.remove_sub_agent("other")
        assert not agent.tools.has_tool("delegate_task")

    def test_calculate_max_steps(self, make_provider):
        supervisor = make_agent("boss", make_provider())
        manager = SubAgentManager(supervisor, [make_agent(f"w{i}", make_provider()) for i in range(4)])
        assert manager.calculate_max_steps() == 40
        assert manager.calculate_max_steps(7) == 7
        assert SubAgentManager(supervisor).calculate_max_steps() == 10

    def test_instructions_without_sub_agents(self, make_provider):
        supervisor = make_agent("boss", make_provider())
        assert supervisor.sub_agents.generate_supervisor_instructions("Base.") == "Base."

    def test_instructions_list_sub_agents(self, make_provider):
        worker = make_agent("writer", make_provider(), instructions="Writes prose")
        supervisor = make_agent("boss", make_provider(), sub_agents=[worker])
        text = supervisor.sub_agents.generate_supervisor_instructions("Base.")
        assert "<specialized_agents>\n- writer: Writes prose\n</specialized_agents>" in text
        assert "<instructions>\nBase.\n</instructions>" in text
        assert "<guidelines>" in text


# -- Tests: handoff_task -----------------------------------------------------


class TestHandoffTask:
    """Tests for single delegation."""

    @pytest.mark.asyncio
    async def test_non_streaming_handoff(self, make_provider, text, parent_context):
        worker = make_agent("worker", make_provider([text("result text")]))
        supervisor = make_agent("boss", make_provider(), sub_agents=[worker])

        result = await supervisor.sub_agents.handoff_task("do it", worker, parent_context)

        assert isinstance(result, HandoffResult)
        assert result.success
        assert result.result == "result text"
        assert result.usage.total_tokens == 20
        record = await worker.history.get_record(result.run_id)
        assert record.metadata["parent_run_id"] == "parent-run"
        assert [s.sub_agent_name for s in parent_context.step_log] == ["worker"]

    @pytest.mark.asyncio
    async def test_context_appended_to_task(self, make_provider, text, parent_context):
        provider = make_provider([text("ok")])
        worker = make_agent("worker", provider)
        supervisor = make_agent("boss", make_provider(), sub_agents=[worker])

        await supervisor.sub_agents.handoff_task(
            "do it", worker, parent_context, context={"deadline": "friday"}
        )
        user_message = provider.calls[0]["messages"][-1]["content"]
        assert user_message.startswith("do it")
        assert '"deadline": "friday"' in user_message

    @pytest.mark.asyncio
    async def test_streaming_handoff_forwards_and_completes(
        self, make_provider, text, tool_call, echo_tool, parent_context
    ):
        worker = make_agent(
            "worker",
            make_provider([tool_call("echo", {"text": "x"}), text("done")]),
            tools=[echo_tool],
        )
        supervisor = make_agent("boss", make_provider(), sub_agents=[worker])
        merger = StreamMerger(grace_window=0)
        forwarded: list[StreamEvent] = []
        merger.forward = lambda event: forwarded.append(event) or True  # type: ignore[method-assign]

        result = await supervisor.sub_agents.handoff_task("do it", worker, parent_context, stream=merger)

        assert result.success
        assert [e.type for e in forwarded] == [TOOL_CALL, "tool-result"]
        assert all(e.sub_agent_id == "worker" for e in forwarded)
        assert forwarded[0].data["toolName"] == "worker: echo"
        assert merger.sub_agent_status["worker"].value == "completed"

    @pytest.mark.asyncio
    async def test_custom_forward_types(self, make_provider, text, parent_context):
        worker = make_agent("worker", make_provider([text("hello world")]))
        supervisor = make_agent("boss", make_provider(), sub_agents=[worker])
        manager = SubAgentManager(supervisor, [worker], forward_event_types=[TEXT_DELTA])
        merger = StreamMerger(grace_window=0)
        forwarded: list[StreamEvent] = []
        merger.forward = lambda event: forwarded.append(event) or True  # type: ignore[method-assign]

        await manager.handoff_task("talk", worker, parent_context, stream=merger)
        assert "".join(e.text for e in forwarded) == "hello world"

    @pytest.mark.asyncio
    async def test_error_reported_not_raised(self, make_provider, parent_context):
        worker = make_agent("worker", make_provider([RuntimeError("model down")]))
        supervisor = make_agent("boss", make_provider(), sub_agents=[worker])

        result = await supervisor.sub_agents.handoff_task("do it", worker, parent_context)

        assert not result.success
        assert result.status is RunStatus.ERROR
        assert result.result.startswith("Error in delegating task to worker: ")
        assert "model down" in result.result

    @pytest.mark.asyncio
    async def test_on_handoff_hook(self, make_provider, text, parent_context):
        seen: list[tuple] = []
        worker = make_agent("worker", make_provider([text("ok")]))
        supervisor = make_agent(
            "boss",
            make_provider(),
            sub_agents=[worker],
            hooks=RunHooks(
                on_handoff=lambda agent, source_agent, task: seen.append(
                    (agent.name, source_agent.name, task)
                )
            ),
        )
        await supervisor.sub_agents.handoff_task("do it", worker, parent_context)
        assert seen == [("worker", "boss", "do it")]

    @pytest.mark.asyncio
    async def test_cancelled_parent_cancels_child(self, make_provider, text, parent_context):
        parent_context.cancel_event = asyncio.Event()
        parent_context.cancel_event.set()
        provider = make_provider([text("never")])
        worker = make_agent("worker", provider)
        supervisor = make_agent("boss", make_provider(), sub_agents=[worker])

        result = await supervisor.sub_agents.handoff_task("do it", worker, parent_context)
        assert result.status is RunStatus.CANCELLED
        assert not result.success
        assert provider.calls == []


class TestHandoffToMultiple:
    """Tests for concurrent delegation."""

    @pytest.mark.asyncio
    async def test_runs_concurrently_and_keeps_order(self, make_provider, text, parent_context):
        running = 0
        peak = 0

        class SlowProvider(make_provider):
            async def generate(self, messages, tools=None, **kwargs):
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.02)
                running -= 1
                return await super().generate(messages, tools, **kwargs)

        workers = [make_agent(f"w{i}", SlowProvider([text(f"answer {i}")])) for i in range(3)]
        supervisor = make_agent("boss", make_provider(), sub_agents=workers)

        results = await supervisor.sub_agents.handoff_to_multiple("task", workers, parent_context)

        assert [r.result for r in results] == ["answer 0", "answer 1", "answer 2"]
        assert peak == 3
        assert {s.sub_agent_name for s in parent_context.step_log} == {"w0", "w1", "w2"}

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, make_provider, text, parent_context):
        good = make_agent("good", make_provider([text("fine")]))
        bad = make_agent("bad", make_provider([RuntimeError("nope")]))
        supervisor = make_agent("boss", make_provider(), sub_agents=[good, bad])

        results = await supervisor.sub_agents.handoff_to_multiple("task", [good, bad], parent_context)
        assert results[0].success
        assert not results[1].success


# -- Tests: DelegateTaskTool -------------------------------------------------


class TestDelegateTaskTool:
    """Tests for the delegate_task tool."""

    @pytest.fixture
    def setup(self, make_provider, text, parent_context):
        worker = make_agent("worker", make_provider([text("worked")]))
        supervisor = make_agent("boss", make_provider(), sub_agents=[worker])
        tool = supervisor.tools.get("delegate_task")
        return tool, ToolContext(parent_context, "call-1")

    def test_registered_with_schema(self, setup):
        tool, _ = setup
        assert isinstance(tool, DelegateTaskTool)
        params = tool.get_schema()["function"]["parameters"]
        assert set(params["required"]) == {"task", "target_agents"}

    @pytest.mark.asyncio
    async def test_delegates(self, setup):
        tool, context = setup
        result = await tool.execute(context, task="work", target_agents=["worker"])
        assert result.success
        payload = json.loads(result.output)
        assert payload[0]["agent"] == "worker"
        assert payload[0]["result"] == "worked"
        assert payload[0]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_empty_task(self, setup):
        tool, context = setup
        result = await tool.execute(context, task="  ", target_agents=["worker"])
        assert not result.success
        assert result.error == "Task cannot be empty"

    @pytest.mark.asyncio
    async def test_no_targets(self, setup):
        tool, context = setup
        result = await tool.execute(context, task="work", target_agents=[])
        assert not result.success

    @pytest.mark.asyncio
    async def test_unknown_targets(self, setup):
        tool, context = setup
        result = await tool.execute(context, task="work", target_agents=["ghost"])
        assert not result.success
        assert "Available agents: worker" in result.error

    @pytest.mark.asyncio
    async def test_all_failed(self, make_provider, parent_context):
        worker = make_agent("worker", make_provider([RuntimeError("broken")]))
        supervisor = make_agent("boss", make_provider(), sub_agents=[worker])
        tool = supervisor.tools.get("delegate_task")
        result = await tool.execute(ToolContext(parent_context, "c"), task="x", target_agents=["worker"])
        assert not result.success
        assert "Error in delegating task to worker" in result.error
