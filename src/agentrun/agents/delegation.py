"""
Sub-agent delegation.

A supervisor agent owns a SubAgentManager. The model delegates through the
delegate_task tool; each target runs as a child of the supervisor's run
(shared step log, user context and cancel event, parent back-references) and,
when the supervisor is streaming, the child's tool parts are forwarded into
the supervisor's merged stream, attributed to the child.

Invariants:
- A failing delegation never raises: the result carries
  "Error in delegating task to <name>: <message>".
- Once a child run finishes, it is marked completed on the parent merger.
- Delegation to several targets runs them concurrently; results keep the
  order of the targets.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

import structlog
from pydantic import BaseModel, Field

from ..core.context import OperationContext
from ..history.models import RunStatus, UsageInfo
from ..streaming.forwarder import DEFAULT_FORWARD_TYPES, StreamEventForwarder
from ..streaming.merge import StreamMerger
from ..tools.base import BaseTool, ToolContext, ToolResult

if TYPE_CHECKING:
    from .agent import Agent

logger = structlog.get_logger()

__all__ = [
    "DelegateTaskArgs",
    "DelegateTaskTool",
    "HandoffResult",
    "SubAgentManager",
    "SUPERVISOR_GUIDELINES",
]

DEFAULT_STEPS_PER_AGENT = 10

SUPERVISOR_GUIDELINES = [
    "Provide a final answer to the User when you have a response from all agents.",
    "Do not mention the name of any agent in your response.",
    "Contact MULTIPLE agents at the same time whenever possible.",
    "Keep your communications with other agents concise, without chit-chat.",
    "Agents are not aware of each other. You are the sole intermediary between them.",
    "Provide full context when necessary; agents do not see the conversation history.",
    "Only communicate with the agents needed for the User's query.",
    "If an agent asks for a confirmation, forward it to the user as is.",
    "Do not summarize the agents' responses when giving the final answer.",
    "Never assume parameter values; only use values given by the user or an instruction.",
]


@dataclass
class HandoffResult:
    """Outcome of delegating a task to one sub-agent."""

    agent_name: str
    result: str
    run_id: str | None = None
    status: RunStatus = RunStatus.COMPLETED
    usage: UsageInfo | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.status is RunStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent_name,
            "result": self.result,
            "run_id": self.run_id,
            "status": self.status.value,
            "usage": self.usage.to_dict() if self.usage else None,
        }


class SubAgentManager:
    """Sub-agents of one supervisor and the delegation to them."""

    def __init__(
        self,
        owner: "Agent",
        sub_agents: list["Agent"] | None = None,
        forward_event_types: Iterable[str] = DEFAULT_FORWARD_TYPES,
    ) -> None:
        self.owner = owner
        self._agents: dict[str, "Agent"] = {}
        self.forward_event_types = tuple(forward_event_types)
        self.log = logger.bind(component="delegation", supervisor=owner.name)
        for agent in sub_agents or []:
            self.add_sub_agent(agent)

    # ── Registry ──────────────────────────────────────────────────────────

    def add_sub_agent(self, agent: "Agent") -> None:
        if agent.name in self._agents:
            self.log.warning("delegation.sub_agent.replaced", sub_agent=agent.name)
        self._agents[agent.name] = agent
        self._sync_delegate_tool()

    def remove_sub_agent(self, name: str) -> bool:
        removed = self._agents.pop(name, None) is not None
        self._sync_delegate_tool()
        return removed

    def _sync_delegate_tool(self) -> None:
        # The owner offers delegate_task exactly while it has sub-agents
        tools = self.owner.tools
        if self._agents and not tools.has_tool(DelegateTaskTool.name):
            tools.register(DelegateTaskTool(self))
        elif not self._agents:
            tools.unregister(DelegateTaskTool.name)

    def get(self, name: str) -> "Agent | None":
        return self._agents.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    # ── Supervisor settings ───────────────────────────────────────────────

    def calculate_max_steps(self, agent_max_steps: int | None = None) -> int:
        """Step limit of the owner: explicit value, else 10 per sub-agent (min 10)."""
        if agent_max_steps is not None:
            return agent_max_steps
        return DEFAULT_STEPS_PER_AGENT * max(len(self._agents), 1)

    def generate_supervisor_instructions(self, base_instructions: str) -> str:
        """System prompt of the owner; unchanged when it has no sub-agents."""
        if not self._agents:
            return base_instructions

        agent_list = "\n".join(
            f"- {agent.name}: {agent.instructions or 'specialized agent'}"
            for agent in self._agents.values()
        )
        guidelines = "\n".join(f"- {g}" for g in SUPERVISOR_GUIDELINES)
        return (
            "You are a supervisor agent that coordinates between specialized agents:\n\n"
            f"<specialized_agents>\n{agent_list}\n</specialized_agents>\n\n"
            f"<instructions>\n{base_instructions}\n</instructions>\n\n"
            f"<guidelines>\n{guidelines}\n</guidelines>"
        )

    # ── Delegation ────────────────────────────────────────────────────────

    async def handoff_task(
        self,
        task: str,
        target: "Agent",
        parent_context: OperationContext,
        stream: StreamMerger | None = None,
        context: dict[str, Any] | None = None,
    ) -> HandoffResult:
        """Run a task on one sub-agent as a child of parent_context.

        Args:
            task: Task text.
            target: Sub-agent to run.
            parent_context: Context of the delegating run.
            stream: Merger of the delegating run when it is streaming.
            context: Extra key/values appended to the task message.

        Returns:
            HandoffResult. Errors are reported in it, never raised.
        """
        message = task
        if context:
            message = f"{task}\n\nContext: {json.dumps(context, default=str)}"

        await self.owner.hooks.invoke(
            "on_handoff", agent=target, source_agent=self.owner, task=task
        )
        self.log.info(
            "delegation.handoff.start",
            sub_agent=target.name,
            parent_run_id=parent_context.id,
            streaming=stream is not None,
        )

        try:
            if stream is None:
                result = await target.generate_text(message, parent_context=parent_context)
            else:
                forwarder = StreamEventForwarder(stream.forward, self.forward_event_types)
                run = await target.stream_text(message, parent_context=parent_context)
                async for part in run:
                    forwarder(part, target.id, target.name)
                result = run.result()
                stream.mark_completed(target.id)
        except Exception as e:
            if stream is not None:
                stream.mark_completed(target.id)
            self.log.error(
                "delegation.handoff.error",
                sub_agent=target.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return HandoffResult(
                agent_name=target.name,
                result=f"Error in delegating task to {target.name}: {e}",
                status=RunStatus.ERROR,
                error=str(e),
            )

        self.log.info(
            "delegation.handoff.complete",
            sub_agent=target.name,
            run_id=result.run_id,
            status=result.status.value,
        )
        return HandoffResult(
            agent_name=target.name,
            result=result.text,
            run_id=result.run_id,
            status=result.status,
            usage=result.usage,
        )

    async def handoff_to_multiple(
        self,
        task: str,
        targets: list["Agent"],
        parent_context: OperationContext,
        stream: StreamMerger | None = None,
        context: dict[str, Any] | None = None,
    ) -> list[HandoffResult]:
        """Run the same task on several sub-agents concurrently."""
        return list(
            await asyncio.gather(
                *(
                    self.handoff_task(task, target, parent_context, stream, context)
                    for target in targets
                )
            )
        )

    def __repr__(self) -> str:
        return f"<SubAgentManager(supervisor='{self.owner.name}', sub_agents={self.names})>"


class DelegateTaskArgs(BaseModel):
    task: str = Field(description="The task to delegate")
    target_agents: list[str] = Field(
        description="Names of the agents to delegate the task to"
    )
    task_context: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context for the task",
    )

    model_config = {"extra": "forbid"}


class DelegateTaskTool(BaseTool):
    """Delegates a task to one or more sub-agents of the calling agent."""

    name = "delegate_task"
    description = "Delegate a task to one or more specialized agents"
    args_model = DelegateTaskArgs

    def __init__(self, manager: SubAgentManager) -> None:
        self.manager = manager

    async def execute(  # type: ignore[override]
        self,
        context: ToolContext,
        task: str,
        target_agents: list[str],
        task_context: dict[str, Any] | None = None,
    ) -> ToolResult:
        if not task.strip():
            return ToolResult(success=False, output="", error="Task cannot be empty")
        if not target_agents:
            return ToolResult(
                success=False, output="", error="At least one target agent must be specified"
            )

        targets = []
        for name in target_agents:
            agent = self.manager.get(name)
            if agent is None:
                self.manager.log.warning("delegation.unknown_agent", sub_agent=name)
            else:
                targets.append(agent)
        if not targets:
            available = ", ".join(self.manager.names) or "(none)"
            return ToolResult(
                success=False,
                output="",
                error=f"No valid target agents found. Available agents: {available}",
            )

        results = await self.manager.handoff_to_multiple(
            task,
            targets,
            parent_context=context.operation,
            stream=context.stream,
            context=task_context,
        )
        output = json.dumps([r.to_dict() for r in results], ensure_ascii=False)
        if not any(r.success for r in results):
            return ToolResult(
                success=False,
                output=output,
                error="; ".join(r.result for r in results),
            )
        return ToolResult(success=True, output=output)
