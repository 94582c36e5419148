"""
Run lifecycle hooks.

RunHooks is a typed bag of optional callbacks invoked at fixed points of a
run. Each callback may be a plain function or a coroutine function and
receives keyword arguments only.

Stages and their keyword arguments:
    on_start(agent, context)
    on_end(agent, context, output, error)
    on_tool_start(agent, context, tool_name, arguments)
    on_tool_end(agent, context, tool_name, result, error)
    on_handoff(agent, source_agent, task)
    on_error(agent, context, error)
    on_step_finish(agent, context, step)

Invariants:
- Hooks NEVER break the run: exceptions are logged and swallowed.
- A stage without a callback costs nothing.
"""

import inspect
from dataclasses import dataclass, fields
from typing import Any, Callable

import structlog

logger = structlog.get_logger()

__all__ = ["HookCallback", "RunHooks"]

HookCallback = Callable[..., Any]


@dataclass
class RunHooks:
    """Optional callbacks for each run stage."""

    on_start: HookCallback | None = None
    on_end: HookCallback | None = None
    on_tool_start: HookCallback | None = None
    on_tool_end: HookCallback | None = None
    on_handoff: HookCallback | None = None
    on_error: HookCallback | None = None
    on_step_finish: HookCallback | None = None

    def merged(self, override: "RunHooks | None") -> "RunHooks":
        """Combine with call-level hooks; set stages of override win."""
        if override is None:
            return self
        return RunHooks(**{
            f.name: getattr(override, f.name) or getattr(self, f.name)
            for f in fields(self)
        })

    async def invoke(self, stage: str, **kwargs: Any) -> None:
        """Run the callback of a stage, if any, absorbing its errors."""
        callback = getattr(self, stage)
        if callback is None:
            return
        try:
            result = callback(**kwargs)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(
                "hooks.error",
                stage=stage,
                error=str(e),
                error_type=type(e).__name__,
            )

    def __repr__(self) -> str:
        active = [f.name for f in fields(self) if getattr(self, f.name) is not None]
        return f"<RunHooks({', '.join(active) or 'none'})>"
