"""
Forwarding of sub-agent stream parts into a parent stream.
"""

from typing import Callable, Iterable

import structlog

from .events import TOOL_CALL, TOOL_RESULT, StreamEvent

logger = structlog.get_logger()

__all__ = ["ForwardFn", "StreamEventForwarder", "DEFAULT_FORWARD_TYPES"]

ForwardFn = Callable[[StreamEvent], bool]

DEFAULT_FORWARD_TYPES = (TOOL_CALL, TOOL_RESULT)


class StreamEventForwarder:
    """Filters and tags sub-agent parts before handing them to a parent forwarder.

    Only parts whose type is in forward_types are passed on. Each forwarded
    part is attributed to the sub-agent (sub_agent_id, sub_agent_name and a
    prefixed tool name).
    """

    def __init__(
        self,
        forward: ForwardFn,
        forward_types: Iterable[str] = DEFAULT_FORWARD_TYPES,
    ) -> None:
        self._forward = forward
        self.forward_types = frozenset(forward_types)
        self.log = logger.bind(component="stream_forwarder")

    def __call__(self, event: StreamEvent, sub_agent_id: str, sub_agent_name: str) -> bool:
        """Forward one part of a sub-agent stream.

        Returns:
            True if the part reached the parent sink.
        """
        if not sub_agent_id or not sub_agent_name:
            self.log.warning(
                "stream_forwarder.invalid_event",
                type=event.type,
                sub_agent_id=sub_agent_id,
                sub_agent_name=sub_agent_name,
            )
            return False

        if event.type not in self.forward_types:
            return False

        # Parts relayed from deeper delegation keep their original attribution
        if event.from_sub_agent:
            return self._forward(event)
        return self._forward(event.tagged(sub_agent_id, sub_agent_name))

    def __repr__(self) -> str:
        return f"<StreamEventForwarder(types={sorted(self.forward_types)})>"
