"""
Stream merge engine - one ordered output stream for a run and its sub-agents.

StreamMerger owns a sink (an asyncio.Queue) with a single reader, the
consumer loop in merge(). Two kinds of writers feed it:

- the pump task, which copies the run's primary stream into the sink, and
- forward(), which sub-agent runs call to inject their parts while the
  primary stream is still open.

When the primary stream ends, the sink stays open for a grace window so that
parts already produced by sub-agents still reach the consumer. Then every
sub-agent still marked active is marked completed and the sink closes.

Invariants:
- Parts of the primary stream keep their order; so do parts of each sub-agent.
- Nothing is written after the sink closes: forward() returns False and the
  part is dropped (debug log).
- If the consumer stops early, the sink closes at once and the pump (and with
  it the primary stream) is cancelled.
- forward() never blocks. With a bounded sink, a forwarded part that does not
  fit is dropped with a warning; primary parts wait for room instead.
"""

import asyncio
import contextlib
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator

import structlog

from ..config.schema import StreamingConfig
from .events import StreamEvent

logger = structlog.get_logger()

__all__ = ["StreamMerger", "SubAgentState"]


class SubAgentState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass
class _Failure:
    error: BaseException


_CLOSE = object()


class StreamMerger:
    """Merges a primary stream with parts forwarded by sub-agents."""

    def __init__(self, grace_window: float = 0.1, max_buffer: int = 0) -> None:
        """Initialize the merger.

        Args:
            grace_window: Seconds the sink stays open after the primary ends.
            max_buffer: Sink capacity. 0 = unbounded.
        """
        self.grace_window = grace_window
        self._sink: asyncio.Queue[object] = asyncio.Queue(maxsize=max_buffer)
        self._closed = False
        self._started = False
        self.sub_agent_status: dict[str, SubAgentState] = {}
        self.dropped = 0
        self.log = logger.bind(component="stream_merger")

    @classmethod
    def from_config(cls, config: StreamingConfig) -> "StreamMerger":
        return cls(grace_window=config.grace_window, max_buffer=config.max_buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    def forward(self, event: StreamEvent) -> bool:
        """Inject a part into the merged stream.

        Returns:
            True if the part was queued, False if it was dropped.
        """
        if self._closed:
            self.dropped += 1
            self.log.debug(
                "stream.forward.dropped",
                reason="closed",
                type=event.type,
                sub_agent=event.sub_agent_name,
            )
            return False

        if event.sub_agent_id and event.sub_agent_id not in self.sub_agent_status:
            self.sub_agent_status[event.sub_agent_id] = SubAgentState.ACTIVE

        try:
            self._sink.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            self.log.warning(
                "stream.forward.dropped",
                reason="buffer_full",
                type=event.type,
                sub_agent=event.sub_agent_name,
            )
            return False
        return True

    def mark_completed(self, sub_agent_id: str) -> None:
        self.sub_agent_status[sub_agent_id] = SubAgentState.COMPLETED

    async def merge(self, primary: AsyncIterator[StreamEvent]) -> AsyncIterator[StreamEvent]:
        """Yield the merged stream. A merger can merge only one primary stream."""
        if self._started:
            raise RuntimeError("StreamMerger.merge() can only be called once")
        self._started = True

        pump = asyncio.create_task(self._pump(primary))
        try:
            while True:
                item = await self._sink.get()
                if item is _CLOSE:
                    break
                if isinstance(item, _Failure):
                    raise item.error
                yield item
        finally:
            self._closed = True
            if not pump.done():
                pump.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pump

    async def _pump(self, primary: AsyncIterator[StreamEvent]) -> None:
        try:
            async for item in primary:
                await self._sink.put(item)
        except Exception as e:
            self._closed = True
            self.log.debug("stream.primary.error", error=str(e), error_type=type(e).__name__)
            await self._sink.put(_Failure(e))
            return
        finally:
            aclose = getattr(primary, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.grace_window > 0:
            await asyncio.sleep(self.grace_window)

        for sub_agent_id, state in self.sub_agent_status.items():
            if state is SubAgentState.ACTIVE:
                self.sub_agent_status[sub_agent_id] = SubAgentState.COMPLETED

        self._closed = True
        await self._sink.put(_CLOSE)
        self.log.debug(
            "stream.closed",
            sub_agents=len(self.sub_agent_status),
            dropped=self.dropped,
        )

    def __repr__(self) -> str:
        return (
            f"<StreamMerger(closed={self._closed}, grace_window={self.grace_window}, "
            f"sub_agents={len(self.sub_agent_status)})>"
        )
