"""
In-process event bus for timeline events and history notifications.

The bus is created once per runtime and handed to every run through its
OperationContext; nothing in the package reaches for a module-level instance.

Subscribers may be plain functions or coroutine functions. A failing
subscriber is logged and skipped; it never affects the run or the other
subscribers.
"""

import inspect
from typing import Any, Callable

import structlog

from .types import TimelineEvent

logger = structlog.get_logger()

__all__ = ["EventBus", "EventCallback", "HistoryCallback"]

EventCallback = Callable[[TimelineEvent], Any]
HistoryCallback = Callable[[str, Any], Any]


class EventBus:
    """Fan-out of timeline events and run record notifications."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[str | None, EventCallback]] = []
        self._created_listeners: list[HistoryCallback] = []
        self._updated_listeners: list[HistoryCallback] = []
        # trace_id -> ids of events already published in that trace
        self._published: dict[str, set[str]] = {}
        self.log = logger.bind(component="event_bus")

    # ── Timeline events ───────────────────────────────────────────────────

    def subscribe(
        self, callback: EventCallback, trace_id: str | None = None
    ) -> Callable[[], None]:
        """Register a timeline event subscriber.

        Args:
            callback: Called with every published event (sync or async).
            trace_id: If set, only events of that trace are delivered.

        Returns:
            A function that removes the subscription.
        """
        entry = (trace_id, callback)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    async def publish(self, event: TimelineEvent) -> None:
        """Deliver an event to every matching subscriber, in subscription order."""
        seen = self._published.setdefault(event.trace_id, set())
        if event.parent_event_id and event.parent_event_id not in seen:
            self.log.warning(
                "event_bus.unknown_parent",
                event_id=event.id,
                event_name=event.name,
                trace_id=event.trace_id,
                parent_event_id=event.parent_event_id,
            )
        seen.add(event.id)

        for trace_filter, callback in list(self._subscribers):
            if trace_filter is not None and trace_filter != event.trace_id:
                continue
            await self._call_safe(callback, "event_bus.subscriber_error", event)

    def close_trace(self, trace_id: str) -> None:
        """Forget the published ids of a finished trace."""
        self._published.pop(trace_id, None)

    @property
    def open_traces(self) -> int:
        return len(self._published)

    # ── History notifications ─────────────────────────────────────────────

    def on_history_created(self, callback: HistoryCallback) -> Callable[[], None]:
        """Register a listener called with (agent_id, record) on record creation."""
        self._created_listeners.append(callback)
        return lambda: self._remove(self._created_listeners, callback)

    def on_history_updated(self, callback: HistoryCallback) -> Callable[[], None]:
        """Register a listener called with (agent_id, record) on record updates."""
        self._updated_listeners.append(callback)
        return lambda: self._remove(self._updated_listeners, callback)

    async def emit_history_created(self, agent_id: str, record: Any) -> None:
        for callback in list(self._created_listeners):
            await self._call_safe(callback, "event_bus.history_listener_error", agent_id, record)

    async def emit_history_updated(self, agent_id: str, record: Any) -> None:
        for callback in list(self._updated_listeners):
            await self._call_safe(callback, "event_bus.history_listener_error", agent_id, record)

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    def _remove(listeners: list[HistoryCallback], callback: HistoryCallback) -> None:
        if callback in listeners:
            listeners.remove(callback)

    async def _call_safe(self, callback: Callable[..., Any], log_event: str, *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.log.warning(
                log_event,
                callback=getattr(callback, "__name__", repr(callback)),
                error=str(e),
                error_type=type(e).__name__,
            )

    def __repr__(self) -> str:
        return f"<EventBus(subscribers={len(self._subscribers)}, open_traces={self.open_traces})>"
