"""
Events module - timeline event taxonomy and the in-process event bus.
"""

from .bus import EventBus
from .types import EventEntity, EventKind, EventStatus, TimelineEvent, new_event

__all__ = [
    "EventBus",
    "EventEntity",
    "EventKind",
    "EventStatus",
    "TimelineEvent",
    "new_event",
]
