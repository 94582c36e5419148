"""
Queue module - bounded background work with timeouts and retries.
"""

from .background import BackgroundQueue, QueueTask, TaskStatus

__all__ = [
    "BackgroundQueue",
    "QueueTask",
    "TaskStatus",
]
