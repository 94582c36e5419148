"""
History module - run records, stores and the recorder.
"""

from .models import RunRecord, RunStatus, UsageInfo
from .recorder import HistoryRecorder
from .store import HistoryStore, InMemoryHistoryStore, JsonFileHistoryStore

__all__ = [
    "HistoryRecorder",
    "HistoryStore",
    "InMemoryHistoryStore",
    "JsonFileHistoryStore",
    "RunRecord",
    "RunStatus",
    "UsageInfo",
]
