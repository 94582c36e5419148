"""
Core module - per-run state, step log, hooks and lifecycle publishing.
"""

from .context import OperationContext, create_operation_context
from .hooks import RunHooks
from .lifecycle import LifecyclePublisher
from .steps import Step, StepLog

__all__ = [
    "OperationContext",
    "create_operation_context",
    "RunHooks",
    "LifecyclePublisher",
    "Step",
    "StepLog",
]
