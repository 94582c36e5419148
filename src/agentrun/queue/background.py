"""
Background work queue with bounded concurrency, timeouts and retries.

Used for fire-and-forget work off the run's hot path (telemetry export).
Callers enqueue and return immediately; failures are logged, never raised
back to the caller.

Invariants:
- No more than max_concurrency tasks run at the same time.
- Tasks are admitted in FIFO order.
- Each attempt is bounded by the task timeout; a timeout counts as a failure.
- A task gets at most retries + 1 attempts, with exponential backoff between
  them, and reaches exactly one final status (succeeded or failed).
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config.schema import QueueConfig

logger = structlog.get_logger()

__all__ = [
    "BackgroundQueue",
    "QueueTask",
    "TaskStatus",
]


class TaskStatus(str, Enum):
    """Lifecycle of a queued task."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class QueueTask:
    """A unit of background work.

    Attributes:
        id: Identifier used in logs (e.g. "export-history-<run id>").
        operation: Zero-argument coroutine function. Called once per attempt.
        timeout: Per-attempt timeout in seconds. None = queue default.
        retries: Retries after the first attempt. None = queue default.
    """

    id: str
    operation: Callable[[], Awaitable[Any]]
    timeout: float | None = None
    retries: int | None = None
    status: TaskStatus = TaskStatus.QUEUED
    attempts: int = 0
    last_error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)

    def __repr__(self) -> str:
        return (
            f"<QueueTask(id='{self.id}', status={self.status.value}, "
            f"attempts={self.attempts})>"
        )


class BackgroundQueue:
    """Asynchronous FIFO queue with a bounded worker pool.

    enqueue() never blocks: it records the task and starts as many pending
    tasks as the concurrency bound allows on the running event loop.
    """

    def __init__(
        self,
        max_concurrency: int = 3,
        default_timeout: float = 10.0,
        default_retries: int = 2,
        retry_base_delay: float = 0.05,
        name: str = "background",
    ) -> None:
        """Initialize the queue.

        Args:
            max_concurrency: Maximum number of tasks running at once.
            default_timeout: Per-attempt timeout (seconds) for tasks without one.
            default_retries: Retries for tasks without their own count.
            retry_base_delay: Initial backoff delay in seconds; doubles per retry.
            name: Queue name, used in logs.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        self.max_concurrency = max_concurrency
        self.default_timeout = default_timeout
        self.default_retries = default_retries
        self.retry_base_delay = retry_base_delay
        self.name = name

        self._pending: deque[QueueTask] = deque()
        self._active: set[asyncio.Task[None]] = set()
        self._succeeded = 0
        self._failed = 0
        self.log = logger.bind(component="queue", queue=name)

    @classmethod
    def from_config(cls, config: QueueConfig, name: str = "background") -> "BackgroundQueue":
        """Build a queue from a QueueConfig section."""
        return cls(
            max_concurrency=config.max_concurrency,
            default_timeout=config.default_timeout,
            default_retries=config.default_retries,
            retry_base_delay=config.retry_base_delay,
            name=name,
        )

    # ── Public API ────────────────────────────────────────────────────────

    def enqueue(self, task: QueueTask) -> QueueTask:
        """Add a task and return immediately.

        Must be called with a running event loop.

        Args:
            task: Task to run. Missing timeout/retries take the queue defaults.

        Returns:
            The same task, whose status fields are updated as it runs.
        """
        if task.timeout is None:
            task.timeout = self.default_timeout
        if task.retries is None:
            task.retries = self.default_retries
        task.status = TaskStatus.QUEUED

        self._pending.append(task)
        self.log.debug("queue.task.enqueued", task_id=task.id, pending=len(self._pending))
        self._process_next()
        return task

    async def join(self) -> None:
        """Wait until every enqueued task has reached a final status."""
        while self._pending or self._active:
            await asyncio.gather(*list(self._active), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def active(self) -> int:
        return len(self._active)

    @property
    def stats(self) -> dict[str, int]:
        """Counters for introspection and tests."""
        return {
            "pending": len(self._pending),
            "active": len(self._active),
            "succeeded": self._succeeded,
            "failed": self._failed,
        }

    # ── Internals ─────────────────────────────────────────────────────────

    def _process_next(self) -> None:
        """Start pending tasks while there is free capacity."""
        loop = asyncio.get_running_loop()
        while self._pending and len(self._active) < self.max_concurrency:
            task = self._pending.popleft()
            runner = loop.create_task(self._execute(task), name=f"queue:{task.id}")
            self._active.add(runner)
            runner.add_done_callback(self._on_done)

    def _on_done(self, runner: asyncio.Task[None]) -> None:
        self._active.discard(runner)
        if self._pending:
            self._process_next()

    def _on_retry_sleep(self, task: QueueTask) -> Callable[[RetryCallState], None]:
        def _log(retry_state: RetryCallState) -> None:
            next_wait = retry_state.next_action.sleep if retry_state.next_action else 0
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            task.status = TaskStatus.RETRYING
            self.log.debug(
                "queue.task.retry",
                task_id=task.id,
                attempt=retry_state.attempt_number,
                wait_seconds=round(next_wait, 3),
                error=str(exc) if exc else None,
                error_type=type(exc).__name__ if exc else None,
            )

        return _log

    async def _attempt(self, task: QueueTask) -> None:
        task.status = TaskStatus.RUNNING
        task.attempts += 1
        try:
            await asyncio.wait_for(task.operation(), timeout=task.timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Task {task.id} timed out after {task.timeout}s") from None

    async def _execute(self, task: QueueTask) -> None:
        """Run a task through its retry policy and record the final status."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt((task.retries or 0) + 1),
            wait=wait_exponential(multiplier=self.retry_base_delay, min=0, max=30),
            before_sleep=self._on_retry_sleep(task),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._attempt(task)
        except Exception as e:
            task.status = TaskStatus.FAILED
            task.last_error = str(e)
            self._failed += 1
            self.log.warning(
                "queue.task.failed",
                task_id=task.id,
                attempts=task.attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        task.status = TaskStatus.SUCCEEDED
        task.last_error = None
        self._succeeded += 1
        self.log.debug("queue.task.succeeded", task_id=task.id, attempts=task.attempts)

    def __repr__(self) -> str:
        return (
            f"<BackgroundQueue(name='{self.name}', max_concurrency={self.max_concurrency}, "
            f"pending={self.pending}, active={self.active})>"
        )
