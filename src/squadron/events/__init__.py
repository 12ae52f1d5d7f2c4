"""Message passing between the workflow engine and agent executors.

Exports:
    Task: Immutable unit of work submitted by callers.
    TaskPriority: Delivery priority (CRITICAL through LOW).
    TaskRequest / TaskResult / StatusUpdate: The three message kinds.
    MessageBus: Priority channels, per-task ordering, and backpressure.
    ExecutorWorkerPool: Consumers that run executors against the bus.
"""

from __future__ import annotations

from src.squadron.events.schemas import (
    MessageKind,
    StatusUpdate,
    Task,
    TaskPriority,
    TaskRequest,
    TaskResult,
)

__all__ = [
    "ExecutorWorkerPool",
    "MessageBus",
    "MessageKind",
    "StatusUpdate",
    "Task",
    "TaskPriority",
    "TaskRequest",
    "TaskResult",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the bus and workers to avoid circular imports."""
    if name == "MessageBus":
        from src.squadron.events.bus import MessageBus

        return MessageBus
    if name == "ExecutorWorkerPool":
        from src.squadron.events.workers import ExecutorWorkerPool

        return ExecutorWorkerPool
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
