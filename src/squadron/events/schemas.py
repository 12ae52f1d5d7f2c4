"""Task and message schemas exchanged between the engine and executors.

Provides the immutable Task submitted by callers plus the three message
kinds carried by the MessageBus: TaskRequest (engine -> executor),
TaskResult (executor -> engine), and StatusUpdate (lifecycle and health
signals). StatusUpdate serializes to a flat string dict for Redis Streams
and deserializes back losslessly.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskPriority(str, Enum):
    """Priority levels, inherited by every message a task produces."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort key: lower rank is delivered first."""
        return _PRIORITY_RANK[self]

    @property
    def is_urgent(self) -> bool:
        """Urgent priorities bypass bus backpressure."""
        return self in (TaskPriority.CRITICAL, TaskPriority.HIGH)


_PRIORITY_RANK = {
    TaskPriority.CRITICAL: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class MessageKind(str, Enum):
    TASK_REQUEST = "task.request"
    TASK_RESULT = "task.result"
    STATUS_UPDATE = "status.update"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Task(BaseModel):
    """A unit of analysis work submitted by a caller.

    Immutable once constructed. Workflow steps receive upstream outputs in
    ``prior_outputs`` (ordered as the node's ``depends_on``).

    Attributes:
        task_id: Unique identifier (auto-generated UUID4).
        capability: Capability tag an agent must offer.
        complexity: Continuous score in [0.0, 1.0].
        inputs: Caller payload passed to the executor.
        prior_outputs: Outputs of upstream workflow steps.
        priority: Delivery priority.
        deadline: Absolute UTC deadline, optional.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    capability: str = Field(min_length=1)
    complexity: float = Field(ge=0.0, le=1.0)
    inputs: dict[str, Any] = Field(default_factory=dict)
    prior_outputs: tuple[dict[str, Any], ...] = ()
    priority: TaskPriority = TaskPriority.MEDIUM
    deadline: datetime | None = None

    @field_validator("deadline")
    @classmethod
    def _require_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            msg = "deadline must be timezone-aware"
            raise ValueError(msg)
        return value

    def with_prior_outputs(self, outputs: list[dict[str, Any]]) -> Task:
        """Return a copy carrying upstream outputs after any existing ones."""
        return self.model_copy(
            update={"prior_outputs": (*self.prior_outputs, *outputs)}
        )

    def remaining_seconds(self, now: datetime | None = None) -> float | None:
        """Seconds until the deadline, or None when no deadline is set."""
        if self.deadline is None:
            return None
        now = now or _now()
        return (self.deadline - now).total_seconds()


class TaskRequest(BaseModel):
    """One dispatch attempt of a task, addressed to a single agent."""

    kind: MessageKind = MessageKind.TASK_REQUEST
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task: Task
    agent_id: str
    attempt: int = Field(ge=1)
    sent_at: datetime = Field(default_factory=_now)

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def priority(self) -> TaskPriority:
        return self.task.priority


class TaskResult(BaseModel):
    """Executor reply for one attempt.

    ``error_code`` is None on success; otherwise it carries an ErrorCode
    value and ``output`` is empty. ``cost_units`` lets executors report how
    many billable units the call consumed.
    """

    kind: MessageKind = MessageKind.TASK_RESULT
    task_id: str
    agent_id: str
    attempt: int = Field(ge=1)
    output: dict[str, Any] = Field(default_factory=dict)
    error_code: str | None = None
    error: str | None = None
    cost_units: float = Field(default=1.0, ge=0.0)
    completed_at: datetime = Field(default_factory=_now)

    @property
    def succeeded(self) -> bool:
        return self.error_code is None


class StatusUpdate(BaseModel):
    """Lifecycle or health signal published on the bus.

    Attributes:
        subject_id: Task, workflow node, or agent the update is about.
        status: New status value (node state, circuit state, ...).
        source: Component that emitted the update.
        priority: Inherited from the originating task.
        data: Small inline payload.
        correlation_id: Groups updates of one workflow run.
    """

    kind: MessageKind = MessageKind.STATUS_UPDATE
    update_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subject_id: str
    status: str
    source: str
    priority: TaskPriority = TaskPriority.MEDIUM
    timestamp: datetime = Field(default_factory=_now)
    data: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize all fields to a flat dict of strings for Redis Streams."""
        return {
            "kind": self.kind.value,
            "update_id": self.update_id,
            "subject_id": self.subject_id,
            "status": self.status,
            "source": self.source,
            "priority": self.priority.value,
            "timestamp": self.timestamp.isoformat(),
            "data": json.dumps(self.data, default=str),
            "correlation_id": self.correlation_id or "",
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> StatusUpdate:
        """Reverse ``to_stream_dict()``."""
        return cls(
            update_id=raw["update_id"],
            subject_id=raw["subject_id"],
            status=raw["status"],
            source=raw["source"],
            priority=TaskPriority(raw["priority"]),
            timestamp=datetime.fromisoformat(raw["timestamp"]),
            data=json.loads(raw["data"]) if raw.get("data") else {},
            correlation_id=raw.get("correlation_id") or None,
        )
