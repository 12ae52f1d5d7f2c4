"""Workflow definition and outcome models.

A WorkflowSpec is a directed acyclic graph of WorkflowNodes. Edges are
declared on the successor via ``depends_on``:

- sequential (``join=False``): every predecessor must succeed; their
  outputs are appended to the node task's ``prior_outputs`` in
  ``depends_on`` order.
- parallel-join (``join=True``): the node waits until every predecessor is
  terminal. A failed *required* predecessor fails the join without
  dispatching; failed non-required predecessors are skipped. A join node
  without a task is a pure barrier that succeeds with the merged outputs.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from src.squadron.events.schemas import Task, TaskPriority
from src.squadron.resilience.retry import DispatchAttempt


class NodeState(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (NodeState.SUCCEEDED, NodeState.FAILED)


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkflowNode(BaseModel):
    """One step of a workflow.

    Attributes:
        node_id: Unique within the workflow.
        task: Work to route and dispatch. Optional only for join barriers.
        depends_on: Predecessor node ids.
        join: Parallel-join semantics instead of sequential.
        required: Whether this node's failure fails the workflow (and any
            join that depends on it).
    """

    node_id: str = Field(min_length=1)
    task: Task | None = None
    depends_on: list[str] = Field(default_factory=list)
    join: bool = False
    required: bool = True

    @model_validator(mode="after")
    def _check_shape(self) -> WorkflowNode:
        if self.task is None and not self.join:
            msg = f"node '{self.node_id}' needs a task unless it is a join barrier"
            raise ValueError(msg)
        if self.join and not self.depends_on:
            msg = f"join node '{self.node_id}' must depend on at least one node"
            raise ValueError(msg)
        if len(set(self.depends_on)) != len(self.depends_on):
            msg = f"node '{self.node_id}' lists a predecessor twice"
            raise ValueError(msg)
        return self


class WorkflowSpec(BaseModel):
    """Caller-supplied workflow graph."""

    workflow_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    nodes: list[WorkflowNode] = Field(min_length=1)
    deadline: datetime | None = None
    priority: TaskPriority = TaskPriority.MEDIUM

    @field_validator("deadline")
    @classmethod
    def _require_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            msg = "deadline must be timezone-aware"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _check_graph(self) -> WorkflowSpec:
        ids = [n.node_id for n in self.nodes]
        if len(set(ids)) != len(ids):
            msg = "node ids must be unique"
            raise ValueError(msg)
        known = set(ids)
        for node in self.nodes:
            unknown = [p for p in node.depends_on if p not in known]
            if unknown:
                msg = f"node '{node.node_id}' depends on unknown nodes {unknown}"
                raise ValueError(msg)
        self.topological_order()
        return self

    def node(self, node_id: str) -> WorkflowNode:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        raise KeyError(node_id)

    def successors(self, node_id: str) -> list[str]:
        return [n.node_id for n in self.nodes if node_id in n.depends_on]

    def sinks(self) -> list[str]:
        """Nodes nothing depends on."""
        depended = {p for n in self.nodes for p in n.depends_on}
        return [n.node_id for n in self.nodes if n.node_id not in depended]

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; raises ValueError on cycles."""
        indegree = {n.node_id: len(n.depends_on) for n in self.nodes}
        ready = [nid for nid, deg in indegree.items() if deg == 0]
        order: list[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for succ in self.successors(current):
                indegree[succ] -= 1
                if indegree[succ] == 0:
                    ready.append(succ)
        if len(order) != len(self.nodes):
            msg = "workflow graph contains a cycle"
            raise ValueError(msg)
        return order

    @classmethod
    def single(cls, task: Task) -> WorkflowSpec:
        """Wrap one task as a single-node workflow."""
        return cls(
            workflow_id=task.task_id,
            nodes=[WorkflowNode(node_id=task.task_id, task=task)],
            deadline=task.deadline,
            priority=task.priority,
        )


class NodeReport(BaseModel):
    """Final state of one node."""

    node_id: str
    state: NodeState
    agent_id: str | None = None
    error_code: str | None = None
    error: str | None = None


class Outcome(BaseModel):
    """The single terminal result of a task or workflow.

    Attributes:
        subject_id: Workflow id (equal to the task id for single tasks).
        status: succeeded, failed, or cancelled.
        payload: Output of the sink node, or ``{sink_id: output}`` when
            the workflow has several sinks. Empty unless succeeded.
        results: Outputs of every succeeded node. On failure these are the
            partial results; always empty when cancelled.
        error_code: Taxonomy code for failed/cancelled outcomes.
        error: Human-readable failure description.
        nodes: Final state of each node.
        attempts: Every dispatch attempt made on behalf of the subject.
        agent_id: Agent that produced the payload (single-node subjects).
    """

    subject_id: str
    status: OutcomeStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    error_code: str | None = None
    error: str | None = None
    nodes: dict[str, NodeReport] = Field(default_factory=dict)
    attempts: list[DispatchAttempt] = Field(default_factory=list)
    agent_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED
