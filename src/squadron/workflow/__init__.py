"""Workflow graphs, fallback dispatch, and the workflow engine.

Exports:
    WorkflowSpec / WorkflowNode: Caller-supplied workflow graph.
    Outcome / OutcomeStatus / NodeState: Terminal results and node states.
    FallbackDispatcher: Runs one routed task along its fallback chain.
    WorkflowEngine / WorkflowRun: Executes workflows to a single Outcome.
"""

from __future__ import annotations

from src.squadron.workflow.schemas import (
    NodeReport,
    NodeState,
    Outcome,
    OutcomeStatus,
    WorkflowNode,
    WorkflowSpec,
)

__all__ = [
    "FallbackDispatcher",
    "NodeReport",
    "NodeState",
    "Outcome",
    "OutcomeStatus",
    "WorkflowEngine",
    "WorkflowNode",
    "WorkflowRun",
    "WorkflowSpec",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load dispatcher and engine to avoid circular imports."""
    if name == "FallbackDispatcher":
        from src.squadron.workflow.dispatcher import FallbackDispatcher

        return FallbackDispatcher
    if name in ("WorkflowEngine", "WorkflowRun"):
        from src.squadron.workflow import engine

        return getattr(engine, name)
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
