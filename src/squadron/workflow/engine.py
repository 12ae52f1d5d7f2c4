"""Workflow engine: runs a WorkflowSpec to a single terminal Outcome.

Each node runs as its own asyncio task that waits for its predecessors'
completion events, then routes and dispatches its task through the
FallbackDispatcher. Independent branches therefore run in parallel, the
way the supervisor used to fan out asyncio.gather waves, but scheduling is
driven by the graph instead of by precomputed waves.

Node lifecycle: pending -> dispatched -> retrying -> succeeded | failed.
Every state change is published on the bus as a StatusUpdate.

Termination:
- all nodes terminal: failed if any required node failed, else succeeded
- cancel(): every non-terminal node is cancelled (in-flight attempts are
  cancelled through the bus) and the outcome is cancelled with no results
- workflow deadline: like cancel(), but the outcome is failed with
  ``deadline_exceeded`` and keeps the partial results
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog

from src.squadron.agents.router import CostRouter
from src.squadron.core.errors import (
    ErrorCode,
    UpstreamFailed,
    error_code_for,
)
from src.squadron.events.bus import MessageBus
from src.squadron.events.schemas import StatusUpdate, Task
from src.squadron.observability.metrics import workflow_outcomes_total
from src.squadron.resilience.retry import DispatchAttempt
from src.squadron.workflow.dispatcher import FallbackDispatcher
from src.squadron.workflow.schemas import (
    NodeReport,
    NodeState,
    Outcome,
    OutcomeStatus,
    WorkflowNode,
    WorkflowSpec,
)

logger = structlog.get_logger(__name__)


class WorkflowRun:
    """One execution of a WorkflowSpec.

    Await the run (or ``outcome()``) for the Outcome; ``cancel()`` stops it.
    Created by WorkflowEngine.start().
    """

    def __init__(self, engine: WorkflowEngine, spec: WorkflowSpec) -> None:
        self.spec = spec
        self._engine = engine
        self._states: dict[str, NodeState] = {n.node_id: NodeState.PENDING for n in spec.nodes}
        self._reports: dict[str, NodeReport] = {
            n.node_id: NodeReport(node_id=n.node_id, state=NodeState.PENDING) for n in spec.nodes
        }
        self._results: dict[str, dict[str, Any]] = {}
        self._attempts: dict[str, list[DispatchAttempt]] = {n.node_id: [] for n in spec.nodes}
        self._done: dict[str, asyncio.Event] = {n.node_id: asyncio.Event() for n in spec.nodes}
        self._node_tasks: dict[str, asyncio.Task] = {}
        self._cancel_requested = asyncio.Event()
        self._main: asyncio.Task[Outcome] | None = None

    @property
    def workflow_id(self) -> str:
        return self.spec.workflow_id

    def node_state(self, node_id: str) -> NodeState:
        return self._states[node_id]

    def done(self) -> bool:
        return self._main is not None and self._main.done()

    def start(self) -> WorkflowRun:
        if self._main is None:
            self._main = asyncio.create_task(
                self._execute(), name=f"workflow:{self.workflow_id}"
            )
        return self

    def cancel(self) -> None:
        """Request cancellation; the outcome resolves as cancelled."""
        if self.done():
            return
        logger.info("workflow_cancel_requested", workflow_id=self.workflow_id)
        self._cancel_requested.set()

    async def outcome(self) -> Outcome:
        self.start()
        assert self._main is not None
        return await self._main

    def __await__(self):
        return self.outcome().__await__()

    # -- orchestration --------------------------------------------------------

    def _remaining(self) -> float | None:
        if self.spec.deadline is None:
            return None
        return (self.spec.deadline - datetime.now(timezone.utc)).total_seconds()

    async def _execute(self) -> Outcome:
        logger.info(
            "workflow_started",
            workflow_id=self.workflow_id,
            nodes=len(self.spec.nodes),
            deadline=self.spec.deadline.isoformat() if self.spec.deadline else None,
        )
        for node in self.spec.nodes:
            self._node_tasks[node.node_id] = asyncio.create_task(
                self._run_node(node), name=f"workflow-node:{self.workflow_id}:{node.node_id}"
            )

        pending: set[asyncio.Task] = set(self._node_tasks.values())
        cancel_waiter = asyncio.create_task(self._cancel_requested.wait())
        interrupted: ErrorCode | None = None
        try:
            while pending:
                timeout = self._remaining()
                if timeout is not None and timeout <= 0:
                    interrupted = ErrorCode.DEADLINE_EXCEEDED
                    break
                done, _ = await asyncio.wait(
                    pending | {cancel_waiter},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if cancel_waiter in done:
                    interrupted = ErrorCode.CANCELLED
                    break
                if not done:
                    interrupted = ErrorCode.DEADLINE_EXCEEDED
                    break
                pending -= done
        except asyncio.CancelledError:
            await self._stop_nodes(ErrorCode.CANCELLED)
            raise
        finally:
            cancel_waiter.cancel()

        if interrupted is not None:
            await self._stop_nodes(interrupted)
        outcome = self._build_outcome(interrupted)
        workflow_outcomes_total.labels(
            status=outcome.status.value,
            error_code=outcome.error_code or "",
        ).inc()
        log = logger.info if outcome.succeeded else logger.warning
        log(
            "workflow_completed",
            workflow_id=self.workflow_id,
            status=outcome.status.value,
            error_code=outcome.error_code,
            succeeded_nodes=len(self._results),
            attempts=len(outcome.attempts),
        )
        return outcome

    async def _stop_nodes(self, code: ErrorCode) -> None:
        live = [t for t in self._node_tasks.values() if not t.done()]
        for task in live:
            task.cancel()
        await asyncio.gather(*live, return_exceptions=True)
        message = (
            "workflow cancelled" if code == ErrorCode.CANCELLED else "workflow deadline exceeded"
        )
        for node_id, state in self._states.items():
            if not state.terminal:
                self._set_state(node_id, NodeState.FAILED, error_code=code.value, error=message)

    # -- nodes ----------------------------------------------------------------

    async def _run_node(self, node: WorkflowNode) -> None:
        for pred in node.depends_on:
            await self._done[pred].wait()
        try:
            output, agent_id = await self._execute_node(node)
        except Exception as exc:
            code = error_code_for(exc)
            self._set_state(node.node_id, NodeState.FAILED, error_code=code.value, error=str(exc))
            if code == ErrorCode.UPSTREAM_FAILED:
                logger.info("workflow_node_skipped", workflow_id=self.workflow_id, node_id=node.node_id, error=str(exc))
            else:
                logger.warning(
                    "workflow_node_failed",
                    workflow_id=self.workflow_id,
                    node_id=node.node_id,
                    error_code=code.value,
                    error=str(exc),
                    required=node.required,
                )
        else:
            self._results[node.node_id] = output
            self._set_state(node.node_id, NodeState.SUCCEEDED, agent_id=agent_id)
        self._done[node.node_id].set()

    def _inputs_for(self, node: WorkflowNode) -> list[str]:
        """Predecessors whose outputs feed the node; raises on blocking failures."""
        usable = []
        for pred in node.depends_on:
            if self._states[pred] == NodeState.SUCCEEDED:
                usable.append(pred)
            elif not node.join or self.spec.node(pred).required:
                raise UpstreamFailed(node.node_id, pred)
        return usable

    async def _execute_node(self, node: WorkflowNode) -> tuple[dict[str, Any], str | None]:
        preds = self._inputs_for(node)
        if node.task is None:
            # Pure barrier join.
            return {p: self._results[p] for p in preds}, None

        task = self._prepare_task(node.task, [self._results[p] for p in preds])
        # NoCapableAgentError fails only this node.
        decision = self._engine.router.route(task)

        def on_state(state: NodeState, agent_id: str) -> None:
            self._set_state(node.node_id, state, agent_id=agent_id)

        result = await self._engine.dispatcher.dispatch(
            task,
            decision,
            attempts=self._attempts[node.node_id],
            on_state=on_state,
        )
        return result.output, result.agent_id

    def _prepare_task(self, task: Task, prior: list[dict[str, Any]]) -> Task:
        if prior:
            task = task.with_prior_outputs(prior)
        deadline = self.spec.deadline
        if deadline is not None and (task.deadline is None or deadline < task.deadline):
            task = task.model_copy(update={"deadline": deadline})
        return task

    def _set_state(
        self,
        node_id: str,
        state: NodeState,
        agent_id: str | None = None,
        error_code: str | None = None,
        error: str | None = None,
    ) -> None:
        self._states[node_id] = state
        previous = self._reports[node_id]
        self._reports[node_id] = NodeReport(
            node_id=node_id,
            state=state,
            agent_id=agent_id or previous.agent_id,
            error_code=error_code,
            error=error,
        )
        self._engine.bus.publish_status(
            StatusUpdate(
                subject_id=node_id,
                status=state.value,
                source="workflow_engine",
                priority=self.spec.priority,
                correlation_id=self.workflow_id,
                data={
                    "agent_id": agent_id or previous.agent_id,
                    "error_code": error_code,
                },
            )
        )

    # -- outcome --------------------------------------------------------------

    def _all_attempts(self) -> list[DispatchAttempt]:
        attempts = [a for node_attempts in self._attempts.values() for a in node_attempts]
        return sorted(attempts, key=lambda a: a.started_at)

    def _single_agent(self) -> str | None:
        if len(self.spec.nodes) != 1:
            return None
        return self._reports[self.spec.nodes[0].node_id].agent_id

    def _build_outcome(self, interrupted: ErrorCode | None) -> Outcome:
        common: dict[str, Any] = {
            "subject_id": self.workflow_id,
            "nodes": dict(self._reports),
            "attempts": self._all_attempts(),
            "agent_id": self._single_agent(),
        }
        if interrupted == ErrorCode.CANCELLED:
            return Outcome(
                status=OutcomeStatus.CANCELLED,
                error_code=ErrorCode.CANCELLED.value,
                error="workflow cancelled",
                **common,
            )
        if interrupted == ErrorCode.DEADLINE_EXCEEDED:
            return Outcome(
                status=OutcomeStatus.FAILED,
                results=dict(self._results),
                error_code=ErrorCode.DEADLINE_EXCEEDED.value,
                error="workflow deadline exceeded",
                **common,
            )

        failed = [
            self._reports[nid]
            for nid in self.spec.topological_order()
            if self._states[nid] == NodeState.FAILED and self.spec.node(nid).required
        ]
        if failed:
            root = next(
                (r for r in failed if r.error_code != ErrorCode.UPSTREAM_FAILED.value),
                failed[0],
            )
            return Outcome(
                status=OutcomeStatus.FAILED,
                results=dict(self._results),
                error_code=root.error_code,
                error=root.error,
                **common,
            )

        sinks = [s for s in self.spec.sinks() if s in self._results]
        if len(self.spec.sinks()) == 1 and sinks:
            payload = self._results[sinks[0]]
        else:
            payload = {s: self._results[s] for s in sinks}
        return Outcome(
            status=OutcomeStatus.SUCCEEDED,
            payload=payload,
            results=dict(self._results),
            **common,
        )


class WorkflowEngine:
    """Schedules workflow nodes onto the router and dispatcher.

    Args:
        router: CostRouter producing fallback chains.
        dispatcher: FallbackDispatcher executing routed tasks.
        bus: MessageBus receiving node StatusUpdates.
    """

    def __init__(self, router: CostRouter, dispatcher: FallbackDispatcher, bus: MessageBus) -> None:
        self.router = router
        self.dispatcher = dispatcher
        self.bus = bus

    def start(self, spec: WorkflowSpec) -> WorkflowRun:
        """Begin executing ``spec``; returns the cancellable run handle."""
        return WorkflowRun(self, spec).start()

    async def run(self, spec: WorkflowSpec) -> Outcome:
        """Execute ``spec`` to completion."""
        return await self.start(spec)
