"""Fallback-chain dispatch of a single routed task.

The FallbackDispatcher walks a RoutingDecision's chain in order. For each
agent it runs the RetryPolicy around single attempts; each attempt asks the
agent's circuit breaker for a permit, publishes a TaskRequest on the bus,
and waits on the task's mailbox for the matching TaskResult under the
dispatch timeout.

Moving on to the next agent happens when the circuit is open, retries on
transient failures are exhausted, or the agent fails with an internal
error. Validation errors, retry budget exhaustion, deadlines, and
cancellation stop the chain immediately. Attempts skipped or failed along
the chain are logged as recoverable; only exhausting the whole chain is
reported as an error.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable
from decimal import Decimal

import structlog

from src.squadron.agents.registry import AgentRegistry
from src.squadron.agents.router import RoutingDecision
from src.squadron.config import Settings
from src.squadron.core.errors import (
    TRANSIENT_ERRORS,
    CircuitOpenError,
    DeadlineExceeded,
    ErrorCode,
    FallbackExhaustedError,
    SquadronError,
    error_code_for,
    error_from_code,
)
from src.squadron.events.bus import Mailbox, MessageBus
from src.squadron.events.schemas import Task, TaskRequest, TaskResult
from src.squadron.observability.metrics import DispatchSample, HealthSink
from src.squadron.resilience.circuit import CircuitBreaker, CircuitPermit
from src.squadron.resilience.retry import DispatchAttempt, RetryPolicy
from src.squadron.workflow.schemas import NodeState

logger = structlog.get_logger(__name__)

StateCallback = Callable[[NodeState, str], None]


def _agent_fault(exc: BaseException) -> bool:
    """Failures that count against the agent and allow falling back."""
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    return isinstance(exc, SquadronError) and exc.code == ErrorCode.INTERNAL


class FallbackDispatcher:
    """Executes a task against its fallback chain.

    Args:
        registry: AgentRegistry (agent costs and circuit breakers).
        bus: MessageBus carrying requests and results.
        retry_policy: RetryPolicy applied per agent.
        health_sink: Receives per-attempt latency/cost samples.
        timeout_s: Per-attempt timeout, further bounded by the task deadline.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        bus: MessageBus,
        retry_policy: RetryPolicy,
        health_sink: HealthSink | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._retry = retry_policy
        self._sink = health_sink or HealthSink()
        self._timeout_s = timeout_s

    @classmethod
    def from_settings(
        cls,
        registry: AgentRegistry,
        bus: MessageBus,
        retry_policy: RetryPolicy,
        settings: Settings,
        health_sink: HealthSink | None = None,
    ) -> FallbackDispatcher:
        return cls(
            registry,
            bus,
            retry_policy,
            health_sink=health_sink,
            timeout_s=settings.DISPATCH_TIMEOUT_MS / 1000,
        )

    async def dispatch(
        self,
        task: Task,
        decision: RoutingDecision,
        attempts: list[DispatchAttempt] | None = None,
        on_state: StateCallback | None = None,
    ) -> TaskResult:
        """Run the task until an agent succeeds or the chain is exhausted.

        Args:
            task: Task to execute.
            decision: Router output; ``chain`` is attempted in order.
            attempts: Receives a DispatchAttempt per try.
            on_state: Called with (NodeState, agent_id) on dispatch/retry.

        Returns:
            The successful TaskResult.

        Raises:
            CircuitOpenError: Every agent in the chain was circuit-open.
            FallbackExhaustedError: Every agent failed.
            TaskValidationError, RetryBudgetExhausted, DeadlineExceeded:
                Propagated immediately.
        """
        ledger = attempts if attempts is not None else []
        mailbox = self._bus.open_mailbox(task.task_id)
        numbers = itertools.count(1)
        tried: list[str] = []
        last_error: Exception | None = None
        all_open = True

        try:
            for agent_id in decision.chain:
                breaker = self._registry.circuits.breaker_for(agent_id)
                tried.append(agent_id)
                if on_state is not None:
                    on_state(NodeState.DISPATCHED, agent_id)

                def retry_hook(next_attempt: int, delay: float, exc: BaseException, _agent: str = agent_id) -> None:
                    if on_state is not None:
                        on_state(NodeState.RETRYING, _agent)

                async def attempt(_n: int, _agent: str = agent_id, _breaker: CircuitBreaker = breaker) -> TaskResult:
                    return await self._attempt(
                        task, _agent, _breaker, mailbox, next(numbers), forced=decision.forced_probe,
                    )

                first = len(ledger)
                try:
                    result = await self._retry.execute(
                        attempt,
                        task_id=task.task_id,
                        agent_id=agent_id,
                        attempts=ledger,
                        on_retry=retry_hook,
                        deadline=task.deadline,
                        # A forced probe is a single attempt.
                        max_attempts=1 if decision.forced_probe else None,
                    )
                except CircuitOpenError as exc:
                    last_error = exc
                    if any(a.error_code != ErrorCode.CIRCUIT_OPEN.value for a in ledger[first:]):
                        all_open = False
                    logger.warning(
                        "fallback_agent_skipped",
                        task_id=task.task_id,
                        agent_id=agent_id,
                        reason="circuit_open",
                    )
                    continue
                except Exception as exc:
                    if not _agent_fault(exc):
                        raise
                    all_open = False
                    last_error = exc
                    logger.warning(
                        "fallback_agent_failed",
                        task_id=task.task_id,
                        agent_id=agent_id,
                        error=str(exc),
                        error_code=error_code_for(exc).value,
                        remaining=len(decision.chain) - len(tried),
                    )
                    continue

                logger.info(
                    "task_dispatched",
                    task_id=task.task_id,
                    agent_id=agent_id,
                    fallback_depth=len(tried) - 1,
                    attempts=len(ledger),
                )
                return result
        finally:
            self._bus.close_mailbox(task.task_id)

        logger.error(
            "fallback_chain_exhausted",
            task_id=task.task_id,
            capability=task.capability,
            tried=tried,
            error=str(last_error),
        )
        if all_open and isinstance(last_error, CircuitOpenError):
            raise last_error
        raise FallbackExhaustedError(task.task_id, tried, last_error)

    def _attempt_timeout(self, task: Task) -> tuple[float, bool]:
        """Per-attempt timeout and whether the task deadline shortened it."""
        remaining = task.remaining_seconds()
        if remaining is None:
            return self._timeout_s, False
        if remaining <= 0:
            raise DeadlineExceeded(f"Deadline for task '{task.task_id}' already passed")
        if remaining < self._timeout_s:
            return remaining, True
        return self._timeout_s, False

    async def _attempt(
        self,
        task: Task,
        agent_id: str,
        breaker: CircuitBreaker,
        mailbox: Mailbox,
        number: int,
        forced: bool = False,
    ) -> TaskResult:
        timeout, cut_by_deadline = self._attempt_timeout(task)
        permit = breaker.allow(force=forced)
        request = TaskRequest(task=task, agent_id=agent_id, attempt=number)
        mailbox.expect(number)
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            await self._bus.publish_request(request)
            result = await mailbox.receive(timeout=timeout)
        except TimeoutError as exc:
            self._bus.cancel_attempt(task.task_id, number)
            latency = loop.time() - started
            if cut_by_deadline:
                # The caller ran out of time; the agent did not.
                breaker.release(permit)
                self._sample(task, agent_id, number, latency, None, ErrorCode.DEADLINE_EXCEEDED.value)
                raise DeadlineExceeded(
                    f"Deadline for task '{task.task_id}' passed while waiting on '{agent_id}'"
                ) from exc
            breaker.record_failure(permit)
            self._sample(task, agent_id, number, latency, None, ErrorCode.TIMEOUT.value)
            raise
        except BaseException:
            self._bus.cancel_attempt(task.task_id, number)
            breaker.release(permit)
            raise

        latency = loop.time() - started
        if result.succeeded:
            breaker.record_success(permit)
            self._sample(task, agent_id, number, latency, result, None)
            return result

        exc = error_from_code(result.error_code, result.error or "")
        self._record_failure(breaker, permit, exc)
        self._sample(task, agent_id, number, latency, None, result.error_code)
        raise exc

    @staticmethod
    def _record_failure(breaker: CircuitBreaker, permit: CircuitPermit, exc: Exception) -> None:
        if _agent_fault(exc):
            breaker.record_failure(permit)
        else:
            breaker.release(permit)

    def _sample(
        self,
        task: Task,
        agent_id: str,
        number: int,
        latency: float,
        result: TaskResult | None,
        error_code: str | None,
    ) -> None:
        agent = self._registry.get(agent_id)
        cost = Decimal("0")
        if result is not None and agent is not None:
            cost = agent.cost_per_unit * Decimal(str(result.cost_units))
        self._sink.dispatch_sample(
            DispatchSample(
                agent_id=agent_id,
                task_id=task.task_id,
                attempt=number,
                latency_s=latency,
                cost=cost,
                succeeded=result is not None,
                error_code=error_code,
            )
        )
