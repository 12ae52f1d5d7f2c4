"""Executor workers that consume task requests from the message bus.

Each registered agent gets ``max_concurrency`` worker coroutines. A worker
takes the next request from its agent's channel, invokes the agent's
executor, and publishes a TaskResult. Executor exceptions are mapped onto
the error taxonomy so the dispatcher can decide whether to retry.
"""

from __future__ import annotations

import asyncio

import structlog

from src.squadron.agents.base import AgentExecutor
from src.squadron.agents.registry import AgentRegistry
from src.squadron.core.errors import ErrorCode, error_code_for
from src.squadron.events.bus import MessageBus
from src.squadron.events.schemas import TaskRequest, TaskResult

logger = structlog.get_logger(__name__)


class ExecutorWorkerPool:
    """Runs executor workers for every agent that has an executor.

    Args:
        bus: MessageBus to consume requests from and publish results to.
        registry: AgentRegistry providing agents and their executors.
    """

    def __init__(self, bus: MessageBus, registry: AgentRegistry) -> None:
        self._bus = bus
        self._registry = registry
        self._workers: dict[str, list[asyncio.Task]] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def worker_count(self, agent_id: str) -> int:
        return len(self._workers.get(agent_id, []))

    async def start(self) -> None:
        """Spawn workers for all registered agents with executors."""
        self._running = True
        for agent in self._registry.agents():
            self.ensure_workers(agent.agent_id)
        logger.info(
            "worker_pool_started",
            agents=list(self._workers.keys()),
            workers=sum(len(w) for w in self._workers.values()),
        )

    def ensure_workers(self, agent_id: str) -> None:
        """Start workers for an agent registered after start()."""
        if not self._running or agent_id in self._workers:
            return
        agent = self._registry.get(agent_id)
        if agent is None or agent.executor is None:
            return
        self._workers[agent_id] = [
            asyncio.create_task(
                self._work(agent_id, agent.executor),
                name=f"executor-worker:{agent_id}:{i}",
            )
            for i in range(agent.max_concurrency)
        ]

    async def stop(self) -> None:
        """Cancel all workers and wait for them to exit."""
        self._running = False
        tasks = [t for workers in self._workers.values() for t in workers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        logger.info("worker_pool_stopped", workers=len(tasks))

    async def _work(self, agent_id: str, executor: AgentExecutor) -> None:
        while self._running:
            request = await self._bus.next_request(agent_id)
            execution = asyncio.ensure_future(executor.invoke(request))
            self._bus.track_running(request, execution)
            try:
                result = await execution
            except asyncio.CancelledError:
                if not self._running:
                    # The worker itself is being stopped.
                    execution.cancel()
                    raise
                logger.debug(
                    "executor_attempt_abandoned",
                    agent_id=agent_id,
                    task_id=request.task_id,
                    attempt=request.attempt,
                )
                continue
            except Exception as exc:
                result = self._failure_result(request, exc)
            self._bus.publish_result(result)

    @staticmethod
    def _failure_result(request: TaskRequest, exc: Exception) -> TaskResult:
        code = error_code_for(exc)
        if code == ErrorCode.INTERNAL:
            logger.error(
                "executor_unexpected_error",
                agent_id=request.agent_id,
                task_id=request.task_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        return TaskResult(
            task_id=request.task_id,
            agent_id=request.agent_id,
            attempt=request.attempt,
            error_code=code.value,
            error=str(exc),
            cost_units=0.0,
        )
