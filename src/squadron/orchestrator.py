"""Task submission entry point for the squadron.

The Orchestrator is the conductor: it owns one instance of every
component (circuit board, retry budget, registry, router, bus, executor
workers, dispatcher, workflow engine) and exposes the submission surface:

- submit_task(task): run one task as a single-node workflow
- submit_workflow(spec): run a workflow to completion
- start_workflow(spec): begin a workflow and return a cancellable handle

Submission never raises for task failures; every task or workflow resolves
to exactly one Outcome. Components are explicitly owned instances, so
several orchestrators can coexist in one process (tests rely on this).
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Iterable

import structlog

from src.squadron.agents.base import AgentDefinition
from src.squadron.agents.registry import AgentRegistry
from src.squadron.agents.router import CostRouter
from src.squadron.config import Settings, get_settings
from src.squadron.events.bus import MessageBus
from src.squadron.events.schemas import Task
from src.squadron.events.workers import ExecutorWorkerPool
from src.squadron.observability.health_stream import RedisHealthSink
from src.squadron.observability.metrics import (
    CompositeHealthSink,
    HealthSink,
    LoggingHealthSink,
    PrometheusHealthSink,
)
from src.squadron.resilience.circuit import CircuitBreakerBoard
from src.squadron.resilience.retry import RetryBudget, RetryPolicy
from src.squadron.workflow.dispatcher import FallbackDispatcher
from src.squadron.workflow.engine import WorkflowEngine, WorkflowRun
from src.squadron.workflow.schemas import Outcome, WorkflowSpec

logger = structlog.get_logger(__name__)


class Orchestrator:
    """Submission facade over the wired components.

    Use ``create_orchestrator()`` rather than constructing directly.
    """

    def __init__(
        self,
        settings: Settings,
        registry: AgentRegistry,
        router: CostRouter,
        bus: MessageBus,
        workers: ExecutorWorkerPool,
        dispatcher: FallbackDispatcher,
        engine: WorkflowEngine,
        budget: RetryBudget,
        health_sink: HealthSink,
        health_stream: RedisHealthSink | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.router = router
        self.bus = bus
        self.workers = workers
        self.dispatcher = dispatcher
        self.engine = engine
        self.budget = budget
        self.health_sink = health_sink
        self.health_stream = health_stream
        self._stream_task: asyncio.Task | None = None

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        """Start executor workers and the health stream flusher."""
        await self.workers.start()
        if self.health_stream is not None and self._stream_task is None:
            self._stream_task = asyncio.create_task(self.health_stream.run(), name="health-stream")
        logger.info(
            "orchestrator_started",
            agent_count=len(self.registry),
            health_stream=self.health_stream is not None,
        )

    async def stop(self) -> None:
        await self.workers.stop()
        if self._stream_task is not None:
            self._stream_task.cancel()
            await asyncio.gather(self._stream_task, return_exceptions=True)
            self._stream_task = None
        if self.health_stream is not None:
            await self.health_stream.close()
        logger.info("orchestrator_stopped")

    def register_agent(self, agent: AgentDefinition) -> None:
        """Register (or replace) an agent, starting its workers if running."""
        self.registry.register(agent)
        self.workers.ensure_workers(agent.agent_id)

    async def submit_task(self, task: Task) -> Outcome:
        """Route and execute one task; always returns its Outcome."""
        logger.info(
            "task_submitted",
            task_id=task.task_id,
            capability=task.capability,
            complexity=task.complexity,
            priority=task.priority.value,
        )
        return await self.engine.run(WorkflowSpec.single(task))

    async def submit_workflow(self, spec: WorkflowSpec) -> Outcome:
        """Execute a workflow to its terminal Outcome."""
        return await self.engine.run(spec)

    def start_workflow(self, spec: WorkflowSpec) -> WorkflowRun:
        """Begin a workflow; the returned run is awaitable and cancellable."""
        return self.engine.start(spec)


def create_orchestrator(
    settings: Settings | None = None,
    agents: Iterable[AgentDefinition] = (),
    health_sinks: Iterable[HealthSink] = (),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    rng: random.Random | None = None,
) -> Orchestrator:
    """Factory function that wires all components from settings.

    Args:
        settings: Configuration; defaults to ``get_settings()``.
        agents: Agents to register up front.
        health_sinks: Extra sinks next to Prometheus and logging (and the
            Redis health stream when ``REDIS_URL`` is set).
        sleep: Retry backoff sleep (tests inject a recorder).
        clock: Monotonic clock for circuit cooldowns.
        rng: Random source for retry jitter.

    Returns:
        Configured Orchestrator; call ``start()`` before submitting.
    """
    settings = settings or get_settings()

    sink = CompositeHealthSink(PrometheusHealthSink(), LoggingHealthSink(), *health_sinks)
    health_stream: RedisHealthSink | None = None
    if settings.REDIS_URL:
        health_stream = RedisHealthSink.from_url(settings.REDIS_URL, settings.HEALTH_STREAM)
        sink.add(health_stream)

    circuits = CircuitBreakerBoard.from_settings(settings, clock=clock)
    circuits.add_listener(sink.circuit_transition)

    registry = AgentRegistry(
        circuits=circuits,
        allow_equal_cost_overlap=settings.REGISTRY_ALLOW_EQUAL_COST_OVERLAP,
    )
    registry.register_many(agents)

    budget = RetryBudget.from_settings(settings)
    policy = RetryPolicy.from_settings(settings, budget, sleep=sleep, rng=rng)
    router = CostRouter.from_settings(registry, settings)
    bus = MessageBus(high_watermark=settings.BUS_HIGH_WATERMARK)
    workers = ExecutorWorkerPool(bus, registry)
    dispatcher = FallbackDispatcher.from_settings(registry, bus, policy, settings, health_sink=sink)
    engine = WorkflowEngine(router, dispatcher, bus)

    orchestrator = Orchestrator(
        settings=settings,
        registry=registry,
        router=router,
        bus=bus,
        workers=workers,
        dispatcher=dispatcher,
        engine=engine,
        budget=budget,
        health_sink=sink,
        health_stream=health_stream,
    )

    logger.info(
        "orchestrator_created",
        agent_count=len(registry),
        environment=settings.ENVIRONMENT.value,
    )
    return orchestrator
