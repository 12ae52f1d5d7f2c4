"""Base agent abstractions for cost-aware task routing.

Defines the agent metadata held by the AgentRegistry (capabilities with a
declared quality band, cost per unit of work, max concurrency) and the
AgentExecutor contract that every backend implements. Routing decisions are
made only from this declared metadata; no provider identity is hard-coded.

These types are consumed by the AgentRegistry (registry.py) for discovery
and by the CostRouter (router.py) for fallback-chain construction.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

from src.squadron.events.schemas import TaskRequest, TaskResult

logger = structlog.get_logger(__name__)


# ── Agent Status ─────────────────────────────────────────────────────────────


class AgentStatus(str, Enum):
    """Runtime status of an executor instance."""

    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


# ── Agent Capability ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AgentCapability:
    """A capability tag an agent offers, with its declared quality band.

    Attributes:
        name: Capability tag (e.g., "forecast", "retrieval").
        description: Human-readable description.
        quality: Declared output quality in [0, 1]; the router prefers higher
            quality for tasks above the low-complexity threshold.
        max_complexity: Highest task complexity this capability is declared
            fit for.
    """

    name: str
    description: str = ""
    quality: float = 0.5
    max_complexity: float = 1.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.quality <= 1.0:
            raise ValueError(f"quality must be within [0, 1], got {self.quality}")
        if not 0.0 <= self.max_complexity <= 1.0:
            raise ValueError(
                f"max_complexity must be within [0, 1], got {self.max_complexity}"
            )


# ── Agent Definition ─────────────────────────────────────────────────────────


@dataclass
class AgentDefinition:
    """Metadata describing a registered agent.

    Attributes:
        agent_id: Unique identifier (registry key).
        name: Human-readable name.
        capabilities: Capabilities this agent provides.
        cost_per_unit: Monetary cost per unit of work (decimal precision).
        max_concurrency: Declared maximum in-flight attempts.
        description: What this agent does.
        tags: Free-form labels.
        executor: Backend implementation, optional at definition time.
    """

    agent_id: str
    name: str
    capabilities: list[AgentCapability]
    cost_per_unit: Decimal
    max_concurrency: int = 1
    description: str = ""
    tags: list[str] = field(default_factory=list)
    executor: AgentExecutor | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.cost_per_unit, Decimal):
            self.cost_per_unit = Decimal(str(self.cost_per_unit))
        if self.cost_per_unit < 0:
            raise ValueError(f"cost_per_unit must be non-negative for {self.agent_id}")
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1 for {self.agent_id}")

    def capability(self, name: str) -> AgentCapability | None:
        """Return the named capability, or None if not offered."""
        for cap in self.capabilities:
            if cap.name == name:
                return cap
        return None

    def offers(self, name: str) -> bool:
        return self.capability(name) is not None

    def to_routing_info(self) -> dict[str, Any]:
        """Serialize metadata for logs and listings."""
        return {
            "id": self.agent_id,
            "name": self.name,
            "description": self.description,
            "capabilities": [c.name for c in self.capabilities],
            "cost_per_unit": str(self.cost_per_unit),
            "max_concurrency": self.max_concurrency,
        }


# ── Agent Executor ───────────────────────────────────────────────────────────


class AgentExecutor(ABC):
    """Abstract backend that performs a task attempt.

    Subclasses implement execute(). Raise TransientUpstreamError for
    recoverable failures and TaskValidationError for bad input; anything
    else is treated as an internal failure. External callers (the executor
    workers) use invoke(), which wraps execute() with status tracking and
    structured logging.
    """

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        self.status: AgentStatus = AgentStatus.IDLE
        self._in_flight = 0
        self._logger = structlog.get_logger(__name__).bind(agent_id=agent_id)

    @abstractmethod
    async def execute(self, request: TaskRequest) -> TaskResult:
        """Perform one attempt of the requested task."""
        ...

    async def invoke(self, request: TaskRequest) -> TaskResult:
        """Invoke execute() with the IDLE -> BUSY -> IDLE/ERROR lifecycle.

        Raises:
            Exception: Any exception raised by execute() is re-raised after
                status is set to ERROR.
        """
        self._logger.debug(
            "executor_attempt_started",
            task_id=request.task_id,
            attempt=request.attempt,
        )
        self._in_flight += 1
        self.status = AgentStatus.BUSY

        try:
            result = await self.execute(request)
        except Exception as exc:
            self.status = AgentStatus.ERROR
            self._logger.warning(
                "executor_attempt_failed",
                task_id=request.task_id,
                attempt=request.attempt,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            self._in_flight -= 1

        if self._in_flight == 0:
            self.status = AgentStatus.IDLE
        self._logger.debug(
            "executor_attempt_completed",
            task_id=request.task_id,
            attempt=request.attempt,
        )
        return result


class CallableExecutor(AgentExecutor):
    """Adapts an async function ``(request) -> dict`` into an executor.

    The function's return value becomes the TaskResult output. Useful for
    wiring thin API clients without subclassing.
    """

    def __init__(
        self,
        agent_id: str,
        func: Callable[[TaskRequest], Awaitable[dict[str, Any]]],
        cost_units: float = 1.0,
    ) -> None:
        super().__init__(agent_id)
        self._func = func
        self._cost_units = cost_units

    async def execute(self, request: TaskRequest) -> TaskResult:
        output = await self._func(request)
        return TaskResult(
            task_id=request.task_id,
            agent_id=self.agent_id,
            attempt=request.attempt,
            output=output,
            cost_units=self._cost_units,
        )
