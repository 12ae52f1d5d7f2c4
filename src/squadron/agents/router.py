"""Cost-based routing with circuit-aware fallback chains.

The CostRouter turns a Task into an ordered fallback chain of agents:

1. Registry lookup for the task's capability; agents whose circuit is
   open are dropped.
2. Low-complexity tasks (below ``low_complexity_threshold``) take the
   cheapest remaining agent as primary.
3. Other tasks take the agent whose capability best covers the task:
   capabilities declared fit for the task's complexity first, then the
   highest declared quality, with cost only as a tie-break.
4. The chain is the primary followed by the remaining eligible agents in
   ascending cost. If every candidate is circuit-open, the router either
   fails with NoCapableAgentError or, when ``force_probe_when_all_open`` is
   set, returns a single forced probe against the agent that was opened
   longest ago.

Routing reads only declared capability/cost metadata and circuit state;
no backend identity is special-cased.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.squadron.agents.base import AgentDefinition
from src.squadron.agents.registry import AgentRegistry
from src.squadron.config import Settings
from src.squadron.core.errors import NoCapableAgentError
from src.squadron.events.schemas import Task
from src.squadron.resilience.circuit import CircuitState

logger = structlog.get_logger(__name__)


# -- Routing Models -----------------------------------------------------------


class RoutingStrategy(str, Enum):
    COST_OPTIMIZED = "cost_optimized"
    QUALITY_OPTIMIZED = "quality_optimized"
    FORCED_PROBE = "forced_probe"


class RoutingDecision(BaseModel):
    """Result of routing a task.

    Attributes:
        task_id: Task the decision is for.
        chain: Agent ids to attempt, in order. Never empty.
        strategy: Which selection path produced the primary.
        forced_probe: True when the chain is a last-resort probe against an
            open circuit.
        reasoning: Why the primary was chosen (for traceability).
    """

    task_id: str
    chain: list[str] = Field(min_length=1)
    strategy: RoutingStrategy
    forced_probe: bool = False
    reasoning: str = ""

    @property
    def primary(self) -> str:
        return self.chain[0]


# -- Cost Router --------------------------------------------------------------


class CostRouter:
    """Chooses agents for a task under a cost/quality objective.

    Args:
        registry: AgentRegistry for lookups and circuit state.
        low_complexity_threshold: Complexity below which cost decides.
        force_probe_when_all_open: Return a forced probe instead of failing
            when every capable agent is circuit-open.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        low_complexity_threshold: float = 0.3,
        force_probe_when_all_open: bool = False,
    ) -> None:
        self._registry = registry
        self._low_complexity_threshold = low_complexity_threshold
        self._force_probe = force_probe_when_all_open

    @classmethod
    def from_settings(cls, registry: AgentRegistry, settings: Settings) -> CostRouter:
        return cls(
            registry,
            low_complexity_threshold=settings.LOW_COMPLEXITY_THRESHOLD,
            force_probe_when_all_open=settings.ROUTER_FORCE_PROBE_WHEN_ALL_OPEN,
        )

    def route(self, task: Task) -> RoutingDecision:
        """Build the fallback chain for ``task``.

        Raises:
            NoCapableAgentError: No agent offers the capability, or all are
                circuit-open and forced probes are disabled.
        """
        candidates = self._registry.lookup(task.capability)
        if not candidates:
            logger.warning(
                "no_capable_agent",
                task_id=task.task_id,
                capability=task.capability,
                reason="unregistered",
            )
            raise NoCapableAgentError(task.capability)

        health = {a.agent_id: self._registry.health_of(a.agent_id) for a in candidates}
        eligible = [a for a in candidates if health[a.agent_id].state != CircuitState.OPEN]

        if not eligible:
            return self._all_open(task, candidates, health)

        if task.complexity < self._low_complexity_threshold:
            primary = eligible[0]
            strategy = RoutingStrategy.COST_OPTIMIZED
            reasoning = (
                f"complexity {task.complexity:.2f} below {self._low_complexity_threshold:.2f}; "
                f"cheapest eligible at {primary.cost_per_unit}/unit"
            )
        else:
            primary = min(eligible, key=lambda a: self._quality_key(a, task))
            cap = primary.capability(task.capability)
            strategy = RoutingStrategy.QUALITY_OPTIMIZED
            reasoning = (
                f"complexity {task.complexity:.2f}; best capability match "
                f"(quality {cap.quality:.2f}, max complexity {cap.max_complexity:.2f})"
            )

        chain = [primary.agent_id] + [a.agent_id for a in eligible if a is not primary]
        decision = RoutingDecision(
            task_id=task.task_id,
            chain=chain,
            strategy=strategy,
            reasoning=reasoning,
        )
        logger.info(
            "task_routed",
            task_id=task.task_id,
            capability=task.capability,
            complexity=task.complexity,
            strategy=strategy.value,
            primary=primary.agent_id,
            chain=chain,
            excluded_open=[a.agent_id for a in candidates if a not in eligible],
        )
        return decision

    @staticmethod
    def _quality_key(agent: AgentDefinition, task: Task) -> tuple[Any, ...]:
        cap = agent.capability(task.capability)
        fits = cap.max_complexity >= task.complexity
        return (not fits, -cap.quality, agent.cost_per_unit, -agent.max_concurrency)

    def _all_open(self, task: Task, candidates: list[AgentDefinition], health: dict) -> RoutingDecision:
        if not self._force_probe:
            logger.warning(
                "no_capable_agent",
                task_id=task.task_id,
                capability=task.capability,
                reason="all_circuits_open",
                agents=[a.agent_id for a in candidates],
            )
            raise NoCapableAgentError(
                task.capability,
                f"All agents for capability '{task.capability}' are circuit-open",
            )

        target = min(
            candidates,
            key=lambda a: (
                health[a.agent_id].opened_at if health[a.agent_id].opened_at is not None else float("inf"),
                a.cost_per_unit,
            ),
        )
        logger.warning(
            "task_routed_forced_probe",
            task_id=task.task_id,
            capability=task.capability,
            agent_id=target.agent_id,
        )
        return RoutingDecision(
            task_id=task.task_id,
            chain=[target.agent_id],
            strategy=RoutingStrategy.FORCED_PROBE,
            forced_probe=True,
            reasoning="all circuits open; probing the least recently opened agent",
        )
