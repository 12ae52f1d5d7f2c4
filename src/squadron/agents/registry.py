"""Agent registry: the single source of truth for agent metadata.

The AgentRegistry stores AgentDefinitions keyed by agent_id and answers:
- lookup(capability): agents offering a capability tag, cheapest first
  (ties broken by max_concurrency descending, then agent_id)
- health_of(agent_id): pure read of the agent's circuit state
- get / agents / list_agents for direct access and listings

The agent list is an immutable tuple replaced by an atomic swap on every
registration, so concurrent readers always see a complete list. No
component caches lookups beyond a single routing decision.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from src.squadron.agents.base import AgentDefinition, AgentExecutor
from src.squadron.core.errors import DuplicateCapabilityConflict
from src.squadron.resilience.circuit import CircuitBreakerBoard, CircuitSnapshot

logger = structlog.get_logger(__name__)


def _order_key(agent: AgentDefinition) -> tuple:
    return (agent.cost_per_unit, -agent.max_concurrency, agent.agent_id)


class AgentRegistry:
    """Registry for agent discovery and health reads.

    Args:
        circuits: Board holding each agent's circuit breaker; health_of()
            reads from it.
        allow_equal_cost_overlap: When False, registering an agent that
            shares a capability tag with another agent at the same cost
            raises DuplicateCapabilityConflict.
    """

    def __init__(
        self,
        circuits: CircuitBreakerBoard | None = None,
        allow_equal_cost_overlap: bool = True,
    ) -> None:
        self._circuits = circuits if circuits is not None else CircuitBreakerBoard()
        self._allow_equal_cost_overlap = allow_equal_cost_overlap
        self._agents: tuple[AgentDefinition, ...] = ()

    @property
    def circuits(self) -> CircuitBreakerBoard:
        return self._circuits

    def register(self, agent: AgentDefinition) -> None:
        """Add or replace an agent definition.

        Raises:
            DuplicateCapabilityConflict: Overlap policy forbids the agent.
        """
        current = self._agents
        others = tuple(a for a in current if a.agent_id != agent.agent_id)

        if not self._allow_equal_cost_overlap:
            for other in others:
                if other.cost_per_unit != agent.cost_per_unit:
                    continue
                shared = {c.name for c in other.capabilities} & {
                    c.name for c in agent.capabilities
                }
                if shared:
                    raise DuplicateCapabilityConflict(
                        f"Agent '{agent.agent_id}' overlaps '{other.agent_id}' on "
                        f"{sorted(shared)} at equal cost {agent.cost_per_unit}"
                    )

        replaced = len(others) != len(current)
        self._agents = tuple(sorted((*others, agent), key=_order_key))
        self._circuits.breaker_for(agent.agent_id)
        logger.info(
            "agent_registered",
            agent_id=agent.agent_id,
            agent_name=agent.name,
            capabilities=[c.name for c in agent.capabilities],
            cost_per_unit=str(agent.cost_per_unit),
            max_concurrency=agent.max_concurrency,
            replaced=replaced,
        )

    def register_many(self, agents: Iterable[AgentDefinition]) -> None:
        for agent in agents:
            self.register(agent)

    def get(self, agent_id: str) -> AgentDefinition | None:
        for agent in self._agents:
            if agent.agent_id == agent_id:
                return agent
        return None

    def agents(self) -> tuple[AgentDefinition, ...]:
        """Snapshot of all agents, cheapest first."""
        return self._agents

    def lookup(self, capability: str) -> list[AgentDefinition]:
        """Agents offering ``capability``, ascending by cost.

        Ties on cost prefer the higher declared max_concurrency.
        """
        return [a for a in self._agents if a.offers(capability)]

    def health_of(self, agent_id: str) -> CircuitSnapshot:
        """Pure read of an agent's circuit state."""
        return self._circuits.snapshot(agent_id)

    def list_agents(self) -> list[dict[str, Any]]:
        """Routing info for every agent, including current health."""
        return [
            {**a.to_routing_info(), "health": self.health_of(a.agent_id).state.value}
            for a in self._agents
        ]

    def list_agent_ids(self) -> list[str]:
        return [a.agent_id for a in self._agents]

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: str) -> bool:
        return self.get(agent_id) is not None

    def executor_for(self, agent_id: str) -> AgentExecutor | None:
        agent = self.get(agent_id)
        return agent.executor if agent is not None else None
