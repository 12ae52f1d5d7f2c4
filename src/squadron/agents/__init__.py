"""Agent metadata, discovery, and cost-based routing.

Agents declare capability tags with a quality band, a cost per unit and a
max concurrency. Backends plug in through the AgentExecutor contract; the
router only ever reads declared metadata and circuit state.

Exports:
    AgentCapability: Capability tag with declared quality band.
    AgentDefinition: Metadata describing a registered agent.
    AgentExecutor: Abstract backend performing task attempts.
    CallableExecutor: Adapter turning an async function into an executor.
    AgentStatus: Runtime executor status (IDLE, BUSY, ERROR).
    AgentRegistry: Registry for discovery and health reads.
    CostRouter: Builds fallback chains under a cost/quality objective.
    RoutingDecision: Result model for routing decisions.
"""

from __future__ import annotations

from src.squadron.agents.base import (
    AgentCapability,
    AgentDefinition,
    AgentExecutor,
    AgentStatus,
    CallableExecutor,
)
from src.squadron.agents.registry import AgentRegistry
from src.squadron.agents.router import CostRouter, RoutingDecision, RoutingStrategy

__all__ = [
    "AgentCapability",
    "AgentDefinition",
    "AgentExecutor",
    "AgentRegistry",
    "AgentStatus",
    "CallableExecutor",
    "CostRouter",
    "RoutingDecision",
    "RoutingStrategy",
]
