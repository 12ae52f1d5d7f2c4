"""Prometheus metrics for routing, dispatch, and circuit health.

Provides:
- Module-level Prometheus collectors for circuits, dispatches, workflows
- HealthSink: write-only interface receiving circuit transitions and
  per-dispatch latency/cost samples
- PrometheusHealthSink, LoggingHealthSink, CompositeHealthSink
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from prometheus_client import Counter, Gauge, Histogram

from src.squadron.resilience.circuit import CircuitState, CircuitTransition

logger = structlog.get_logger(__name__)

# ── Circuit Metrics ──────────────────────────────────────────────────────────

circuit_transitions_total = Counter(
    "squadron_circuit_transitions_total",
    "Circuit breaker state transitions",
    ["agent_id", "from_state", "to_state"],
)

circuit_state = Gauge(
    "squadron_circuit_state",
    "Current circuit state (0=closed, 1=half_open, 2=open)",
    ["agent_id"],
)

_STATE_VALUE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}

# ── Dispatch Metrics ─────────────────────────────────────────────────────────

dispatch_attempts_total = Counter(
    "squadron_dispatch_attempts_total",
    "Dispatch attempts by agent and outcome",
    ["agent_id", "outcome"],
)

dispatch_duration_seconds = Histogram(
    "squadron_dispatch_duration_seconds",
    "Dispatch attempt latency in seconds",
    ["agent_id"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

dispatch_cost_total = Counter(
    "squadron_dispatch_cost_total",
    "Monetary cost of successful dispatches",
    ["agent_id"],
)

# ── Workflow Metrics ─────────────────────────────────────────────────────────

workflow_outcomes_total = Counter(
    "squadron_workflow_outcomes_total",
    "Terminal workflow outcomes",
    ["status", "error_code"],
)


# ── Health Sinks ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DispatchSample:
    """Latency/cost sample for one dispatch attempt."""

    agent_id: str
    task_id: str
    attempt: int
    latency_s: float
    cost: Decimal
    succeeded: bool
    error_code: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class HealthSink:
    """Write-only collaborator for health and dispatch telemetry.

    The base implementation discards everything; subclasses override the
    hooks they care about.
    """

    def circuit_transition(self, event: CircuitTransition) -> None:
        return None

    def dispatch_sample(self, sample: DispatchSample) -> None:
        return None


class PrometheusHealthSink(HealthSink):
    """Records telemetry into the module-level Prometheus collectors."""

    def circuit_transition(self, event: CircuitTransition) -> None:
        circuit_transitions_total.labels(
            agent_id=event.agent_id,
            from_state=event.from_state.value,
            to_state=event.to_state.value,
        ).inc()
        circuit_state.labels(agent_id=event.agent_id).set(_STATE_VALUE[event.to_state])

    def dispatch_sample(self, sample: DispatchSample) -> None:
        outcome = "success" if sample.succeeded else (sample.error_code or "failure")
        dispatch_attempts_total.labels(agent_id=sample.agent_id, outcome=outcome).inc()
        dispatch_duration_seconds.labels(agent_id=sample.agent_id).observe(sample.latency_s)
        if sample.succeeded:
            dispatch_cost_total.labels(agent_id=sample.agent_id).inc(float(sample.cost))


class LoggingHealthSink(HealthSink):
    """Emits telemetry as structured log events."""

    def circuit_transition(self, event: CircuitTransition) -> None:
        logger.info(
            "health_changed",
            agent_id=event.agent_id,
            from_state=event.from_state.value,
            to_state=event.to_state.value,
            reason=event.reason,
        )

    def dispatch_sample(self, sample: DispatchSample) -> None:
        logger.debug(
            "dispatch_sample",
            agent_id=sample.agent_id,
            task_id=sample.task_id,
            attempt=sample.attempt,
            latency_ms=round(sample.latency_s * 1000, 2),
            cost=str(sample.cost),
            succeeded=sample.succeeded,
            error_code=sample.error_code,
        )


class CompositeHealthSink(HealthSink):
    """Fans telemetry out to several sinks; one failing sink never blocks others."""

    def __init__(self, *sinks: HealthSink) -> None:
        self._sinks = list(sinks)

    def add(self, sink: HealthSink) -> None:
        self._sinks.append(sink)

    def circuit_transition(self, event: CircuitTransition) -> None:
        for sink in self._sinks:
            try:
                sink.circuit_transition(event)
            except Exception as exc:
                logger.warning("health_sink_error", sink=type(sink).__name__, error=str(exc))

    def dispatch_sample(self, sample: DispatchSample) -> None:
        for sink in self._sinks:
            try:
                sink.dispatch_sample(sample)
            except Exception as exc:
                logger.warning("health_sink_error", sink=type(sink).__name__, error=str(exc))
