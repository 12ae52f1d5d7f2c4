"""Tests for the orchestrator factory and task submission.

Covers:
- create_orchestrator() wiring from settings
- submit_task() outcomes for success, validation failure, and exhausted retries
- Circuit opening under sustained failure and exclusion from routing
- Dispatch samples reaching custom health sinks
- Runtime agent registration
- Single-attempt forced probes and deadline-shortened timeouts
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.squadron.core.errors import DeadlineExceeded, TaskValidationError, TransientUpstreamError
from src.squadron.events.schemas import Task
from src.squadron.observability.metrics import DispatchSample, HealthSink
from src.squadron.orchestrator import create_orchestrator
from src.squadron.resilience.circuit import CircuitState, CircuitTransition
from src.squadron.workflow.schemas import OutcomeStatus


class RecordingSink(HealthSink):
    def __init__(self) -> None:
        self.samples: list[DispatchSample] = []
        self.transitions: list[CircuitTransition] = []

    def circuit_transition(self, event: CircuitTransition) -> None:
        self.transitions.append(event)

    def dispatch_sample(self, sample: DispatchSample) -> None:
        self.samples.append(sample)


def _task(**kwargs) -> Task:
    return Task(capability="forecast", complexity=kwargs.pop("complexity", 0.2), **kwargs)


# ── Factory ──────────────────────────────────────────────────────────────────


def test_create_orchestrator_wires_components(sleep, clock, make_settings, make_agent):
    orchestrator = create_orchestrator(
        settings=make_settings(BUS_HIGH_WATERMARK=5, RETRY_BUDGET_MIN_CONCURRENCY=7),
        agents=[make_agent("a"), make_agent("b")],
        sleep=sleep,
        clock=clock,
    )
    assert len(orchestrator.registry) == 2
    assert orchestrator.bus.high_watermark == 5
    assert orchestrator.budget.limit == 7
    assert orchestrator.health_stream is None
    assert orchestrator.router.route(_task()).chain == ["a", "b"]


def test_independent_orchestrators_do_not_share_state(sleep, clock, make_agent, make_settings):
    first = create_orchestrator(settings=make_settings(), agents=[make_agent("a")], clock=clock)
    second = create_orchestrator(settings=make_settings(), agents=[make_agent("a")], clock=clock)
    breaker = first.registry.circuits.breaker_for("a")
    for _ in range(4):
        breaker.record_failure(breaker.allow())
    assert first.registry.health_of("a").state == CircuitState.OPEN
    assert second.registry.health_of("a").state == CircuitState.CLOSED


# ── Submission ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_submit_task_success_reports_cost(
    sleep, clock, scripted_executor, make_settings, make_agent
):
    sink = RecordingSink()
    executor = scripted_executor("budget", default={"forecast": [1, 2, 3]}, cost_units=2.0)
    orchestrator = create_orchestrator(
        settings=make_settings(),
        agents=[make_agent("budget", cost="0.55", executor=executor)],
        health_sinks=[sink],
        sleep=sleep,
        clock=clock,
    )
    async with orchestrator:
        outcome = await orchestrator.submit_task(_task())

    assert outcome.status == OutcomeStatus.SUCCEEDED
    assert outcome.payload == {"forecast": [1, 2, 3]}
    assert outcome.agent_id == "budget"
    assert [s.succeeded for s in sink.samples] == [True]
    assert str(sink.samples[0].cost) == "1.100"


@pytest.mark.asyncio
async def test_validation_error_surfaces_without_retry_or_fallback(
    sleep, clock, scripted_executor, make_settings, make_agent
):
    primary = scripted_executor("budget", default=TaskValidationError("horizon missing"))
    backup = scripted_executor("premium")
    orchestrator = create_orchestrator(
        settings=make_settings(),
        agents=[
            make_agent("budget", cost="0.55", executor=primary),
            make_agent("premium", cost="8.00", executor=backup),
        ],
        sleep=sleep,
        clock=clock,
    )
    async with orchestrator:
        outcome = await orchestrator.submit_task(_task())

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error_code == "validation_error"
    assert "horizon missing" in outcome.error
    assert len(primary.requests) == 1
    assert backup.requests == []
    assert sleep.delays == []
    # Bad input is not held against the agent.
    assert orchestrator.registry.health_of("budget").attempts == 0


@pytest.mark.asyncio
async def test_three_failures_then_success_exhausts_attempts(
    sleep, clock, scripted_executor, make_settings, make_agent
):
    executor = scripted_executor(
        "only",
        script=[TransientUpstreamError("503")] * 3,
        default={"late": True},
    )
    orchestrator = create_orchestrator(
        settings=make_settings(RETRY_MAX_ATTEMPTS=3),
        agents=[make_agent("only", executor=executor)],
        sleep=sleep,
        clock=clock,
    )
    async with orchestrator:
        outcome = await orchestrator.submit_task(_task())

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error_code == "fallback_exhausted"
    assert len(executor.requests) == 3
    assert len(outcome.attempts) == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_sustained_failures_open_circuit_and_reroute(
    sleep, clock, scripted_executor, make_settings, make_agent
):
    sink = RecordingSink()
    flaky = scripted_executor("budget", default=TransientUpstreamError("503"))
    stable = scripted_executor("premium", default={"ok": True})
    orchestrator = create_orchestrator(
        settings=make_settings(RETRY_MAX_ATTEMPTS=2),
        agents=[
            make_agent("budget", cost="0.55", executor=flaky),
            make_agent("premium", cost="8.00", executor=stable),
        ],
        health_sinks=[sink],
        sleep=sleep,
        clock=clock,
    )
    async with orchestrator:
        first = await orchestrator.submit_task(_task())
        second = await orchestrator.submit_task(_task())
        assert orchestrator.registry.health_of("budget").state == CircuitState.OPEN
        calls_when_open = len(flaky.requests)
        third = await orchestrator.submit_task(_task())

    assert first.succeeded and second.succeeded and third.succeeded
    assert third.agent_id == "premium"
    assert len(flaky.requests) == calls_when_open == 4
    assert [(t.agent_id, t.to_state) for t in sink.transitions] == [("budget", CircuitState.OPEN)]


@pytest.mark.asyncio
async def test_forced_probe_when_all_open(
    sleep, clock, scripted_executor, make_settings, make_agent
):
    executor = scripted_executor("only", default={"recovered": True})
    orchestrator = create_orchestrator(
        settings=make_settings(ROUTER_FORCE_PROBE_WHEN_ALL_OPEN=True),
        agents=[make_agent("only", executor=executor)],
        sleep=sleep,
        clock=clock,
    )
    breaker = orchestrator.registry.circuits.breaker_for("only")
    for _ in range(4):
        breaker.record_failure(breaker.allow())

    async with orchestrator:
        outcome = await orchestrator.submit_task(_task())

    assert outcome.succeeded
    assert orchestrator.registry.health_of("only").state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_forced_probe_against_dead_agent_is_single_attempt(
    sleep, clock, scripted_executor, make_settings, make_agent
):
    executor = scripted_executor("only", default=TransientUpstreamError("503"))
    orchestrator = create_orchestrator(
        settings=make_settings(ROUTER_FORCE_PROBE_WHEN_ALL_OPEN=True),
        agents=[make_agent("only", executor=executor)],
        sleep=sleep,
        clock=clock,
    )
    breaker = orchestrator.registry.circuits.breaker_for("only")
    for _ in range(4):
        breaker.record_failure(breaker.allow())
    assert orchestrator.registry.health_of("only").cooldown_s == 1.0

    async with orchestrator:
        outcome = await orchestrator.submit_task(_task())

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error_code == "fallback_exhausted"
    assert len(executor.requests) == 1
    assert sleep.delays == []
    health = orchestrator.registry.health_of("only")
    assert health.state == CircuitState.OPEN
    assert health.cooldown_s == 2.0


@pytest.mark.asyncio
async def test_all_open_without_probe_fails(
    sleep, clock, scripted_executor, make_settings, make_agent
):
    executor = scripted_executor("only")
    orchestrator = create_orchestrator(
        settings=make_settings(),
        agents=[make_agent("only", executor=executor)],
        sleep=sleep,
        clock=clock,
    )
    breaker = orchestrator.registry.circuits.breaker_for("only")
    for _ in range(4):
        breaker.record_failure(breaker.allow())

    async with orchestrator:
        outcome = await orchestrator.submit_task(_task())

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error_code == "no_capable_agent"
    assert executor.requests == []


@pytest.mark.asyncio
async def test_register_agent_after_start(
    sleep, clock, make_settings, scripted_executor, make_agent
):
    orchestrator = create_orchestrator(settings=make_settings(), sleep=sleep, clock=clock)
    async with orchestrator:
        orchestrator.register_agent(
            make_agent("late", executor=scripted_executor("late", default={"late": 1}))
        )
        outcome = await orchestrator.submit_task(_task())
    assert outcome.payload == {"late": 1}


@pytest.mark.asyncio
async def test_circuit_opening_mid_retry_reports_exhausted_chain(
    sleep, clock, scripted_executor, make_settings, make_agent
):
    executor = scripted_executor("only", default=TransientUpstreamError("503"))
    orchestrator = create_orchestrator(
        settings=make_settings(),
        agents=[make_agent("only", executor=executor)],
        sleep=sleep,
        clock=clock,
    )
    # Three samples, one short of tripping; the next failure opens the circuit.
    breaker = orchestrator.registry.circuits.breaker_for("only")
    breaker.record_failure(breaker.allow())
    breaker.record_failure(breaker.allow())
    breaker.record_success(breaker.allow())

    async with orchestrator:
        outcome = await orchestrator.submit_task(_task())

    assert len(executor.requests) == 1
    assert [a.error_code for a in outcome.attempts] == ["transient_upstream", "circuit_open"]
    assert outcome.error_code == "fallback_exhausted"


@pytest.mark.asyncio
async def test_deadline_cut_timeout_does_not_count_against_agent(
    sleep, clock, scripted_executor, make_settings, make_agent
):
    executor = scripted_executor("slow", script=["block"])
    orchestrator = create_orchestrator(
        settings=make_settings(DISPATCH_TIMEOUT_MS=2_000),
        agents=[make_agent("slow", executor=executor)],
        sleep=sleep,
        clock=clock,
    )
    task = _task(deadline=datetime.now(timezone.utc) + timedelta(milliseconds=100))

    async with orchestrator:
        with pytest.raises(DeadlineExceeded):
            await orchestrator.dispatcher.dispatch(task, orchestrator.router.route(task))

    assert len(executor.requests) == 1
    assert sleep.delays == []
    health = orchestrator.registry.health_of("slow")
    assert health.attempts == 0
    assert health.failures == 0
