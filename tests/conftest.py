"""Shared fixtures for router, resilience, and workflow tests.

Provides:
- Settings with fast, deterministic retry/circuit parameters
- A manual monotonic clock for circuit cooldowns
- A recording sleep that returns immediately
- A scripted executor whose attempts succeed, fail, or block on demand
- Factory fixtures for agents, settings, and scripted executors
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from decimal import Decimal
from typing import Any

import pytest

from src.squadron.agents.base import AgentCapability, AgentDefinition, AgentExecutor
from src.squadron.config import Settings
from src.squadron.events.schemas import TaskRequest, TaskResult


class ManualClock:
    """Monotonic clock advanced explicitly by tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class ScriptedExecutor(AgentExecutor):
    """Executor that plays back a script, one entry per attempt.

    Script entries are output dicts (success), exceptions (raised), or
    ``"block"`` (wait until ``release`` is set). When the script runs out,
    ``default`` is used.
    """

    def __init__(
        self,
        agent_id: str,
        script: Iterable[Any] = (),
        default: Any = None,
        cost_units: float = 1.0,
    ) -> None:
        super().__init__(agent_id)
        self.script = list(script)
        self.default = default if default is not None else {"agent": agent_id}
        self.cost_units = cost_units
        self.requests: list[TaskRequest] = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.cancelled = 0

    async def execute(self, request: TaskRequest) -> TaskResult:
        self.requests.append(request)
        self.started.set()
        step = self.script.pop(0) if self.script else self.default
        if step == "block":
            try:
                await self.release.wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
            step = self.default
        if isinstance(step, BaseException):
            raise step
        return TaskResult(
            task_id=request.task_id,
            agent_id=self.agent_id,
            attempt=request.attempt,
            output=dict(step),
            cost_units=self.cost_units,
        )


def _make_agent(
    agent_id: str,
    cost: str | float = "1.00",
    capabilities: Iterable[str] = ("forecast",),
    quality: float = 0.5,
    max_complexity: float = 1.0,
    max_concurrency: int = 1,
    executor: AgentExecutor | None = None,
) -> AgentDefinition:
    return AgentDefinition(
        agent_id=agent_id,
        name=agent_id.replace("_", " ").title(),
        capabilities=[
            AgentCapability(name=c, quality=quality, max_complexity=max_complexity)
            for c in capabilities
        ],
        cost_per_unit=Decimal(str(cost)),
        max_concurrency=max_concurrency,
        executor=executor,
    )


def _make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "RETRY_MAX_ATTEMPTS": 3,
        "RETRY_BASE_DELAY_MS": 10,
        "RETRY_MAX_DELAY_MS": 100,
        "CIRCUIT_WINDOW_SIZE": 4,
        "CIRCUIT_MIN_SAMPLES": 4,
        "CIRCUIT_COOLDOWN_MS": 1_000,
        "CIRCUIT_MAX_COOLDOWN_MS": 8_000,
        "DISPATCH_TIMEOUT_MS": 2_000,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def settings() -> Settings:
    return _make_settings()


@pytest.fixture
def make_agent():
    """Factory for AgentDefinitions with test defaults."""
    return _make_agent


@pytest.fixture
def make_settings():
    """Factory for Settings with fast retry/circuit parameters."""
    return _make_settings


@pytest.fixture
def scripted_executor():
    return ScriptedExecutor
