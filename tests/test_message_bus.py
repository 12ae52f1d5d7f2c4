"""Tests for the in-process message bus and executor workers.

Covers:
- Priority ordering of requests (critical first, FIFO within priority)
- Per-task attempt ordering (AttemptOrderingError)
- Backpressure for medium/low priority, never for critical/high
- Mailbox discarding results of other attempts
- Cancellation of queued and running attempts
- StatusUpdate fan-out and stream serialization
- ExecutorWorkerPool request/result loop
"""

from __future__ import annotations

import asyncio

import pytest

from src.squadron.agents.registry import AgentRegistry
from src.squadron.core.errors import AttemptOrderingError, TaskValidationError
from src.squadron.events.bus import Mailbox, MessageBus
from src.squadron.events.schemas import (
    StatusUpdate,
    Task,
    TaskPriority,
    TaskRequest,
    TaskResult,
)
from src.squadron.events.workers import ExecutorWorkerPool


def _request(
    priority: TaskPriority = TaskPriority.MEDIUM,
    agent_id: str = "a",
    attempt: int = 1,
    task: Task | None = None,
) -> TaskRequest:
    task = task or Task(capability="forecast", complexity=0.1, priority=priority)
    return TaskRequest(task=task, agent_id=agent_id, attempt=attempt)


def _result(request: TaskRequest, **kwargs) -> TaskResult:
    return TaskResult(
        task_id=request.task_id,
        agent_id=request.agent_id,
        attempt=request.attempt,
        **kwargs,
    )


# ── Priority ─────────────────────────────────────────────────────────────────


class TestPriority:
    @pytest.mark.asyncio
    async def test_critical_delivered_before_low(self):
        bus = MessageBus()
        low = _request(TaskPriority.LOW)
        medium = _request(TaskPriority.MEDIUM)
        critical = _request(TaskPriority.CRITICAL)
        for request in (low, medium, critical):
            await bus.publish_request(request)
        delivered = [await bus.next_request("a") for _ in range(3)]
        assert [r.priority for r in delivered] == [
            TaskPriority.CRITICAL,
            TaskPriority.MEDIUM,
            TaskPriority.LOW,
        ]

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self):
        bus = MessageBus()
        first = _request(TaskPriority.HIGH)
        second = _request(TaskPriority.HIGH)
        await bus.publish_request(first)
        await bus.publish_request(second)
        assert (await bus.next_request("a")).task_id == first.task_id
        assert (await bus.next_request("a")).task_id == second.task_id

    @pytest.mark.asyncio
    async def test_channels_are_per_agent(self):
        bus = MessageBus()
        await bus.publish_request(_request(agent_id="a"))
        await bus.publish_request(_request(agent_id="b"))
        assert bus.depth("a") == 1
        assert bus.depth("b") == 1
        assert bus.pending == 2


# ── Ordering ─────────────────────────────────────────────────────────────────


class TestAttemptOrdering:
    @pytest.mark.asyncio
    async def test_second_attempt_before_ack_rejected(self):
        bus = MessageBus()
        first = _request()
        await bus.publish_request(first)
        with pytest.raises(AttemptOrderingError):
            await bus.publish_request(_request(task=first.task, attempt=2))

    @pytest.mark.asyncio
    async def test_next_attempt_allowed_after_result(self):
        bus = MessageBus()
        first = _request()
        await bus.publish_request(first)
        await bus.next_request("a")
        bus.publish_result(_result(first, error_code="timeout"))
        await bus.publish_request(_request(task=first.task, attempt=2))
        assert bus.pending == 1

    @pytest.mark.asyncio
    async def test_next_attempt_allowed_after_cancel(self):
        bus = MessageBus()
        first = _request()
        await bus.publish_request(first)
        bus.cancel_attempt(first.task_id, 1)
        second = _request(task=first.task, attempt=2)
        await bus.publish_request(second)
        # The cancelled attempt is skipped when dequeued.
        assert (await bus.next_request("a")).attempt == 2


# ── Backpressure ─────────────────────────────────────────────────────────────


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_low_priority_waits_above_watermark(self):
        bus = MessageBus(high_watermark=2)
        for _ in range(3):
            await bus.publish_request(_request())
        blocked = asyncio.create_task(bus.publish_request(_request(TaskPriority.LOW)))
        await asyncio.sleep(0.01)
        assert not blocked.done()
        assert bus.pending == 3

        await bus.next_request("a")
        await asyncio.wait_for(blocked, timeout=1)
        assert bus.pending == 3

    @pytest.mark.asyncio
    async def test_at_watermark_still_accepted(self):
        bus = MessageBus(high_watermark=2)
        await bus.publish_request(_request())
        await bus.publish_request(_request())
        await asyncio.wait_for(bus.publish_request(_request(TaskPriority.LOW)), timeout=1)
        assert bus.pending == 3

    @pytest.mark.asyncio
    async def test_urgent_priorities_never_blocked(self):
        bus = MessageBus(high_watermark=1)
        await bus.publish_request(_request())
        await asyncio.wait_for(bus.publish_request(_request(TaskPriority.CRITICAL)), timeout=1)
        await asyncio.wait_for(bus.publish_request(_request(TaskPriority.HIGH)), timeout=1)
        assert bus.pending == 3

    @pytest.mark.asyncio
    async def test_nothing_dropped_under_backpressure(self):
        bus = MessageBus(high_watermark=1)
        publishers = [asyncio.create_task(bus.publish_request(_request())) for _ in range(5)]
        received = []
        for _ in range(5):
            received.append(await asyncio.wait_for(bus.next_request("a"), timeout=1))
        await asyncio.gather(*publishers)
        assert len({r.task_id for r in received}) == 5

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_never_enqueues(self):
        bus = MessageBus(high_watermark=1)
        await bus.publish_request(_request(TaskPriority.LOW))
        await bus.publish_request(_request(TaskPriority.LOW))
        waiting = _request(TaskPriority.LOW)
        blocked = asyncio.create_task(bus.publish_request(waiting))
        await asyncio.sleep(0.01)
        assert not blocked.done()

        bus.cancel_attempt(waiting.task_id, 1)
        await bus.next_request("a")
        await asyncio.wait_for(blocked, timeout=1)
        await bus.next_request("a")

        assert bus.pending == 0
        assert bus.depth("a") == 0
        assert not bus._cancelled
        assert not bus._queued


# ── Mailboxes ────────────────────────────────────────────────────────────────


class TestMailbox:
    @pytest.mark.asyncio
    async def test_discards_other_attempts(self):
        mailbox = Mailbox("t")
        mailbox.expect(2)
        request = _request(attempt=1)
        assert not mailbox.deliver(_result(request))
        with pytest.raises(TimeoutError):
            await mailbox.receive(timeout=0.01)

    @pytest.mark.asyncio
    async def test_late_result_after_close_ignored(self):
        bus = MessageBus()
        request = _request()
        bus.open_mailbox(request.task_id)
        bus.close_mailbox(request.task_id)
        assert not bus.publish_result(_result(request))

    @pytest.mark.asyncio
    async def test_result_routed_to_waiting_mailbox(self):
        bus = MessageBus()
        request = _request()
        mailbox = bus.open_mailbox(request.task_id)
        mailbox.expect(1)
        await bus.publish_request(request)
        assert bus.publish_result(_result(request, output={"value": 1}))
        result = await mailbox.receive(timeout=1)
        assert result.output == {"value": 1}


# ── Status Updates ───────────────────────────────────────────────────────────


class TestStatusUpdates:
    def test_fan_out_to_subscribers(self):
        bus = MessageBus()
        first = bus.subscribe_status()
        second = bus.subscribe_status()
        bus.publish_status(StatusUpdate(subject_id="n1", status="dispatched", source="test"))
        assert first.get_nowait().status == "dispatched"
        assert second.get_nowait().subject_id == "n1"
        bus.unsubscribe_status(second)
        bus.publish_status(StatusUpdate(subject_id="n1", status="succeeded", source="test"))
        assert first.qsize() == 1
        assert second.qsize() == 0

    def test_stream_dict_roundtrip(self):
        update = StatusUpdate(
            subject_id="agent-a",
            status="open",
            source="circuit_breaker",
            priority=TaskPriority.HIGH,
            data={"failure_rate": 0.75},
            correlation_id="wf-1",
        )
        raw = update.to_stream_dict()
        assert all(isinstance(v, str) for v in raw.values())
        restored = StatusUpdate.from_stream_dict(raw)
        assert restored.update_id == update.update_id
        assert restored.priority == TaskPriority.HIGH
        assert restored.data == {"failure_rate": 0.75}
        assert restored.correlation_id == "wf-1"


# ── Executor Workers ─────────────────────────────────────────────────────────


class TestWorkers:
    @pytest.mark.asyncio
    async def test_worker_executes_and_publishes(self, scripted_executor, make_agent):
        bus = MessageBus()
        registry = AgentRegistry()
        executor = scripted_executor("a", script=[{"value": 7}])
        registry.register(make_agent("a", executor=executor, max_concurrency=2))
        pool = ExecutorWorkerPool(bus, registry)
        await pool.start()
        try:
            assert pool.worker_count("a") == 2
            request = _request()
            mailbox = bus.open_mailbox(request.task_id)
            mailbox.expect(1)
            await bus.publish_request(request)
            result = await mailbox.receive(timeout=1)
            assert result.output == {"value": 7}
        finally:
            await pool.stop()
        assert not pool.running

    @pytest.mark.asyncio
    async def test_worker_maps_executor_errors(self, make_agent, scripted_executor):
        bus = MessageBus()
        registry = AgentRegistry()
        registry.register(
            make_agent(
                "a",
                executor=scripted_executor(
                    "a", script=[TaskValidationError("missing horizon"), RuntimeError("bug")]
                ),
            )
        )
        pool = ExecutorWorkerPool(bus, registry)
        await pool.start()
        try:
            codes = []
            for attempt in (1, 2):
                request = _request()
                mailbox = bus.open_mailbox(request.task_id)
                mailbox.expect(1)
                await bus.publish_request(request)
                codes.append((await mailbox.receive(timeout=1)).error_code)
            assert codes == ["validation_error", "internal_error"]
        finally:
            await pool.stop()

    @pytest.mark.asyncio
    async def test_cancel_running_attempt(self, scripted_executor, make_agent):
        bus = MessageBus()
        registry = AgentRegistry()
        executor = scripted_executor("a", script=["block", {"value": 2}])
        registry.register(make_agent("a", executor=executor))
        pool = ExecutorWorkerPool(bus, registry)
        await pool.start()
        try:
            request = _request()
            mailbox = bus.open_mailbox(request.task_id)
            mailbox.expect(1)
            await bus.publish_request(request)
            await asyncio.wait_for(executor.started.wait(), timeout=1)
            bus.cancel_attempt(request.task_id, 1)
            await asyncio.sleep(0.01)
            assert executor.cancelled == 1

            # The worker survives and serves the next attempt.
            retry = _request(task=request.task, attempt=2)
            mailbox.expect(2)
            await bus.publish_request(retry)
            result = await mailbox.receive(timeout=1)
            assert result.attempt == 2
            assert result.output == {"value": 2}
        finally:
            await pool.stop()

    @pytest.mark.asyncio
    async def test_agents_registered_after_start_get_workers(self, scripted_executor, make_agent):
        bus = MessageBus()
        registry = AgentRegistry()
        pool = ExecutorWorkerPool(bus, registry)
        await pool.start()
        try:
            registry.register(make_agent("late", executor=scripted_executor("late")))
            pool.ensure_workers("late")
            assert pool.worker_count("late") == 1
        finally:
            await pool.stop()
