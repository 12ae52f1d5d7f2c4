"""Health event stream using Redis Streams.

Publishes circuit transitions and failed-dispatch samples as StatusUpdate
records to a Redis Stream so external dashboards and alerting can consume
them with consumer groups.

Circuit breakers report transitions synchronously, so the sink buffers
updates in memory and ``flush()`` (or the ``run()`` loop) drains the
buffer with XADD.
"""

from __future__ import annotations

import asyncio
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.squadron.events.schemas import StatusUpdate, TaskPriority
from src.squadron.observability.metrics import DispatchSample, HealthSink
from src.squadron.resilience.circuit import CircuitState, CircuitTransition

logger = structlog.get_logger(__name__)


class RedisHealthSink(HealthSink):
    """Buffers health updates and appends them to a Redis Stream.

    Args:
        redis: Async Redis client.
        stream: Stream key (e.g. ``squadron:health``).
        maxlen: Approximate stream length cap.
    """

    def __init__(self, redis: aioredis.Redis, stream: str, maxlen: int = 1000) -> None:
        self._redis = redis
        self._stream = stream
        self._maxlen = maxlen
        self._buffer: asyncio.Queue[StatusUpdate] = asyncio.Queue()

    @classmethod
    def from_url(cls, url: str, stream: str) -> RedisHealthSink:
        return cls(aioredis.from_url(url, decode_responses=True), stream)

    @property
    def buffered(self) -> int:
        return self._buffer.qsize()

    def circuit_transition(self, event: CircuitTransition) -> None:
        self._buffer.put_nowait(
            StatusUpdate(
                subject_id=event.agent_id,
                status=event.to_state.value,
                source="circuit_breaker",
                priority=(
                    TaskPriority.HIGH
                    if event.to_state == CircuitState.OPEN
                    else TaskPriority.MEDIUM
                ),
                timestamp=event.timestamp,
                data={
                    "from_state": event.from_state.value,
                    "reason": event.reason,
                    "failure_rate": event.failure_rate,
                    "cooldown_s": event.cooldown_s,
                },
            )
        )

    def dispatch_sample(self, sample: DispatchSample) -> None:
        # Successful samples go to Prometheus only; the stream carries failures.
        if sample.succeeded:
            return
        self._buffer.put_nowait(
            StatusUpdate(
                subject_id=sample.agent_id,
                status="dispatch_failed",
                source="dispatcher",
                timestamp=sample.timestamp,
                data={
                    "task_id": sample.task_id,
                    "attempt": sample.attempt,
                    "error_code": sample.error_code,
                    "latency_s": sample.latency_s,
                },
            )
        )

    async def publish(self, update: StatusUpdate) -> str:
        """Append one update to the stream; returns the Redis message ID."""
        message_id = await self._redis.xadd(
            self._stream,
            update.to_stream_dict(),
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug(
            "health_update_published",
            stream=self._stream,
            subject_id=update.subject_id,
            status=update.status,
            message_id=message_id,
        )
        return message_id

    async def flush(self) -> int:
        """Publish everything buffered so far; returns the count published."""
        published = 0
        while not self._buffer.empty():
            update = self._buffer.get_nowait()
            try:
                await self.publish(update)
            except aioredis.RedisError as exc:
                # Put it back for the next flush and stop this round.
                self._buffer.put_nowait(update)
                logger.warning(
                    "health_stream_publish_failed",
                    stream=self._stream,
                    error=str(exc),
                )
                break
            published += 1
        return published

    async def run(self, interval_s: float = 1.0) -> None:
        """Flush periodically until cancelled."""
        try:
            while True:
                await self.flush()
                await asyncio.sleep(interval_s)
        finally:
            await self.flush()

    async def get_stream_info(self) -> dict[str, Any]:
        """Stream metadata for monitoring."""
        return await self._redis.xinfo_stream(self._stream)

    async def close(self) -> None:
        await self.flush()
        await self._redis.aclose()
