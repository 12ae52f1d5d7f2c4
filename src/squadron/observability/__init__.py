"""Health telemetry: Prometheus metrics, log events, and a Redis health stream."""

from __future__ import annotations

from src.squadron.observability.metrics import (
    CompositeHealthSink,
    DispatchSample,
    HealthSink,
    LoggingHealthSink,
    PrometheusHealthSink,
)

__all__ = [
    "CompositeHealthSink",
    "DispatchSample",
    "HealthSink",
    "LoggingHealthSink",
    "PrometheusHealthSink",
    "RedisHealthSink",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the Redis sink so redis is only imported when used."""
    if name == "RedisHealthSink":
        from src.squadron.observability.health_stream import RedisHealthSink

        return RedisHealthSink
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
