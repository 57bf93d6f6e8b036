"""
In-process telemetry for the orchestration engine.

Nothing is shipped to an external backend. Counters and latency samples
live in module-level dicts so tests and the status API can read them back.
"""

from __future__ import annotations

import contextlib
import time
from collections.abc import Iterator
from typing import Any

from retroq.observability.logging import get_logger

logger = get_logger("retroq.telemetry")

_COUNTERS: dict[str, int] = {}
_LATENCIES: dict[str, list[float]] = {}


def _latency_key(metric_name: str) -> str:
    return metric_name if metric_name.endswith("_ms") else f"{metric_name}_ms"


def log_event(event_name: str, **fields: Any) -> None:
    """
    Structured log event. Callers pass counts and ids, never raw team data.

    Side Effects:
        - Writes to logger (info level)
    """
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """
    Increment an in-memory counter and return the new value.

    Side Effects:
        - Modifies _COUNTERS dict (in-memory state)
        - Writes to logger (debug level)
    """
    value = _COUNTERS.get(name, 0) + increment
    _COUNTERS[name] = value
    logger.debug("counter=%s value=%s", name, value)
    return value


def get_counter(name: str) -> int:
    return _COUNTERS.get(name, 0)


def snapshot_counters() -> dict[str, int]:
    return dict(_COUNTERS)


def record_latency(metric_name: str, elapsed_ms: float) -> None:
    """Record one latency sample in milliseconds."""
    _LATENCIES.setdefault(_latency_key(metric_name), []).append(elapsed_ms)


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Time the wrapped block and record the elapsed milliseconds.

    Side Effects:
        - Appends to _LATENCIES dict (in-memory state)
        - Writes to logger (debug level) with timing
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        logger.debug("timing=%s ms=%.3f", _latency_key(metric_name), elapsed_ms)
        record_latency(metric_name, elapsed_ms)


def get_p95(metric_name: str) -> float:
    """P95 latency in milliseconds, 0.0 when no samples were recorded."""
    samples = sorted(_LATENCIES.get(_latency_key(metric_name), []))
    if not samples:
        return 0.0
    idx = int(len(samples) * 0.95)
    return samples[idx] if idx < len(samples) else samples[-1]


def get_latency_stats(metric_name: str) -> dict[str, float]:
    samples = sorted(_LATENCIES.get(_latency_key(metric_name), []))
    if not samples:
        return {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0, "p95": 0.0}

    count = len(samples)
    return {
        "count": count,
        "min": samples[0],
        "max": samples[-1],
        "avg": sum(samples) / count,
        "p50": samples[int(count * 0.50)],
        "p95": samples[min(int(count * 0.95), count - 1)],
    }


def reset_latencies() -> None:
    """
    Clear all recorded latencies (useful for tests).

    Side Effects:
        - Clears _LATENCIES dict (in-memory state)
    """
    _LATENCIES.clear()


def reset_counters() -> None:
    """
    Clear all counters (useful for tests).

    Side Effects:
        - Clears _COUNTERS dict (in-memory state)
    """
    _COUNTERS.clear()
