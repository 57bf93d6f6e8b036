"""
Per-request performance tracking for LLM calls.

Records token counts, latency and cost for each provider request, keeps
global and per-provider aggregates, and holds a bounded history that can be
pruned by age. State lives for the lifetime of one analyzer instance and is
never persisted.

Prices are USD per 1K tokens (input, output).
"""

from __future__ import annotations

import random
import string
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from retroq.config import METRICS_MAX_AGE_SECONDS, METRICS_MAX_HISTORY
from retroq.observability.logging import get_logger
from retroq.observability.telemetry import counter, record_latency

logger = get_logger(__name__)

PRICING: dict[str, dict[str, tuple[float, float]]] = {
    "openai": {
        "gpt-4": (0.03, 0.06),
        "gpt-4-turbo": (0.01, 0.03),
        "gpt-3.5-turbo": (0.0015, 0.002),
    },
    "anthropic": {
        "claude-3-opus": (0.015, 0.075),
        "claude-3-sonnet": (0.003, 0.015),
        "claude-3-haiku": (0.00025, 0.00125),
    },
    "gemini": {
        "gemini-2.5-pro": (0.00125, 0.01),
        "gemini-2.5-flash": (0.0003, 0.0025),
    },
    "local": {
        "default": (0.0, 0.0),
    },
}


def calculate_cost(provider: str, model: str, input_tokens: float, output_tokens: float) -> float:
    """Cost in USD. Unknown models use the provider's default price, else 0."""
    provider_prices = PRICING.get((provider or "").lower(), {})
    prices = provider_prices.get((model or "").lower()) or provider_prices.get("default")
    if prices is None:
        return 0.0
    input_price, output_price = prices
    return (input_tokens / 1000.0) * input_price + (output_tokens / 1000.0) * output_price


class RequestStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class RequestRecord:
    id: str
    provider: str
    model: str
    input_tokens: int
    start_time: float
    output_tokens: int = 0
    end_time: float | None = None
    response_time_ms: float | None = None
    cost_usd: float = 0.0
    status: RequestStatus = RequestStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class ProviderStats:
    requests: int = 0
    successful: int = 0
    failed: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_response_time_ms: float = 0.0
    completed: int = 0

    def record(self, record: RequestRecord) -> None:
        self.completed += 1
        if record.status == RequestStatus.SUCCESS:
            self.successful += 1
        else:
            self.failed += 1
        self.total_tokens += record.input_tokens + record.output_tokens
        self.total_cost += record.cost_usd
        elapsed = record.response_time_ms or 0.0
        self.average_response_time_ms += (elapsed - self.average_response_time_ms) / self.completed


def _new_request_id(now: float) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"req_{int(now * 1000)}_{suffix}"


class PerformanceMonitor:
    """
    Tracks LLM requests for one analyzer instance.

    Not safe to share between concurrent unrelated runs; give each run its
    own monitor if isolation is needed.
    """

    def __init__(self, max_history: int = METRICS_MAX_HISTORY, clock: Callable[[], float] = time.time):
        self.max_history = max(1, max_history)
        self._clock = clock
        self._requests: dict[str, RequestRecord] = {}
        self._totals = ProviderStats()
        self._provider_stats: dict[str, ProviderStats] = {}

    def start_request(self, provider: str, model: str, input_tokens: int) -> str:
        """
        Register a pending request and return its id.

        Side Effects:
            - Adds a RequestRecord to history (evicting the oldest past max_history)
            - Creates the provider stats bucket if absent
        """
        now = self._clock()
        request_id = _new_request_id(now)
        while request_id in self._requests:
            request_id = _new_request_id(now)

        self._requests[request_id] = RequestRecord(
            id=request_id,
            provider=provider,
            model=model,
            input_tokens=max(0, int(input_tokens)),
            start_time=now,
        )
        self._totals.requests += 1
        self._provider_stats.setdefault(provider, ProviderStats()).requests += 1

        while len(self._requests) > self.max_history:
            oldest = next(iter(self._requests))
            del self._requests[oldest]

        counter("llm.request.started")
        return request_id

    def complete_request(
        self, request_id: str, output_tokens: int = 0, status: RequestStatus | str = RequestStatus.SUCCESS
    ) -> RequestRecord | None:
        """
        Finish a pending request and fold it into the aggregates.

        Unknown ids (never registered, evicted or pruned) are a logged no-op.

        Returns:
            The completed record, or None when nothing was updated
        """
        record = self._requests.get(request_id)
        if record is None:
            counter("llm.request.unmatched")
            logger.warning("complete_request: unknown request id %s, ignoring", request_id)
            return None
        if record.status != RequestStatus.PENDING:
            logger.warning("complete_request: request %s already completed, ignoring", request_id)
            return None

        now = self._clock()
        record.end_time = now
        record.response_time_ms = max(0.0, (now - record.start_time) * 1000.0)
        record.output_tokens = max(0, int(output_tokens))
        record.status = RequestStatus(status)
        record.cost_usd = calculate_cost(record.provider, record.model, record.input_tokens, record.output_tokens)

        self._totals.record(record)
        self._provider_stats.setdefault(record.provider, ProviderStats()).record(record)

        record_latency("llm.provider_call", record.response_time_ms)
        counter("llm.request.completed")
        logger.debug(
            "Request %s %s/%s completed: status=%s tokens=%d cost=%.5f ms=%.1f",
            record.id,
            record.provider,
            record.model,
            record.status.value,
            record.input_tokens + record.output_tokens,
            record.cost_usd,
            record.response_time_ms,
        )
        return record

    def get_request(self, request_id: str) -> RequestRecord | None:
        return self._requests.get(request_id)

    def recent_requests(self, limit: int = 10) -> list[RequestRecord]:
        records = list(self._requests.values())
        return records[-limit:] if limit > 0 else []

    @property
    def total_tokens_used(self) -> int:
        return self._totals.total_tokens

    @property
    def total_cost(self) -> float:
        return self._totals.total_cost

    def provider_stats(self, provider: str) -> ProviderStats | None:
        return self._provider_stats.get(provider)

    def get_metrics(self) -> dict[str, Any]:
        completed = self._totals.completed
        return {
            "total_requests": self._totals.requests,
            "successful_requests": self._totals.successful,
            "failed_requests": self._totals.failed,
            "total_tokens_used": self._totals.total_tokens,
            "total_cost": round(self._totals.total_cost, 6),
            "average_response_time_ms": self._totals.average_response_time_ms,
            "success_rate": self._totals.successful / completed if completed else 0.0,
            "provider_stats": {name: asdict(stats) for name, stats in self._provider_stats.items()},
            "recent_requests": [record.to_dict() for record in self.recent_requests(10)],
        }

    def success_rate(self, provider: str, model: str | None = None) -> tuple[float, int]:
        """(success rate, completed count) over history for a provider (and model)."""
        completed = [
            r
            for r in self._requests.values()
            if r.provider == provider and (model is None or r.model == model) and r.status != RequestStatus.PENDING
        ]
        if not completed:
            return 0.0, 0
        successes = sum(1 for r in completed if r.status == RequestStatus.SUCCESS)
        return successes / len(completed), len(completed)

    def average_cost(self) -> float:
        completed = self._totals.completed
        return self._totals.total_cost / completed if completed else 0.0

    def average_tokens(self) -> float:
        completed = self._totals.completed
        return self._totals.total_tokens / completed if completed else 0.0

    def get_optimization_recommendations(self, data_volume: int = 0) -> list[dict[str, Any]]:
        """Heuristic advice from the aggregates collected so far."""
        recommendations: list[dict[str, Any]] = []

        if data_volume > 50_000:
            recommendations.append(
                {
                    "type": "model_selection",
                    "priority": "high",
                    "message": "Large dataset detected. Consider a model with a larger context window.",
                    "suggestion": self.suggest_optimal_model({"data_volume": data_volume}),
                }
            )

        if self.average_cost() > 0.10:
            recommendations.append(
                {
                    "type": "cost_optimization",
                    "priority": "medium",
                    "message": "High average cost per request. Consider a cheaper model for routine analysis.",
                    "current_average_cost": round(self.average_cost(), 4),
                }
            )

        if self._totals.average_response_time_ms > 15_000:
            recommendations.append(
                {
                    "type": "performance",
                    "priority": "medium",
                    "message": "Slow responses. Consider a faster model or smaller prompts.",
                    "current_average_ms": round(self._totals.average_response_time_ms),
                }
            )

        if self.average_tokens() > 8_000:
            recommendations.append(
                {
                    "type": "prompt_optimization",
                    "priority": "low",
                    "message": "High token usage per request. Consider reducing prompt data.",
                    "current_average_tokens": round(self.average_tokens()),
                }
            )

        return recommendations

    def suggest_optimal_model(self, requirements: dict[str, Any]) -> dict[str, str]:
        data_volume = int(requirements.get("data_volume", 0))
        if requirements.get("prioritize_cost"):
            return {"provider": "anthropic", "model": "claude-3-haiku", "reason": "Lowest cost per token"}
        if requirements.get("prioritize_speed"):
            return {"provider": "openai", "model": "gpt-3.5-turbo", "reason": "Fastest response times"}
        if data_volume > 100_000:
            return {"provider": "gemini", "model": "gemini-2.5-flash", "reason": "Largest context window"}
        if data_volume > 50_000:
            return {"provider": "openai", "model": "gpt-4-turbo", "reason": "Large context window"}
        return {"provider": "openai", "model": "gpt-4", "reason": "Best quality for typical datasets"}

    def cleanup_old_requests(self, max_age_seconds: float = METRICS_MAX_AGE_SECONDS) -> int:
        """
        Drop every record with start_time <= now - max_age_seconds.

        Aggregate totals are not rolled back; only history shrinks.

        Returns:
            Number of records removed
        """
        cutoff = self._clock() - max_age_seconds
        stale = [rid for rid, record in self._requests.items() if record.start_time <= cutoff]
        for rid in stale:
            del self._requests[rid]
        if stale:
            logger.info("Pruned %d request records older than %.0fs", len(stale), max_age_seconds)
        return len(stale)

    def reset(self) -> None:
        """
        Clear all state back to the empty aggregate.

        Side Effects:
            - Drops request history and every aggregate
        """
        self._requests.clear()
        self._totals = ProviderStats()
        self._provider_stats = {}
