"""Tests for PerformanceMonitor request tracking."""

from __future__ import annotations

import pytest

from retroq.llm.monitor import PerformanceMonitor, RequestStatus, calculate_cost
from retroq.observability.telemetry import get_counter, reset_counters


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(clock):
    reset_counters()
    return PerformanceMonitor(max_history=5, clock=clock)


def test_calculate_cost_known_and_unknown_models():
    assert calculate_cost("openai", "gpt-4", 1000, 1000) == pytest.approx(0.09)
    assert calculate_cost("local", "whatever", 5000, 5000) == 0.0
    assert calculate_cost("acme", "x", 1000, 1000) == 0.0


def test_complete_request_updates_aggregates(monitor, clock):
    request_id = monitor.start_request("openai", "gpt-4", 1000)
    clock.advance(2.0)
    record = monitor.complete_request(request_id, output_tokens=500)

    assert record is not None
    assert record.status == RequestStatus.SUCCESS
    assert record.response_time_ms == pytest.approx(2000.0)
    assert record.cost_usd == pytest.approx(0.03 + 0.03)

    metrics = monitor.get_metrics()
    assert metrics["total_requests"] == 1
    assert metrics["successful_requests"] == 1
    assert metrics["total_tokens_used"] == 1500
    assert metrics["success_rate"] == 1.0
    assert metrics["provider_stats"]["openai"]["requests"] == 1
    assert get_counter("llm.request.started") == 1
    assert get_counter("llm.request.completed") == 1


def test_gpt35_request_totals(monitor):
    request_id = monitor.start_request("openai", "gpt-3.5-turbo", 1500)
    monitor.complete_request(request_id, 800, "success")

    metrics = monitor.get_metrics()
    assert metrics["total_tokens_used"] == 2300
    assert metrics["total_cost"] > 0
    assert metrics["total_cost"] == pytest.approx(1.5 * 0.0015 + 0.8 * 0.002)
    assert metrics["provider_stats"]["openai"]["requests"] == 1
    assert metrics["provider_stats"]["openai"]["total_tokens"] == 2300


def test_failed_request_counts_as_failure(monitor):
    request_id = monitor.start_request("gemini", "gemini-2.5-flash", 100)
    monitor.complete_request(request_id, status="error")

    metrics = monitor.get_metrics()
    assert metrics["failed_requests"] == 1
    assert metrics["success_rate"] == 0.0
    assert monitor.success_rate("gemini") == (0.0, 1)


def test_unknown_request_id_is_a_noop(monitor):
    assert monitor.complete_request("req_missing") is None
    assert monitor.get_metrics()["total_requests"] == 0
    assert get_counter("llm.request.unmatched") == 1


def test_completing_twice_is_ignored(monitor):
    request_id = monitor.start_request("openai", "gpt-4", 10)
    monitor.complete_request(request_id, output_tokens=10)
    assert monitor.complete_request(request_id, output_tokens=10) is None
    assert monitor.get_metrics()["successful_requests"] == 1


def test_history_is_bounded(monitor):
    ids = [monitor.start_request("openai", "gpt-4", 1) for _ in range(7)]
    assert len(monitor.recent_requests(100)) == 5
    assert monitor.get_request(ids[0]) is None
    assert monitor.get_request(ids[-1]) is not None


def test_cleanup_drops_only_stale_records(monitor, clock):
    old = monitor.start_request("openai", "gpt-4", 1)
    clock.advance(100)
    fresh = monitor.start_request("openai", "gpt-4", 1)

    removed = monitor.cleanup_old_requests(max_age_seconds=50)

    assert removed == 1
    assert monitor.get_request(old) is None
    assert monitor.get_request(fresh) is not None
    # Completing a pruned request is a no-op
    assert monitor.complete_request(old) is None


def test_reset_clears_everything(monitor):
    request_id = monitor.start_request("openai", "gpt-4", 100)
    monitor.complete_request(request_id, output_tokens=100)
    monitor.reset()

    metrics = monitor.get_metrics()
    assert metrics["total_requests"] == 0
    assert metrics["provider_stats"] == {}
    assert metrics["recent_requests"] == []


def test_recommendations_for_large_and_costly_usage(monitor):
    request_id = monitor.start_request("openai", "gpt-4", 5000)
    monitor.complete_request(request_id, output_tokens=5000)

    types = {rec["type"] for rec in monitor.get_optimization_recommendations(data_volume=60_000)}
    assert "model_selection" in types
    assert "cost_optimization" in types
    assert "prompt_optimization" in types


def test_suggest_optimal_model_preferences(monitor):
    assert monitor.suggest_optimal_model({"prioritize_cost": True})["model"] == "claude-3-haiku"
    assert monitor.suggest_optimal_model({"data_volume": 200_000})["provider"] == "gemini"
    assert monitor.suggest_optimal_model({})["model"] == "gpt-4"
