"""Tests for PerformanceOptimizer model selection and prompt shrinking."""

from __future__ import annotations

import pytest

from retroq.llm.monitor import PerformanceMonitor
from retroq.llm.optimizer import DATA_MARKER, ModelRequirements, PerformanceOptimizer


@pytest.fixture
def optimizer():
    return PerformanceOptimizer(PerformanceMonitor())


def test_default_selection_prefers_balanced_model(optimizer):
    selection = optimizer.select_optimal_model()
    assert (selection.provider, selection.model) == ("gemini", "gemini-2.5-flash")
    assert selection.reason == "Best overall performance"
    assert len(selection.alternatives) == 2


def test_selection_accepts_plain_dict(optimizer):
    selection = optimizer.select_optimal_model({"prioritize_cost": True, "providers": ["openai"]})
    assert selection.provider == "openai"
    assert selection.model == "gpt-3.5-turbo"
    assert selection.reason == "Selected for cost efficiency"


def test_large_volume_penalizes_small_windows(optimizer):
    selection = optimizer.select_optimal_model(ModelRequirements(data_volume=100_000, providers=("openai",)))
    assert selection.model == "gpt-4-turbo"


def test_no_candidates_returns_default(optimizer):
    selection = optimizer.select_optimal_model(ModelRequirements(providers=("nobody",)))
    assert (selection.provider, selection.model) == ("openai", "gpt-3.5-turbo")
    assert selection.reason == "Default fallback model"


def test_history_bonus_for_reliable_model():
    monitor = PerformanceMonitor()
    for _ in range(5):
        request_id = monitor.start_request("openai", "gpt-4", 10)
        monitor.complete_request(request_id, output_tokens=10)
    optimizer = PerformanceOptimizer(monitor)

    plain = PerformanceOptimizer(PerformanceMonitor())
    requirements = ModelRequirements(providers=("openai",))
    with_history = {c.model: c.score for c in optimizer.select_optimal_model(requirements).alternatives}
    without_history = {c.model: c.score for c in plain.select_optimal_model(requirements).alternatives}
    assert with_history["gpt-4"] == without_history["gpt-4"] + 2


def test_prompt_within_limits_is_untouched(optimizer):
    result = optimizer.optimize_prompt_size("short prompt", "openai", "gpt-4", 100)
    assert result.optimized is False
    assert result.prompt == "short prompt"
    assert result.reason == "Within limits"


def test_unknown_model_is_not_optimized(optimizer):
    result = optimizer.optimize_prompt_size("prompt", "acme", "mystery", 1_000_000)
    assert result.optimized is False
    assert result.reason == "Unknown model"


def test_oversized_prompt_is_shrunk(optimizer):
    data_block = "[" + ", ".join(str(i) for i in range(5000)) + "]"
    prompt = "Instructions:   analyze the team.\n\n\n\nUser Data:\n" + data_block

    result = optimizer.optimize_prompt_size(prompt, "openai", "gpt-4", 10_000)

    assert result.optimized is True
    assert result.optimized_tokens < result.original_tokens == 10_000
    assert "Instructions: analyze the team." in result.prompt
    assert "\n\nUser Data:\n" in result.prompt
    assert DATA_MARKER in result.prompt
    assert "data_blocks" in result.reason
    assert 0 < result.reduction_ratio < 1
    assert "prompt" not in result.to_dict()
    assert result.to_dict(include_prompt=True)["prompt"] == result.prompt


def test_estimate_response_time(optimizer):
    assert optimizer.estimate_response_time("gemini", "gemini-2.5-flash") == pytest.approx(1000.0)
    assert optimizer.estimate_response_time("acme", "x") == 5000.0


def test_recommendations_include_optimal_model(optimizer):
    report = optimizer.get_optimization_recommendations(data_volume=60_000)
    assert report["optimal_model"]["provider"]
    assert any(rec["type"] == "model_selection" for rec in report["recommendations"])
    assert report["thresholds"]["max_tokens_per_request"] == 10_000


def test_reliability_recommendation_after_failures():
    monitor = PerformanceMonitor()
    for _ in range(3):
        request_id = monitor.start_request("openai", "gpt-4", 10)
        monitor.complete_request(request_id, status="error")
    report = PerformanceOptimizer(monitor).get_optimization_recommendations()
    assert any(rec["type"] == "reliability" for rec in report["recommendations"])


def test_update_thresholds(optimizer):
    updated = optimizer.update_thresholds(max_cost_per_request=0.5)
    assert updated.max_cost_per_request == 0.5
    assert optimizer.thresholds.max_cost_per_request == 0.5

    with pytest.raises(ValueError, match="Unknown optimization thresholds"):
        optimizer.update_thresholds(bogus=1)
