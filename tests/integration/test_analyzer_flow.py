"""End-to-end LLMAnalyzer runs against a scripted provider."""

from __future__ import annotations

import asyncio
import copy

import pytest

from retroq.contracts.insights import AnalysisResult, InsightSections
from retroq.contracts.providers import RawText, SanitizationReport
from retroq.llm.analyzer import AnalyzerConfig, LLMAnalyzer, assess_complexity, prepare_team_data
from retroq.llm.errors import ErrorType, LLMError, LLMParseError, LLMTimeoutError, ProviderInitializationError
from retroq.llm.progress import ProgressTracker, StepStatus
from retroq.llm.prompt_builder import Prompt
from retroq.llm.providers.config import ProviderConfig
from retroq.llm.providers.gemini import GeminiProvider
from retroq.observability.telemetry import get_counter, get_latency_stats


def make_config(**overrides) -> AnalyzerConfig:
    settings = {
        "provider": "gemini",
        "model": "gemini-2.5-flash",
        "enabled": True,
        "timeout_seconds": 1.0,
        "retry_attempts": 3,
        "retry_delay_seconds": 0.0,
        "privacy_level": "moderate",
        "progressive_threshold_tokens": 150_000,
    }
    settings.update(overrides)
    return AnalyzerConfig(**settings)


def run(analyzer: LLMAnalyzer, team_data: dict, date_range: dict, **kwargs):
    return asyncio.run(
        analyzer.analyze_team_data(
            team_data["github"],
            team_data["linear"]["issues"],
            team_data["slack"]["messages"],
            date_range,
            **kwargs,
        )
    )


class MaskingSanitizer:
    """Replaces author names so tests can see sanitized data reach the provider."""

    def __init__(self, clean: bool = True, fail: bool = False):
        self.clean = clean
        self.fail = fail

    def sanitize_team_data(self, data):
        if self.fail:
            raise RuntimeError("sanitizer crashed")
        masked = copy.deepcopy(data)
        for commit in masked.get("github", {}).get("commits", []):
            commit["author"] = "[user]"
        return masked

    def validate_sanitization(self, data):
        return SanitizationReport(is_clean=self.clean, violations=[] if self.clean else ["email"])


class TestDirectStrategy:
    def test_successful_analysis(self, fake_provider, team_data, date_range):
        analyzer = LLMAnalyzer(make_config(), provider=fake_provider)
        progress = ProgressTracker("retro-1")

        result = run(analyzer, team_data, date_range, context={"team_size": 4}, progress=progress)

        assert isinstance(result, AnalysisResult)
        assert result.counts() == {"went_well": 1, "didnt_go_well": 1, "action_items": 1}

        meta = result.analysis_metadata
        assert meta["provider"] == "gemini"
        assert meta["model"] == "gemini-2.5-flash"
        assert meta["strategy"] == "direct"
        assert meta["complexity"] == "high"
        assert meta["sanitized"] is False
        assert meta["chunk_stats"] is None
        assert meta["prompt"]["template"] == "full_analysis"
        assert meta["token_usage"]["within_limit"] is True
        assert "generated_at" in meta

        sent_data, sent_context = fake_provider.calls[0]
        assert set(sent_data) == {"github", "linear", "slack"}
        assert isinstance(sent_context["prompt"], Prompt)
        assert sent_context["team_size"] == 4
        assert sent_context["date_range"] == date_range

        assert progress.completed is True
        assert all(step.status == StepStatus.COMPLETED for step in progress.steps)
        assert get_latency_stats("llm.analysis_ms")["count"] == 1
        assert get_latency_stats("llm.provider_call_ms")["count"] == 1

    def test_insights_are_stamped(self, fake_provider, team_data, date_range):
        result = run(LLMAnalyzer(make_config(), provider=fake_provider), team_data, date_range)

        went_well = result.went_well[0]
        assert went_well.source == "ai"
        assert went_well.llm_provider == "gemini"
        assert went_well.llm_model == "gemini-2.5-flash"
        # Explicit confidence survives, missing confidence gets the JSON default
        assert went_well.confidence == 0.9
        assert result.didnt_go_well[0].confidence == 0.8
        assert went_well.reasoning == "Generated by LLM analysis"
        assert went_well.model_extra["metadata"]["data_sanitized"] is False

    def test_sanitizer_output_is_what_the_provider_sees(self, fake_provider, team_data, date_range):
        analyzer = LLMAnalyzer(make_config(), provider=fake_provider, sanitizer=MaskingSanitizer(clean=False))

        result = run(analyzer, team_data, date_range)

        sent_data, _ = fake_provider.calls[0]
        assert {c["author"] for c in sent_data["github"]["commits"]} == {"[user]"}
        assert result.analysis_metadata["sanitized"] is True

    def test_sanitizer_skipped_when_privacy_is_off(self, fake_provider, team_data, date_range):
        analyzer = LLMAnalyzer(make_config(privacy_level="none"), provider=fake_provider, sanitizer=MaskingSanitizer())
        run(analyzer, team_data, date_range)
        assert fake_provider.calls[0][0]["github"]["commits"][0]["author"] == "dev1"

    def test_failed_sanitizer_sends_original_data(self, fake_provider, team_data, date_range):
        analyzer = LLMAnalyzer(make_config(), provider=fake_provider, sanitizer=MaskingSanitizer(fail=True))
        result = run(analyzer, team_data, date_range)
        assert result.analysis_metadata["sanitized"] is False

    def test_raw_text_response_is_parsed(self, make_provider, team_data, date_range):
        provider = make_provider(responses=[RawText("## What went well\n- Pairing helped\n", provider="gemini")])

        result = run(LLMAnalyzer(make_config(), provider=provider), team_data, date_range)

        assert [i.title for i in result.went_well] == ["Pairing helped"]
        assert result.went_well[0].confidence == 0.7

    def test_dict_response_with_missing_sections(self, make_provider, team_data, date_range):
        provider = make_provider(responses=[{"wentWell": [{"title": "Demo went great"}]}])

        result = run(LLMAnalyzer(make_config(), provider=provider), team_data, date_range)

        assert result.counts() == {"went_well": 1, "didnt_go_well": 0, "action_items": 0}


class TestRetriesAndFallback:
    def test_transient_failure_is_retried(self, make_provider, team_data, date_range):
        provider = make_provider(responses=[RuntimeError("503 service unavailable"), InsightSections.empty()])

        result = run(LLMAnalyzer(make_config(), provider=provider), team_data, date_range)

        assert result is not None
        assert len(provider.calls) == 2
        assert get_counter("llm.retry") == 1

    def test_fallback_error_returns_none_after_retries(self, make_provider, team_data, date_range):
        provider = make_provider(responses=[RuntimeError("quota exceeded for this project")])
        progress = ProgressTracker()

        result = run(LLMAnalyzer(make_config(), provider=provider), team_data, date_range, progress=progress)

        assert result is None
        assert len(provider.calls) == 3
        assert get_counter("llm.retry") == 2
        assert get_counter("llm.fallback") == 1
        assert progress.error == "API quota exceeded. Please check your billing or upgrade your plan."

    def test_empty_response_falls_back(self, make_provider, team_data, date_range):
        provider = make_provider(responses=["   "])
        assert run(LLMAnalyzer(make_config(), provider=provider), team_data, date_range) is None
        assert len(provider.calls) == 3

    def test_auth_error_is_raised_without_retry(self, make_provider, team_data, date_range):
        provider = make_provider(responses=[RuntimeError("Invalid API key")])

        with pytest.raises(LLMError) as excinfo:
            run(LLMAnalyzer(make_config(), provider=provider), team_data, date_range)

        assert excinfo.value.error_type == ErrorType.UNAUTHORIZED
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert len(provider.calls) == 1

    def test_provider_initialization_failure_is_not_retried(self, team_data, date_range):
        calls = []

        def broken_factory(model_name):
            calls.append(model_name)
            raise ProviderInitializationError("GOOGLE_CLOUD_PROJECT not set")

        provider = GeminiProvider(
            ProviderConfig(provider="gemini", model="gemini-2.5-flash", retry_attempts=3, retry_delay_seconds=0),
            model_factory=broken_factory,
        )
        progress = ProgressTracker()

        result = run(LLMAnalyzer(make_config(), provider=provider), team_data, date_range, progress=progress)

        assert result is None
        assert calls == ["gemini-2.5-flash"]
        assert get_counter("llm.retry") == 0
        assert get_counter("llm.fallback") == 1
        assert progress.error == "The AI provider could not be initialized."

    def test_timeout_is_raised_as_llm_timeout(self, make_provider, team_data, date_range):
        provider = make_provider(delay_seconds=0.5)
        analyzer = LLMAnalyzer(make_config(timeout_seconds=0.05, retry_attempts=2), provider=provider)

        with pytest.raises(LLMTimeoutError) as excinfo:
            run(analyzer, team_data, date_range)

        assert excinfo.value.details["timeout_seconds"] == 0.05
        assert len(provider.calls) == 2

    def test_unparseable_response_falls_back(self, make_provider, team_data, date_range):
        provider = make_provider(responses=[42])
        assert run(LLMAnalyzer(make_config(), provider=provider), team_data, date_range) is None

    def test_parse_response_rejects_unknown_types(self):
        analyzer = LLMAnalyzer(make_config(enabled=False))
        with pytest.raises(LLMParseError, match="Response parsing failed"):
            analyzer.parse_response(42)


class TestProgressiveStrategy:
    def test_large_data_uses_progressive_analysis(self, fake_provider, team_data, date_range):
        analyzer = LLMAnalyzer(make_config(progressive_threshold_tokens=10), provider=fake_provider)

        result = run(analyzer, team_data, date_range)

        meta = result.analysis_metadata
        assert meta["strategy"] == "progressive"
        assert meta["chunk_stats"]["total_chunks"] == 5
        assert meta["prompt"]["template"] == "temporal_aggregation"
        assert len(fake_provider.chunk_calls) == 5
        assert len(fake_provider.calls) == 1
        assert result.total() == 3


class TestDisabledAndConfiguration:
    def test_disabled_analyzer_returns_none(self, fake_provider, team_data, date_range):
        analyzer = LLMAnalyzer(make_config(enabled=False), provider=fake_provider)
        assert run(analyzer, team_data, date_range) is None
        assert fake_provider.calls == []

    def test_invalid_provider_settings_disable_analysis(self):
        analyzer = LLMAnalyzer(make_config(provider="openai", api_key=None))
        assert analyzer.config.enabled is False
        assert analyzer.provider is None
        assert analyzer.get_status()["initialized"] is False

    def test_from_environment_without_provider(self, monkeypatch):
        monkeypatch.setattr("retroq.config.LLM_PROVIDER", None)
        analyzer = LLMAnalyzer.from_environment()
        assert analyzer.config.enabled is False

    def test_status_and_config_description(self, fake_provider):
        analyzer = LLMAnalyzer(make_config(api_key="secret"), provider=fake_provider)

        status = analyzer.get_status()
        assert status["enabled"] is True
        assert status["model"] == "gemini-2.5-flash"
        assert status["components"] == {"provider": True, "prompt_builder": True, "sanitizer": False}
        assert analyzer.describe_config()["api_key"] == "***"

    def test_update_configuration(self, fake_provider):
        analyzer = LLMAnalyzer(make_config(), provider=fake_provider)

        updated = analyzer.update_configuration(retry_attempts=5)
        assert updated.retry_attempts == 5
        assert analyzer.provider is fake_provider

        analyzer.update_configuration(enabled=False)
        assert analyzer.provider is None

        with pytest.raises(ValueError, match="Unknown analyzer settings: colour"):
            analyzer.update_configuration(colour="blue")

    def test_configuration_check(self, make_provider):
        ok = asyncio.run(LLMAnalyzer(make_config(), provider=make_provider()).test_configuration())
        assert ok["success"] is True
        assert ok["message"] == "LLM configuration test successful"

        offline = asyncio.run(LLMAnalyzer(make_config(), provider=make_provider(connected=False)).test_configuration())
        assert offline == {
            "success": False,
            "message": "LLM provider connection failed",
            "provider": "gemini",
            "model": "gemini-2.5-flash",
        }

        failing = make_provider(responses=[RuntimeError("Invalid API key")])
        broken = asyncio.run(LLMAnalyzer(make_config(), provider=failing).test_configuration())
        assert broken["success"] is False
        assert "Invalid API key" in broken["error"]

    def test_performance_passthroughs(self, fake_provider):
        analyzer = LLMAnalyzer(make_config(), provider=fake_provider)
        assert analyzer.get_performance_metrics()["total_requests"] == 0
        assert "optimal_model" in analyzer.get_optimization_recommendations(1000)
        assert analyzer.update_optimization_thresholds(max_cost_per_request=0.25)["max_cost_per_request"] == 0.25
        assert analyzer.cleanup_performance_data() == 0


def test_prepare_team_data_accepts_lists_and_dicts():
    data = prepare_team_data(
        {"commits": [{"sha": "1"}]},
        [{"id": "LIN-1"}],
        {"messages": []},
    )
    assert data == {"github": {"commits": [{"sha": "1"}], "pullRequests": []}, "linear": {"issues": [{"id": "LIN-1"}]}}
    assert prepare_team_data(None, None, None) == {}


def test_assess_complexity():
    assert assess_complexity({}) == "low"
    assert assess_complexity({"github": {"commits": [{}]}, "slack": {"messages": [{}]}}) == "medium"
    assert assess_complexity({"github": {"commits": [{"m": "x" * 60_000}]}}) == "high"
