"""Tests for generate_retro: parallel analyses, merge and fallback content."""

from __future__ import annotations

import asyncio

import pytest

from retroq.contracts.insights import InsightSource, MergeResult
from retroq.insights.merger import InsightMerger, MergerConfig
from retroq.llm.analyzer import AnalyzerConfig, LLMAnalyzer
from retroq.pipeline import add_fallback_content, generate_retro

RULE_INSIGHTS = {
    "went_well": [{"title": "Code review turnaround was fast", "details": "Median review time under 3 hours."}],
    "didnt_go_well": [],
    "action_items": [{"title": "Document the release checklist"}],
}


def make_analyzer(provider, **overrides) -> LLMAnalyzer:
    config = AnalyzerConfig(provider="gemini", enabled=True, retry_attempts=1, retry_delay_seconds=0.0, **overrides)
    return LLMAnalyzer(config, provider=provider)


def generate(**kwargs) -> MergeResult:
    return asyncio.run(generate_retro(**kwargs))


def test_rule_and_llm_insights_are_merged(fake_provider, team_data, date_range):
    result = generate(
        rule_based=RULE_INSIGHTS,
        github=team_data["github"],
        linear=team_data["linear"],
        slack=team_data["slack"],
        date_range=date_range,
        analyzer=make_analyzer(fake_provider),
    )

    # "Code review turnaround was fast" pairs with "Fast code review turnaround"
    assert [i.source for i in result.went_well] == ["hybrid"]
    assert result.merge_metadata["duplicates_found"] == 1
    assert len(result.action_items) == 2
    assert len(result.didnt_go_well) == 1

    meta = result.analysis_metadata
    assert meta["rule_based_analysis_used"] is True
    assert meta["llm_analysis_used"] is True
    assert meta["llm_enabled"] is True
    assert meta["date_range"] == date_range
    assert meta["llm"]["strategy"] == "direct"
    assert result.category_statistics["total"] == 4


def test_without_analyzer_only_rules_are_used():
    result = generate(rule_based=RULE_INSIGHTS)

    assert result.analysis_metadata["llm_enabled"] is False
    assert result.analysis_metadata["llm_analysis_used"] is False
    assert "llm" not in result.analysis_metadata
    assert {i.source for items in result.sections().values() for i in items} == {"rules"}


def test_disabled_analyzer_is_not_called(fake_provider):
    analyzer = make_analyzer(fake_provider)
    analyzer.config.enabled = False

    result = generate(rule_based=RULE_INSIGHTS, analyzer=analyzer)

    assert fake_provider.calls == []
    assert result.analysis_metadata["llm_enabled"] is False


def test_failing_rule_engine_still_returns_llm_insights(fake_provider, team_data, date_range):
    async def broken_rules():
        raise RuntimeError("rule engine crashed")

    result = generate(
        rule_based=broken_rules,
        github=team_data["github"],
        date_range=date_range,
        analyzer=make_analyzer(fake_provider),
    )

    assert result.analysis_metadata["rule_based_analysis_used"] is False
    assert result.analysis_metadata["llm_analysis_used"] is True
    assert result.went_well[0].source == "ai"


def test_failing_llm_still_returns_rule_insights(make_provider, team_data):
    provider = make_provider(responses=[RuntimeError("Invalid API key")])

    result = generate(rule_based=RULE_INSIGHTS, github=team_data["github"], analyzer=make_analyzer(provider))

    assert result.analysis_metadata["llm_enabled"] is True
    assert result.analysis_metadata["llm_analysis_used"] is False
    assert [i.title for i in result.went_well] == ["Code review turnaround was fast"]


def test_llm_fallback_counts_as_unused(make_provider, team_data):
    provider = make_provider(responses=[RuntimeError("quota exceeded")])

    result = generate(rule_based=RULE_INSIGHTS, github=team_data["github"], analyzer=make_analyzer(provider))

    assert result.analysis_metadata["llm_analysis_used"] is False
    assert result.total() == 2


def test_awaitable_rule_source_and_custom_merger():
    async def rules():
        return RULE_INSIGHTS

    merger = InsightMerger(MergerConfig(enable_categorization=False))
    result = generate(rule_based=rules(), merger=merger)

    assert result.category_statistics is None
    assert result.went_well[0].category == "general"


def test_empty_report_gets_fallback_content():
    result = generate(rule_based=None)

    assert [i.title for i in result.went_well] == ["Team stayed active"]
    assert result.went_well[0].details == (
        "Tracked activity during this period (0 rule-based insights, 0 AI insights generated)"
    )
    assert result.went_well[0].source == "rules"
    assert result.went_well[0].confidence == 0.5
    action = result.action_items[0]
    assert action.title == "Continue tracking team activities"
    assert action.assignee == "team"
    assert action.priority_label.value == "low"
    assert result.didnt_go_well == ()
    assert action.source == "rules"
    assert {i.source for i in result.went_well + result.action_items} <= {s.value for s in InsightSource}


def test_fallback_only_fills_missing_sections():
    merged = InsightMerger(MergerConfig(enable_categorization=False)).merge_insights(
        {"didnt_go_well": [{"title": "Release slipped"}]}, None
    )

    result = add_fallback_content(merged)

    assert result.went_well == ()
    assert [i.title for i in result.action_items] == ["Continue tracking team activities"]


def test_complete_report_is_returned_unchanged():
    merged = InsightMerger(MergerConfig(enable_categorization=False)).merge_insights(RULE_INSIGHTS, None)
    assert add_fallback_content(merged) is merged


@pytest.mark.parametrize("rule_based", [RULE_INSIGHTS, {"wentWell": [{"title": "a"}], "actionItems": []}])
def test_fallback_detail_counts_inputs(rule_based):
    empty = MergeResult()
    result = add_fallback_content(empty, rule_based, None)
    expected = sum(len(v) for v in rule_based.values())
    assert f"({expected} rule-based insights, 0 AI insights generated)" in result.went_well[0].details
