"""Tests for InsightMerger deduplication and section assembly."""

from __future__ import annotations

import pytest

from retroq.contracts.insights import AnalysisResult, Insight, InsightSections
from retroq.insights.merger import (
    InsightMerger,
    MergerConfig,
    combine_details,
    content_words,
    details_similarity,
    is_similar,
    merged_confidence,
    similarity_score,
    title_similarity,
)
from retroq.observability.telemetry import get_counter


@pytest.fixture
def plain_merger():
    """Merger without categorization so fields stay as merged."""
    return InsightMerger(MergerConfig(enable_categorization=False))


def test_content_words_drop_short_words_and_stopwords():
    assert content_words("The API is down!") == {"api", "down"}
    assert content_words(None) == set()


def test_title_similarity_ignores_word_order():
    a = Insight(title="Slow code reviews")
    b = Insight(title="Code reviews are slow")
    assert title_similarity(a, b) == 1.0


def test_insights_without_content_words_compare_titles():
    assert is_similar(Insight(title="OK"), Insight(title="ok!"))
    assert not is_similar(Insight(title="OK"), Insight(title="no"))


def test_details_overlap_alone_makes_insights_similar():
    a = Insight(title="Completed 5 issues this sprint", details="Team finished 5 Linear issues")
    b = Insight(title="Good issue completion rate", details="Team completed 5 issues successfully")

    assert title_similarity(a, b) == 0.0
    assert details_similarity(a, b) == 0.5
    assert is_similar(a, b)


def test_unrelated_insights_are_not_similar():
    a = Insight(title="Alpha topic", category="general")
    b = Insight(title="Beta subject", category="general")
    # only the shared category contributes to the composite
    assert similarity_score(a, b) == pytest.approx(0.1)
    assert not is_similar(a, b)


SIMILARITY_CASES = [
    Insight(title="Completed 5 issues this sprint", details="Team finished 5 Linear issues"),
    Insight(title="Good issue completion rate", details="Team completed 5 issues successfully", category="process"),
    Insight(title="Slow code reviews", details="PRs waited two days"),
    Insight(title="OK"),
    Insight(title="Deploy pipeline flaky", category="technical"),
]


@pytest.mark.parametrize("insight", SIMILARITY_CASES)
def test_is_similar_is_reflexive(insight):
    assert is_similar(insight, insight)


@pytest.mark.parametrize("a", SIMILARITY_CASES)
@pytest.mark.parametrize("b", SIMILARITY_CASES)
def test_is_similar_is_symmetric(a, b):
    assert is_similar(a, b) == is_similar(b, a)
    assert similarity_score(a, b) == similarity_score(b, a)


def test_merged_confidence_bonus_is_capped():
    assert merged_confidence([0.9, 0.8]) == pytest.approx(0.9)
    assert merged_confidence([0.5, 0.5, 0.5, 0.5]) == pytest.approx(0.6)
    assert merged_confidence([1.0, 1.0]) == 1.0
    assert merged_confidence([]) == 0.0


def test_combine_details_keeps_unique_sentences_in_order():
    assert combine_details("Builds broke. Tests flaked.", ["Tests flaked. Deploys slipped."]) == (
        "Builds broke. Tests flaked. Deploys slipped."
    )


class TestMergeInsights:
    def test_similar_pair_becomes_hybrid(self, plain_merger):
        rules = {"went_well": [{"title": "Fast code reviews", "details": "Reviews landed quickly."}]}
        llm = {"wentWell": [{"title": "Code reviews were fast", "details": "PRs reviewed fast.", "confidence": 0.9}]}

        result = plain_merger.merge_insights(rules, llm)

        assert len(result.went_well) == 1
        hybrid = result.went_well[0]
        assert hybrid.source == "hybrid"
        # AI insight is the primary when prioritize_ai is on
        assert hybrid.title == "Code reviews were fast"
        assert hybrid.confidence == pytest.approx(0.95)
        assert hybrid.details == "PRs reviewed fast. Reviews landed quickly."
        assert {ref.source for ref in hybrid.source_insights} == {"rules", "ai"}
        assert result.merge_metadata["duplicates_found"] == 1
        assert get_counter("insights.duplicates") == 1

    def test_issue_completion_pair_becomes_one_hybrid(self, plain_merger):
        rules = {"went_well": [{"title": "Completed 5 issues this sprint", "details": "Team finished 5 Linear issues"}]}
        llm = {
            "went_well": [
                {"title": "Good issue completion rate", "details": "Team completed 5 issues successfully"}
            ]
        }

        result = plain_merger.merge_insights(rules, llm)

        assert len(result.went_well) == 1
        hybrid = result.went_well[0]
        assert hybrid.source == "hybrid"
        assert len(hybrid.source_insights) == 2
        assert result.merge_metadata["duplicates_found"] == 1

    def test_merged_length_is_rules_plus_llm_minus_duplicates(self, plain_merger):
        rules = {
            "didnt_go_well": [
                {"title": "Fast code reviews"},
                {"title": "Flaky deploy pipeline"},
                {"title": "Sprint planning overran"},
            ]
        }
        llm = {
            "didnt_go_well": [
                {"title": "Code reviews were fast"},
                {"title": "Deploy pipeline flaky again"},
                {"title": "Onboarding docs outdated"},
            ]
        }

        result = plain_merger.merge_insights(rules, llm)

        meta = result.merge_metadata
        assert meta["duplicates_found"] == 2
        assert len(result.didnt_go_well) == 3 + 3 - 2
        assert meta["total_merged"] == meta["total_rule_based"] + meta["total_llm"] - meta["duplicates_found"]
        assert sorted(i.source for i in result.didnt_go_well) == ["ai", "hybrid", "hybrid", "rules"]

    def test_each_llm_insight_matches_at_most_once(self, plain_merger):
        rules = {
            "didnt_go_well": [
                {"title": "Deploy pipeline flaky"},
                {"title": "Flaky deploy pipeline again"},
            ]
        }
        llm = {"didnt_go_well": [{"title": "Flaky deploy pipeline"}]}

        result = plain_merger.merge_insights(rules, llm)

        assert [i.source for i in result.didnt_go_well] == ["hybrid", "rules"]
        assert result.merge_metadata["duplicates_found"] == 1
        assert result.merge_metadata["total_merged"] == 2

    def test_sections_are_capped(self):
        merger = InsightMerger(MergerConfig(max_insights_per_category=2, enable_categorization=False))
        rules = {"action_items": [{"title": "Alpha task"}, {"title": "Beta chore"}, {"title": "Gamma job"}]}

        result = merger.merge_insights(rules, None)

        assert len(result.action_items) == 2
        assert result.merge_metadata["total_merged"] == 3
        assert result.merge_metadata["total_after_cap"] == 2

    def test_ai_insights_sort_first(self, plain_merger):
        result = plain_merger.merge_insights(
            {"went_well": [{"title": "Alpha topic"}]}, {"went_well": [{"title": "Beta subject"}]}
        )
        assert [i.source for i in result.went_well] == ["ai", "rules"]

    def test_without_ai_priority_confidence_decides(self):
        merger = InsightMerger(MergerConfig(prioritize_ai=False, enable_categorization=False))
        result = merger.merge_insights(
            {"went_well": [{"title": "Alpha topic"}]}, {"went_well": [{"title": "Beta subject"}]}
        )
        # rules default to 0.9, ai to 0.8
        assert [i.source for i in result.went_well] == ["rules", "ai"]

    def test_normalization_defaults(self, plain_merger):
        rules = {
            "went_well": [
                {"title": "Kept confidence", "confidence": 0.4, "id": "rule-7"},
                "Plain string insight",
                42,
            ]
        }

        result = plain_merger.merge_insights(rules, None)
        by_title = {i.title: i for i in result.went_well}

        assert set(by_title) == {"Kept confidence", "Plain string insight"}
        assert by_title["Kept confidence"].confidence == 0.4
        assert by_title["Kept confidence"].original_id == "rule-7"
        assert by_title["Plain string insight"].confidence == 0.9
        assert by_title["Plain string insight"].category == "general"
        assert by_title["Plain string insight"].original_id.endswith("_rules_went_well_1")

    def test_both_inputs_missing(self, plain_merger):
        result = plain_merger.merge_insights(None, None)
        assert result.total() == 0
        assert result.merge_metadata["total_rule_based"] == 0
        assert result.merge_metadata["total_llm"] == 0
        assert result.category_statistics is None

    def test_accepts_insight_sections_and_keeps_analysis_metadata(self, plain_merger):
        llm = AnalysisResult(
            went_well=(Insight(title="Great pairing sessions", source="ai"),),
            analysis_metadata={"provider": "gemini"},
        )
        rules = InsightSections(action_items=(Insight(title="Write runbook"),))

        result = plain_merger.merge_insights(rules, llm)

        assert result.counts() == {"went_well": 1, "didnt_go_well": 0, "action_items": 1}
        assert result.analysis_metadata == {"provider": "gemini"}

    def test_categorization_adds_statistics(self):
        result = InsightMerger.merge({"didnt_go_well": [{"title": "Api error crashed the build server"}]}, None)

        insight = result.didnt_go_well[0]
        assert insight.category == "technical"
        assert insight.priority is not None
        assert result.category_statistics["total"] == 1
        assert result.merge_metadata["categorized"] is True

    def test_uncategorized_rule_insights_are_scored(self):
        rules = {
            "didnt_go_well": [
                {"title": "Database query performance bug", "details": "API server latency error spikes"},
                {"title": "Lovely weather today"},
            ]
        }

        result = InsightMerger().merge_insights(rules, None)

        categories = {i.title: i.category for i in result.didnt_go_well}
        assert categories == {"Database query performance bug": "technical", "Lovely weather today": "general"}
        assert result.category_statistics["by_category"]["technical"] == 1


class TestPostMergeViews:
    def test_filter_and_sort_need_categorizer(self, plain_merger):
        result = plain_merger.merge_insights({"went_well": [{"title": "Alpha topic"}]}, None)
        assert plain_merger.filter_insights(result, sources=["ai"]) is result
        assert plain_merger.sort_insights(result) is result
        assert plain_merger.get_available_categories() == []

    def test_filter_sections(self):
        merger = InsightMerger()
        result = merger.merge_insights(
            {"went_well": [{"title": "Api error crashed the build server"}, {"title": "Sprint planning workflow"}]},
            None,
        )

        filtered = merger.filter_insights(result, categories=["process"])

        assert [i.category for i in filtered.went_well] == ["process"]
        assert len(merger.get_available_categories()) == 4
