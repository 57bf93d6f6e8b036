"""
Retro generation entry point.

Runs rule-based and LLM analysis side by side, merges what came back and
guarantees the report is never empty. Either analysis may fail on its own;
the other's insights are still used.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from retroq.contracts.insights import AnalysisResult, Insight, InsightSections, MergeResult
from retroq.insights.merger import InsightMerger
from retroq.llm.analyzer import LLMAnalyzer
from retroq.llm.progress import ProgressTracker
from retroq.observability.logging import get_logger
from retroq.observability.telemetry import log_event

logger = get_logger(__name__)

RuleBasedSource = (
    InsightSections | dict[str, Any] | Awaitable[Any] | Callable[[], Awaitable[Any]] | None
)

FALLBACK_CONFIDENCE = 0.5


def _section_total(insights: Any) -> int:
    if insights is None:
        return 0
    if isinstance(insights, InsightSections):
        return insights.total()
    if isinstance(insights, dict):
        return sum(
            len(insights.get(name) or insights.get(wire) or [])
            for name, wire in (
                ("went_well", "wentWell"),
                ("didnt_go_well", "didntGoWell"),
                ("action_items", "actionItems"),
            )
        )
    return 0


def add_fallback_content(result: MergeResult, rule_based: Any = None, llm: Any = None) -> MergeResult:
    """
    Fill an otherwise empty report with placeholder items.

    A "Team stayed active" item is added when both went_well and
    didnt_go_well are empty; a "Continue tracking team activities" action
    is added when there are no action items.
    """
    updates: dict[str, Any] = {}
    if not result.went_well and not result.didnt_go_well:
        updates["went_well"] = (
            Insight(
                title="Team stayed active",
                details=(
                    f"Tracked activity during this period ({_section_total(rule_based)} rule-based insights, "
                    f"{_section_total(llm)} AI insights generated)"
                ),
                source="rules",
                confidence=FALLBACK_CONFIDENCE,
            ),
        )
    if not result.action_items:
        updates["action_items"] = (
            Insight(
                title="Continue tracking team activities",
                details="Keep using the configured tools for better retro insights",
                source="rules",
                confidence=FALLBACK_CONFIDENCE,
                priority_label="low",
                assignee="team",
            ),
        )
    if not updates:
        return result
    logger.info("Adding fallback content to empty retro sections: %s", sorted(updates))
    return result.model_copy(update=updates)


async def _resolve_rule_based(rule_based: RuleBasedSource) -> Any:
    if callable(rule_based):
        rule_based = rule_based()
    if inspect.isawaitable(rule_based):
        return await rule_based
    return rule_based


async def generate_retro(
    rule_based: RuleBasedSource = None,
    github: Any = None,
    linear: Any = None,
    slack: Any = None,
    date_range: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
    analyzer: LLMAnalyzer | None = None,
    merger: InsightMerger | None = None,
    progress: ProgressTracker | None = None,
) -> MergeResult:
    """
    Generate a merged retro report.

    Args:
        rule_based: Rule engine output, an awaitable of it, or a coroutine
            function producing it
        github, linear, slack: Raw team activity for the LLM analysis
        date_range: {"start": iso, "end": iso}
        context: Passed through to the analyzer (team_size, repositories, ...)
        analyzer: LLMAnalyzer; LLM analysis is skipped when None or disabled
        merger: InsightMerger (default config unless given)
        progress: Optional tracker forwarded to the analyzer

    Returns:
        MergeResult with analysis_metadata describing which analyses ran

    Side Effects:
        - Logs (never raises) failures of either analysis
    """
    llm_enabled = analyzer is not None and analyzer.config.enabled

    async def run_llm() -> AnalysisResult | None:
        if not llm_enabled:
            return None
        assert analyzer is not None
        return await analyzer.analyze_team_data(github, linear, slack, date_range, context, progress)

    rule_outcome, llm_outcome = await asyncio.gather(
        _resolve_rule_based(rule_based), run_llm(), return_exceptions=True
    )

    rule_ok = not isinstance(rule_outcome, BaseException)
    llm_ok = not isinstance(llm_outcome, BaseException)
    if not rule_ok:
        logger.error("Rule-based analysis failed: %s", rule_outcome)
    if not llm_ok:
        logger.warning("LLM analysis failed: %s", llm_outcome)

    rule_insights = rule_outcome if rule_ok else None
    llm_insights = llm_outcome if llm_ok else None

    result = (merger or InsightMerger()).merge_insights(rule_insights, llm_insights)

    analysis_metadata: dict[str, Any] = {
        "rule_based_analysis_used": rule_ok,
        "llm_analysis_used": llm_enabled and llm_ok and llm_insights is not None,
        "llm_enabled": llm_enabled,
        "generated_at": datetime.now(UTC).isoformat(),
        "date_range": date_range,
    }
    if isinstance(llm_insights, AnalysisResult):
        analysis_metadata["llm"] = dict(llm_insights.analysis_metadata)

    result = add_fallback_content(
        result.model_copy(update={"analysis_metadata": analysis_metadata}), rule_insights, llm_insights
    )
    log_event(
        "retro.generated",
        llm_used=analysis_metadata["llm_analysis_used"],
        rules_used=rule_ok,
        **result.counts(),
    )
    return result
