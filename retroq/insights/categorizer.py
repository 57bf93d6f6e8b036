"""
Categorize merged insights and score their priority.

Each insight gets a category (technical, process, teamDynamics, general or a
custom one), an impact and urgency level, and a 0..1 priority. Scoring is
keyword and regex matching over the lowercased title and details; the helper
functions take their tables as arguments so they can be tested in isolation.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from retroq.contracts.insights import Insight, Level
from retroq.insights.thresholds import (
    ALTERNATIVE_SCORE_THRESHOLD,
    CATEGORY_SCORE_THRESHOLD,
    PRIORITY_WEIGHTS,
)
from retroq.observability.logging import get_logger

logger = get_logger(__name__)

GENERAL = "general"


@dataclass(frozen=True)
class CategoryRules:
    keywords: tuple[str, ...]
    patterns: tuple[re.Pattern[str], ...] = ()


@dataclass(frozen=True)
class CategoryDefinition:
    id: str
    name: str
    description: str = ""
    color: str = "#6B7280"
    rules: CategoryRules | None = None

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "description": self.description, "color": self.color}


def _patterns(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(source, re.IGNORECASE) for source in sources)


CATEGORY_RULES: dict[str, CategoryRules] = {
    "technical": CategoryRules(
        keywords=(
            "bug", "fix", "error", "exception", "crash", "performance", "optimization",
            "code", "api", "database", "query", "deployment", "build", "test", "testing",
            "security", "vulnerability", "authentication", "authorization", "infrastructure",
            "server", "client", "frontend", "backend", "framework", "library", "dependency",
            "refactor", "architecture", "design pattern", "algorithm", "data structure",
            "memory", "cpu", "network", "latency", "throughput", "scalability",
        ),
        patterns=_patterns(
            r"\b(technical|code|api|database|server|client|bug|error|performance)\b",
            r"\b(deployment|build|test|security|infrastructure|framework)\b",
            r"\b(refactor|architecture|algorithm|memory|cpu|network)\b",
        ),
    ),
    "process": CategoryRules(
        keywords=(
            "process", "workflow", "procedure", "methodology", "sprint", "standup",
            "retrospective", "planning", "estimation", "deadline", "milestone", "release",
            "documentation", "review", "approval", "communication", "meeting", "ceremony",
            "agile", "scrum", "kanban", "continuous integration", "ci/cd", "devops",
            "quality assurance", "qa", "deployment process", "rollback", "monitoring",
            "incident", "postmortem", "automation", "manual", "efficiency", "bottleneck",
        ),
        patterns=_patterns(
            r"\b(process|workflow|procedure|methodology|sprint|planning)\b",
            r"\b(documentation|review|meeting|agile|scrum|kanban)\b",
            r"\b(ci/cd|devops|qa|deployment|automation|efficiency)\b",
        ),
    ),
    "teamDynamics": CategoryRules(
        keywords=(
            "team", "collaboration", "communication", "feedback", "morale", "culture",
            "onboarding", "mentoring", "knowledge sharing", "pair programming", "mob programming",
            "conflict", "resolution", "leadership", "motivation", "engagement", "burnout",
            "work-life balance", "remote", "distributed", "timezone", "async", "synchronous",
            "trust", "transparency", "accountability", "responsibility", "ownership",
            "skill development", "training", "learning", "growth", "career", "promotion",
        ),
        patterns=_patterns(
            r"\b(team|collaboration|communication|feedback|morale|culture)\b",
            r"\b(onboarding|mentoring|knowledge sharing|pair programming)\b",
            r"\b(conflict|leadership|motivation|burnout|work-life balance)\b",
            r"\b(remote|distributed|trust|transparency|accountability)\b",
            r"\b(skill development|training|learning|growth|career)\b",
        ),
    ),
}

# Checked in order; the first level with a matching indicator wins
IMPACT_INDICATORS: dict[str, tuple[str, ...]] = {
    "high": (
        "critical", "urgent", "blocker", "blocking", "severe", "major", "significant",
        "production", "outage", "downtime", "security breach", "data loss",
        "customer impact", "revenue impact", "compliance", "legal",
    ),
    "medium": (
        "important", "moderate", "noticeable", "affects", "impacts", "delays",
        "performance issue", "user experience", "workflow disruption",
    ),
    "low": (
        "minor", "small", "cosmetic", "nice to have", "enhancement", "improvement",
        "optimization", "cleanup", "refactoring",
    ),
}

URGENCY_INDICATORS: dict[str, tuple[str, ...]] = {
    "high": (
        "immediately", "asap", "urgent", "critical", "emergency", "hotfix",
        "before release", "end of sprint", "deadline",
    ),
    "medium": ("soon", "next sprint", "this week", "priority", "important"),
    "low": ("eventually", "future", "backlog", "when time permits", "nice to have"),
}

LEVEL_SCORES: dict[str, float] = {"high": 1.0, "medium": 0.6, "low": 0.3}
UNKNOWN_LEVEL_SCORE = 0.5

SOURCE_SCORES: dict[str, float] = {"hybrid": 0.9, "ai": 0.8, "rules": 0.7}
UNKNOWN_SOURCE_SCORE = 0.5

DEFAULT_CATEGORIES: tuple[CategoryDefinition, ...] = (
    CategoryDefinition("technical", "Technical", "Code, infrastructure, and technical implementation issues", "#3B82F6"),
    CategoryDefinition("process", "Process", "Workflow, methodology, and process-related insights", "#10B981"),
    CategoryDefinition("teamDynamics", "Team Dynamics", "Team collaboration, communication, and culture", "#8B5CF6"),
    CategoryDefinition(GENERAL, "General", "General insights that don't fit other categories", "#6B7280"),
)

SORT_FIELDS = ("priority", "confidence", "impact", "urgency", "category", "source", "title")


# ---------------------------------------------------------------------------
# Pure scoring helpers
# ---------------------------------------------------------------------------


def category_score(content: str, rules: CategoryRules) -> float:
    """min(keyword_hits / 3, 1) * 0.6 + min(pattern_hits / 2, 1) * 0.4"""
    keyword_hits = sum(1 for keyword in rules.keywords if keyword.lower() in content)
    pattern_hits = sum(1 for pattern in rules.patterns if pattern.search(content))
    return min(keyword_hits / 3, 1.0) * 0.6 + min(pattern_hits / 2, 1.0) * 0.4


def score_categories(content: str, table: Mapping[str, CategoryRules]) -> dict[str, float]:
    return {name: category_score(content, rules) for name, rules in table.items()}


def best_category(
    content: str, table: Mapping[str, CategoryRules], threshold: float = CATEGORY_SCORE_THRESHOLD
) -> tuple[str, float]:
    """Highest-scoring category (first wins ties), or general when no score clears the threshold."""
    scores = score_categories(content, table)
    if not scores:
        return GENERAL, 0.0
    name = max(scores, key=lambda key: scores[key])
    if scores[name] > threshold:
        return name, scores[name]
    return GENERAL, scores[name]


def match_level(content: str, indicators: Mapping[str, Sequence[str]]) -> str | None:
    for level, words in indicators.items():
        if any(word in content for word in words):
            return level
    return None


def assess_impact(
    content: str,
    category: str | None,
    source: str | None,
    confidence: float,
    indicators: Mapping[str, Sequence[str]] = IMPACT_INDICATORS,
) -> str:
    level = match_level(content, indicators)
    if level is not None:
        return level
    if source == "ai" and confidence > 0.8:
        return "medium"
    if category == "technical" and "production" in content:
        return "high"
    if category == "teamDynamics" and "burnout" in content:
        return "high"
    return "medium"


def assess_urgency(
    content: str, priority_label: str | None, indicators: Mapping[str, Sequence[str]] = URGENCY_INDICATORS
) -> str:
    level = match_level(content, indicators)
    if level is not None:
        return level
    if priority_label in ("high", "critical"):
        return "high"
    if priority_label in ("medium", "low"):
        return priority_label
    return "medium"


def level_score(level: str | None, scores: Mapping[str, float] = LEVEL_SCORES) -> float:
    return scores.get(level or "", UNKNOWN_LEVEL_SCORE)


def source_score(source: str | None, scores: Mapping[str, float] = SOURCE_SCORES) -> float:
    return scores.get(source or "", UNKNOWN_SOURCE_SCORE)


def calculate_priority(
    confidence: float,
    impact: str | None,
    urgency: str | None,
    source: str | None,
    weights: Mapping[str, float] = PRIORITY_WEIGHTS,
) -> float:
    """Weighted priority, clamped to [0, 1]."""
    priority = (
        weights["confidence"] * confidence
        + weights["impact"] * level_score(impact)
        + weights["urgency"] * level_score(urgency)
        + weights["source"] * source_score(source)
    )
    return min(max(priority, 0.0), 1.0)


def _level_value(level: Level | str | None) -> str | None:
    if isinstance(level, Level):
        return level.value
    return level


# ---------------------------------------------------------------------------
# Categorizer
# ---------------------------------------------------------------------------


class InsightCategorizer:
    """
    Applies category, impact, urgency and priority to insights.

    Args:
        custom_categories: Extra categories. Those with rules take part in
            scoring; all of them are valid as pre-assigned categories.
        priority_weights: Overrides for the confidence/impact/urgency/source weights
        enable_auto_categories: When False, existing categories are kept and
            missing ones become "general"
    """

    def __init__(
        self,
        custom_categories: Iterable[CategoryDefinition] = (),
        priority_weights: Mapping[str, float] | None = None,
        enable_auto_categories: bool = True,
        score_threshold: float = CATEGORY_SCORE_THRESHOLD,
    ):
        self.custom_categories = tuple(custom_categories)
        self.priority_weights = {**PRIORITY_WEIGHTS, **(priority_weights or {})}
        self.enable_auto_categories = enable_auto_categories
        self.score_threshold = score_threshold
        self.category_rules: dict[str, CategoryRules] = dict(CATEGORY_RULES)
        for custom in self.custom_categories:
            if custom.rules is not None:
                self.category_rules[custom.id] = custom.rules

    def get_available_categories(self) -> list[dict[str, str]]:
        return [category.to_dict() for category in (*DEFAULT_CATEGORIES, *self.custom_categories)]

    def is_valid_category(self, category: str | None) -> bool:
        return any(item["id"] == category for item in self.get_available_categories())

    def determine_category(self, insight: Insight) -> str:
        """
        Keep an existing specific category, otherwise score the content.

        general is the placeholder normalization assigns to uncategorized
        insights, so it is always re-scored.
        """
        if not self.enable_auto_categories:
            return insight.category or GENERAL
        if insight.category and insight.category != GENERAL and self.is_valid_category(insight.category):
            return insight.category
        category, _ = best_category(insight.text, self.category_rules, self.score_threshold)
        return category

    def category_confidence(self, insight: Insight, category: str) -> float:
        rules = self.category_rules.get(category)
        if category == GENERAL or rules is None:
            return 0.5
        return category_score(insight.text, rules)

    def alternative_categories(self, insight: Insight, primary: str) -> list[dict[str, Any]]:
        scores = score_categories(insight.text, self.category_rules)
        alternatives = [
            {"category": name, "score": score}
            for name, score in scores.items()
            if name != primary and score > ALTERNATIVE_SCORE_THRESHOLD
        ]
        return sorted(alternatives, key=lambda item: item["score"], reverse=True)

    def categorize(self, insight: Insight) -> Insight:
        category = self.determine_category(insight)
        content = insight.text
        impact = assess_impact(content, category, insight.source, insight.confidence)
        urgency = assess_urgency(content, _level_value(insight.priority_label))
        priority = calculate_priority(insight.confidence, impact, urgency, insight.source, self.priority_weights)
        return insight.model_copy(
            update={
                "category": category,
                "impact": Level(impact),
                "urgency": Level(urgency),
                "priority": priority,
                "category_metadata": {
                    "auto_detected": True,
                    "confidence": self.category_confidence(insight, category),
                    "alternative_categories": self.alternative_categories(insight, category),
                },
            }
        )

    def categorize_insights(self, insights: Iterable[Insight]) -> list[Insight]:
        return [self.categorize(insight) for insight in insights]

    def get_category_statistics(self, insights: Sequence[Insight]) -> dict[str, Any]:
        by_category = {item["id"]: 0 for item in self.get_available_categories()}
        by_source: dict[str, int] = {}
        by_impact: dict[str, int] = {}
        by_urgency: dict[str, int] = {}

        for insight in insights:
            category = insight.category or GENERAL
            by_category[category] = by_category.get(category, 0) + 1
            source = insight.source or "unknown"
            by_source[source] = by_source.get(source, 0) + 1
            impact = _level_value(insight.impact) or "medium"
            by_impact[impact] = by_impact.get(impact, 0) + 1
            urgency = _level_value(insight.urgency) or "medium"
            by_urgency[urgency] = by_urgency.get(urgency, 0) + 1

        total = len(insights)
        return {
            "total": total,
            "by_category": by_category,
            "by_source": by_source,
            "by_impact": by_impact,
            "by_urgency": by_urgency,
            "average_priority": sum(i.priority or 0.0 for i in insights) / total if total else 0.0,
            "average_confidence": sum(i.confidence for i in insights) / total if total else 0.0,
        }

    @staticmethod
    def filter_insights(
        insights: Iterable[Insight],
        categories: Sequence[str] | None = None,
        sources: Sequence[str] | None = None,
        impact: Sequence[str] | None = None,
        urgency: Sequence[str] | None = None,
        min_priority: float | None = None,
        min_confidence: float | None = None,
        search: str | None = None,
    ) -> list[Insight]:
        """Keep insights matching every given criterion. Empty criteria are ignored."""
        needle = search.lower() if search else None
        kept = []
        for insight in insights:
            if categories and insight.category not in categories:
                continue
            if sources and insight.source not in sources:
                continue
            if impact and _level_value(insight.impact) not in impact:
                continue
            if urgency and _level_value(insight.urgency) not in urgency:
                continue
            if min_priority is not None and (insight.priority or 0.0) < min_priority:
                continue
            if min_confidence is not None and insight.confidence < min_confidence:
                continue
            if needle and needle not in insight.text:
                continue
            kept.append(insight)
        return kept

    @staticmethod
    def _sort_value(insight: Insight, by: str) -> Any:
        if by == "priority":
            return insight.priority or 0.0
        if by == "confidence":
            return insight.confidence
        if by in ("impact", "urgency"):
            return level_score(_level_value(getattr(insight, by)))
        if by == "source":
            return source_score(insight.source)
        if by == "category":
            return insight.category or ""
        if by == "title":
            return insight.title
        raise ValueError(f"Unknown sort field: {by}. Expected one of {SORT_FIELDS}")

    def sort_insights(
        self,
        insights: Iterable[Insight],
        by: str = "priority",
        descending: bool = True,
        secondary: str | None = "confidence",
    ) -> list[Insight]:
        def key(insight: Insight) -> tuple[Any, ...]:
            primary = self._sort_value(insight, by)
            return (primary, self._sort_value(insight, secondary)) if secondary else (primary,)

        return sorted(insights, key=key, reverse=descending)
