"""
Merge rule-based and LLM insights into one report.

Per retro section, each rule insight is paired with at most one unused LLM
insight (the best-scoring similar one). Pairs collapse into a single
"hybrid" insight that keeps copies of both originals in source_insights;
unmatched insights pass through. Sections are then sorted, capped and
optionally categorized.

Similarity compares three symmetric scores:
- title overlap: |A & B| / max(|A|, |B|) over content words of the titles
- details overlap: the same measure over the details
- keyword overlap: Jaccard over content words of title + details

Two insights are similar when the weighted composite (title 0.4, details
0.2, same category 0.1, keyword 0.3) reaches the threshold, when title or
details overlap alone reaches 0.5, or when two moderate (>= 0.3) signals
agree.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from retroq.contracts.insights import (
    SECTION_KEYS,
    Insight,
    InsightSections,
    InsightSource,
    MergeResult,
    SourceInsightRef,
)
from retroq.insights import thresholds
from retroq.insights.categorizer import GENERAL, InsightCategorizer
from retroq.observability.logging import get_logger
from retroq.observability.telemetry import counter, log_event

logger = get_logger(__name__)

STOPWORDS = frozenset(
    {
        "the", "and", "but", "for", "with", "are", "was", "were", "been", "have",
        "has", "had", "does", "did", "will", "would", "could", "should", "may",
        "might", "can", "this", "that", "these", "those", "from", "into", "its",
    }
)
WORD_PATTERN = re.compile(r"[^\w\s]")
SENTENCE_PATTERN = re.compile(r"(?<=[.!?])\s+")
AGREEMENT_BONUS_STEP = 0.05
AGREEMENT_BONUS_MAX = 0.1

TITLE_WEIGHT = 0.4
DETAILS_WEIGHT = 0.2
CATEGORY_WEIGHT = 0.1
KEYWORD_WEIGHT = 0.3
HIGH_SIMILARITY = 0.5
MODERATE_SIMILARITY = 0.3
STRONG_KEYWORD_MATCH = 0.8


@dataclass
class MergerConfig:
    similarity_threshold: float = thresholds.SIMILARITY_THRESHOLD
    max_insights_per_category: int = thresholds.MAX_INSIGHTS_PER_CATEGORY
    prioritize_ai: bool = thresholds.PRIORITIZE_AI
    enable_categorization: bool = thresholds.ENABLE_CATEGORIZATION


def content_words(text: str | None) -> set[str]:
    """Lowercased words longer than 2 chars, punctuation stripped, stopwords removed."""
    if not text:
        return set()
    cleaned = WORD_PATTERN.sub(" ", text.lower())
    return {word for word in cleaned.split() if len(word) > 2 and word not in STOPWORDS}


def text_similarity(text_a: str | None, text_b: str | None) -> float:
    """|A & B| / max(|A|, |B|) over content words; 0 when either side has none."""
    words_a, words_b = content_words(text_a), content_words(text_b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / max(len(words_a), len(words_b))


def title_similarity(a: Insight, b: Insight) -> float:
    return text_similarity(a.title, b.title)


def details_similarity(a: Insight, b: Insight) -> float:
    return text_similarity(a.details, b.details)


def keyword_similarity(a: Insight, b: Insight) -> float:
    words_a = content_words(f"{a.title} {a.details}")
    words_b = content_words(f"{b.title} {b.details}")
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def similarity_score(a: Insight, b: Insight) -> float:
    """Weighted composite used both for the threshold test and to rank candidate matches."""
    same_category = 1.0 if a.category == b.category else 0.0
    return (
        TITLE_WEIGHT * title_similarity(a, b)
        + DETAILS_WEIGHT * details_similarity(a, b)
        + CATEGORY_WEIGHT * same_category
        + KEYWORD_WEIGHT * keyword_similarity(a, b)
    )


def _normalized_title(insight: Insight) -> str:
    return " ".join(WORD_PATTERN.sub(" ", insight.title.lower()).split())


def is_similar(a: Insight, b: Insight, threshold: float = thresholds.SIMILARITY_THRESHOLD) -> bool:
    """
    Near-duplicate test. Symmetric, and reflexive for any insight.

    Two insights with no content words at all are similar only when their
    normalized titles match.
    """
    if not content_words(f"{a.title} {a.details}") and not content_words(f"{b.title} {b.details}"):
        return _normalized_title(a) == _normalized_title(b)

    title = title_similarity(a, b)
    details = details_similarity(a, b)
    keywords = keyword_similarity(a, b)
    return (
        similarity_score(a, b) >= threshold
        or title >= HIGH_SIMILARITY
        or details >= HIGH_SIMILARITY
        or (keywords >= STRONG_KEYWORD_MATCH and a.category == b.category)
        or (title >= MODERATE_SIMILARITY and details >= MODERATE_SIMILARITY)
        or (details >= MODERATE_SIMILARITY and keywords >= MODERATE_SIMILARITY)
    )


def _sentences(text: str) -> list[str]:
    return [part.strip() for part in SENTENCE_PATTERN.split(text or "") if part.strip()]


def combine_details(primary: str, others: list[str]) -> str:
    """Union of unique sentences, primary first."""
    combined: list[str] = []
    seen: set[str] = set()
    for text in (primary, *others):
        for sentence in _sentences(text):
            key = " ".join(WORD_PATTERN.sub(" ", sentence.lower()).split())
            if key and key not in seen:
                seen.add(key)
                combined.append(sentence)
    return " ".join(combined)


def merged_confidence(confidences: list[float]) -> float:
    """mean + min(0.1, (n - 1) * 0.05), capped at 1."""
    if not confidences:
        return 0.0
    mean = sum(confidences) / len(confidences)
    bonus = min(AGREEMENT_BONUS_MAX, (len(confidences) - 1) * AGREEMENT_BONUS_STEP)
    return min(1.0, mean + bonus)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]", "", text.lower())[:16]


class InsightMerger:
    """Deduplicating merge of rule-based and LLM insights."""

    def __init__(self, config: MergerConfig | None = None, categorizer: InsightCategorizer | None = None):
        self.config = config or MergerConfig()
        self.categorizer = (categorizer or InsightCategorizer()) if self.config.enable_categorization else None

    @classmethod
    def merge(cls, rule_based: Any, llm: Any) -> MergeResult:
        return cls().merge_insights(rule_based, llm)

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _normalize_item(self, item: Any, default_source: str, section: str, index: int) -> Insight | None:
        if item is None:
            return None
        if isinstance(item, Insight):
            insight = item
        elif isinstance(item, (str, Mapping)):
            insight = Insight.model_validate(dict(item) if isinstance(item, Mapping) else item)
        else:
            logger.warning("Skipping insight of unsupported type %s", type(item).__name__)
            return None

        fields_set = insight.model_fields_set
        source = insight.source if "source" in fields_set and insight.source else default_source
        update: dict[str, Any] = {"source": source}
        if "confidence" not in fields_set:
            defaults = thresholds.DEFAULT_CONFIDENCE_BY_SOURCE
            update["confidence"] = defaults.get(source, defaults["other"])
        if not insight.category:
            update["category"] = GENERAL
        if not insight.original_id:
            extra_id = (insight.model_extra or {}).get("id")
            if extra_id:
                update["original_id"] = str(extra_id)
            else:
                update["original_id"] = f"{_slug(insight.title + insight.details)}_{source}_{section}_{index}"
        return insight.model_copy(update=update)

    def normalize(self, insights: Any, default_source: str) -> dict[str, list[Insight]]:
        """Section name -> normalized insights. Accepts InsightSections, dicts (snake or camel keys) or None."""
        normalized: dict[str, list[Insight]] = {name: [] for name in SECTION_KEYS}
        if insights is None:
            return normalized
        if isinstance(insights, InsightSections):
            raw_sections: Mapping[str, Any] = insights.sections()
        elif isinstance(insights, Mapping):
            raw_sections = {name: insights.get(name, insights.get(wire)) for name, wire in SECTION_KEYS.items()}
        else:
            logger.warning("Ignoring insights payload of type %s", type(insights).__name__)
            return normalized

        for name in SECTION_KEYS:
            items = raw_sections.get(name) or ()
            if not isinstance(items, (list, tuple)):
                continue
            for index, item in enumerate(items):
                insight = self._normalize_item(item, default_source, name, index)
                if insight is not None:
                    normalized[name].append(insight)
        return normalized

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def is_similar(self, a: Insight, b: Insight) -> bool:
        return is_similar(a, b, self.config.similarity_threshold)

    def match_section(self, rule_items: list[Insight], llm_items: list[Insight]) -> list[tuple[int, int]]:
        """
        Greedy one-to-one matching.

        Returns:
            (rule index, llm index) pairs; each LLM insight appears at most once
        """
        used: set[int] = set()
        pairs = []
        for rule_index, rule_insight in enumerate(rule_items):
            best_index, best_score = None, -1.0
            for llm_index, llm_insight in enumerate(llm_items):
                if llm_index in used or not self.is_similar(rule_insight, llm_insight):
                    continue
                score = similarity_score(rule_insight, llm_insight)
                if score > best_score:
                    best_index, best_score = llm_index, score
            if best_index is not None:
                used.add(best_index)
                pairs.append((rule_index, best_index))
        return pairs

    def _primary_first(self, insights: list[Insight]) -> list[Insight]:
        def key(insight: Insight) -> tuple[int, float]:
            ai_first = 0 if self.config.prioritize_ai and insight.source == InsightSource.AI.value else 1
            return (ai_first, -insight.confidence)

        return sorted(insights, key=key)

    def merge_similar(self, insights: list[Insight]) -> Insight:
        """Collapse similar insights into one hybrid insight."""
        ordered = self._primary_first(insights)
        primary, others = ordered[0], ordered[1:]
        category = next((i.category for i in ordered if i.category and i.category != GENERAL), GENERAL)
        return primary.model_copy(
            update={
                "source": InsightSource.HYBRID.value,
                "confidence": merged_confidence([i.confidence for i in insights]),
                "details": combine_details(primary.details, [i.details for i in others]),
                "category": category,
                "source_insights": tuple(
                    SourceInsightRef(
                        source=i.source, original_id=i.original_id, confidence=i.confidence, title=i.title
                    )
                    for i in insights
                ),
            }
        )

    def _sort_key(self, insight: Insight) -> tuple[int, float, float]:
        if self.config.prioritize_ai:
            rank = {"ai": 0, "hybrid": 1, "rules": 2}.get(insight.source, 3)
        else:
            rank = 0
        return (rank, -(insight.priority or 0.0), -insight.confidence)

    def merge_section(self, rule_items: list[Insight], llm_items: list[Insight]) -> tuple[list[Insight], int]:
        """
        Returns:
            (sorted section before capping, number of duplicates folded)
        """
        pairs = self.match_section(rule_items, llm_items)
        matched_rules = {rule_index: llm_index for rule_index, llm_index in pairs}
        matched_llm = set(matched_rules.values())

        merged: list[Insight] = []
        for rule_index, rule_insight in enumerate(rule_items):
            if rule_index in matched_rules:
                merged.append(self.merge_similar([rule_insight, llm_items[matched_rules[rule_index]]]))
            else:
                merged.append(rule_insight)
        merged.extend(insight for index, insight in enumerate(llm_items) if index not in matched_llm)
        return sorted(merged, key=self._sort_key), len(pairs)

    def merge_insights(self, rule_based: Any, llm: Any) -> MergeResult:
        """
        Merge rule-based and LLM insights.

        Args:
            rule_based: Rule engine output (InsightSections or dict), may be None
            llm: LLM analysis output (AnalysisResult, InsightSections or dict), may be None

        Returns:
            MergeResult with merge_metadata and, when categorization is on,
            category_statistics

        Side Effects:
            - Increments insights.duplicates telemetry counter
        """
        rules = self.normalize(rule_based, InsightSource.RULES.value)
        ai = self.normalize(llm, InsightSource.AI.value)

        sections: dict[str, tuple[Insight, ...]] = {}
        duplicates = 0
        uncapped_total = 0
        for name in SECTION_KEYS:
            merged, found = self.merge_section(rules[name], ai[name])
            duplicates += found
            uncapped_total += len(merged)
            capped = merged[: self.config.max_insights_per_category]
            if self.categorizer is not None:
                capped = self.categorizer.categorize_insights(capped)
            sections[name] = tuple(capped)

        total_rules = sum(len(items) for items in rules.values())
        total_llm = sum(len(items) for items in ai.values())
        if duplicates:
            counter("insights.duplicates", duplicates)

        merge_metadata = {
            "total_rule_based": total_rules,
            "total_llm": total_llm,
            "total_merged": uncapped_total,
            "total_after_cap": sum(len(items) for items in sections.values()),
            "duplicates_found": duplicates,
            "categorized": self.categorizer is not None,
            "merged_at": datetime.now(UTC).isoformat(),
            "config": asdict(self.config),
        }
        log_event(
            "insights.merged",
            rules=total_rules,
            llm=total_llm,
            merged=uncapped_total,
            duplicates=duplicates,
        )

        category_statistics = None
        if self.categorizer is not None:
            everything = [insight for items in sections.values() for insight in items]
            category_statistics = self.categorizer.get_category_statistics(everything)

        analysis_metadata = getattr(llm, "analysis_metadata", None) or {}
        return MergeResult(
            **sections,
            merge_metadata=merge_metadata,
            category_statistics=category_statistics,
            analysis_metadata=dict(analysis_metadata),
        )

    # ------------------------------------------------------------------
    # Post-merge views
    # ------------------------------------------------------------------

    def filter_insights(self, result: MergeResult, **filters: Any) -> MergeResult:
        """Apply InsightCategorizer.filter_insights to every section."""
        if self.categorizer is None:
            logger.warning("Categorizer not enabled, returning unfiltered insights")
            return result
        return result.model_copy(
            update={
                name: tuple(self.categorizer.filter_insights(items, **filters))
                for name, items in result.sections().items()
            }
        )

    def sort_insights(
        self, result: MergeResult, by: str = "priority", descending: bool = True, secondary: str | None = "confidence"
    ) -> MergeResult:
        if self.categorizer is None:
            logger.warning("Categorizer not enabled, returning unsorted insights")
            return result
        return result.model_copy(
            update={
                name: tuple(self.categorizer.sort_insights(items, by, descending, secondary))
                for name, items in result.sections().items()
            }
        )

    def get_available_categories(self) -> list[dict[str, str]]:
        return self.categorizer.get_available_categories() if self.categorizer else []
