"""
Insight data contracts shared by the analyzer, parser, merger and API.

Insights cross several boundaries (LLM JSON, rule engine dicts, HTTP
responses) so they are pydantic models: unknown keys coming back from a
model are kept as extras, camelCase keys are accepted by alias, and every
instance is frozen. Updating an insight always goes through model_copy.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Wire names of the three retro sections, keyed by model field name
SECTION_KEYS: dict[str, str] = {
    "went_well": "wentWell",
    "didnt_go_well": "didntGoWell",
    "action_items": "actionItems",
}


class InsightSource(str, Enum):
    """Where an insight came from."""

    RULES = "rules"
    AI = "ai"
    HYBRID = "hybrid"


class Level(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def _coerce_confidence(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    # Some models answer in percent
    if 1.0 < number <= 100.0:
        number = number / 100.0
    return max(0.0, min(1.0, number))


class SourceInsightRef(BaseModel):
    """Copy of one original insight that was folded into a hybrid."""

    model_config = ConfigDict(frozen=True)

    source: str
    original_id: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    title: str


class Insight(BaseModel):
    """A single retrospective finding."""

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    title: str = "Untitled insight"
    details: str = ""
    source: str = InsightSource.RULES.value
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    category: str | None = None
    impact: Level | None = None
    urgency: Level | None = None
    priority: float | None = Field(default=None, ge=0.0, le=1.0)
    priority_label: Level | None = Field(default=None, alias="priorityLabel")
    source_insights: tuple[SourceInsightRef, ...] | None = Field(default=None, alias="sourceInsights")
    reasoning: str | None = None
    llm_provider: str | None = Field(default=None, alias="llmProvider")
    llm_model: str | None = Field(default=None, alias="llmModel")
    original_id: str | None = Field(default=None, alias="originalId")
    category_metadata: dict[str, Any] | None = Field(default=None, alias="categoryMetadata")
    assignee: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_raw(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"title": data, "details": data}
        if not isinstance(data, dict):
            return data

        raw = dict(data)
        # Action items from models carry "priority": "high" | "medium" | "low"
        priority = raw.get("priority")
        if isinstance(priority, str):
            label = priority.strip().lower()
            raw.pop("priority")
            if label in (level.value for level in Level):
                raw.setdefault("priority_label", label)

        if not raw.get("details") and raw.get("description"):
            raw["details"] = raw["description"]

        if "confidence" in raw:
            coerced = _coerce_confidence(raw["confidence"])
            if coerced is None:
                raw.pop("confidence")
            else:
                raw["confidence"] = coerced

        for key in ("impact", "urgency"):
            value = raw.get(key)
            if isinstance(value, str):
                value = value.strip().lower()
                raw[key] = value if value in (level.value for level in Level) else None

        for key in ("title", "details"):
            if raw.get(key) is None:
                raw.pop(key, None)
        return raw

    @property
    def text(self) -> str:
        """Title and details joined, lowercased, for keyword matching."""
        return f"{self.title} {self.details}".lower()


class InsightSections(BaseModel):
    """The three retro sections. Also the parsed form of a provider response."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    went_well: tuple[Insight, ...] = Field(default=(), alias="wentWell")
    didnt_go_well: tuple[Insight, ...] = Field(default=(), alias="didntGoWell")
    action_items: tuple[Insight, ...] = Field(default=(), alias="actionItems")
    metadata: dict[str, Any] = Field(default_factory=dict)

    def sections(self) -> dict[str, tuple[Insight, ...]]:
        return {name: getattr(self, name) for name in SECTION_KEYS}

    def total(self) -> int:
        return sum(len(items) for items in self.sections().values())

    def counts(self) -> dict[str, int]:
        return {name: len(items) for name, items in self.sections().items()}

    @classmethod
    def empty(cls, **metadata: Any) -> InsightSections:
        return cls(metadata=dict(metadata))


# Parsed form of a provider response
ParsedInsights = InsightSections


class AnalysisResult(InsightSections):
    """LLM insights with the analyzer's run metadata attached."""

    analysis_metadata: dict[str, Any] = Field(default_factory=dict, alias="analysisMetadata")


class MergeResult(InsightSections):
    """Final report sections after merging rule-based and LLM insights."""

    merge_metadata: dict[str, Any] = Field(default_factory=dict, alias="mergeMetadata")
    category_statistics: dict[str, Any] | None = Field(default=None, alias="categoryStatistics")
    analysis_metadata: dict[str, Any] = Field(default_factory=dict, alias="analysisMetadata")
