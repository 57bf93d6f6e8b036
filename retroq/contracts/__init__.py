"""
Type contracts for RetroQ.

Data models and protocols shared across llm/, temporal/, insights/ and api/.
Concrete implementations depend on these modules, never the other way round.

Re-exports for convenience:
"""

from retroq.contracts.insights import (
    AnalysisResult,
    Insight,
    InsightSections,
    InsightSource,
    Level,
    MergeResult,
    ParsedInsights,
    SourceInsightRef,
)
from retroq.contracts.providers import (
    ChunkSummary,
    LLMProvider,
    ProviderResponse,
    RawText,
    SanitizationReport,
    Sanitizer,
)
from retroq.contracts.team_data import DateRange, TeamData, count_items, present_sources

__all__ = [
    "AnalysisResult",
    "ChunkSummary",
    "DateRange",
    "Insight",
    "InsightSections",
    "InsightSource",
    "LLMProvider",
    "Level",
    "MergeResult",
    "ParsedInsights",
    "ProviderResponse",
    "RawText",
    "SanitizationReport",
    "Sanitizer",
    "SourceInsightRef",
    "TeamData",
    "count_items",
    "present_sources",
]
