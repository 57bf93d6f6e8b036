"""
Provider and sanitizer protocols.

The orchestrator only talks to LLM vendors and to the PII sanitizer through
these protocols. Concrete providers live in retroq.llm.providers; the
sanitizer rule set is supplied by the host application.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, TypedDict, Union

from retroq.contracts.insights import InsightSections


@dataclass(frozen=True)
class RawText:
    """Unparsed text returned by a provider that could not structure its output."""

    text: str
    provider: str | None = None


# A provider either parsed its own output or hands back raw text
ProviderResponse = Union[InsightSections, RawText]


class ChunkSummary(TypedDict, total=False):
    summary: str
    source: str | None
    part: str | None
    chunk_id: str
    degraded: bool
    error: str


class LLMProvider(Protocol):
    """Protocol implemented once per LLM vendor."""

    async def generate_insights(self, sanitized_data: dict[str, Any], context: dict[str, Any]) -> ProviderResponse:
        """Analyze team data and return structured insights (or raw text).

        Raises:
            Exception: provider-specific failure; the analyzer classifies it
        """
        ...

    async def generate_chunk_summary(self, chunk_data: dict[str, Any], context: dict[str, Any]) -> ChunkSummary:
        """Summarize one temporal chunk for progressive analysis."""
        ...

    def estimate_token_count(self, text: str) -> int: ...

    def get_model(self) -> str: ...

    def get_provider_name(self) -> str: ...

    async def validate_connection(self) -> bool: ...


@dataclass
class SanitizationReport:
    is_clean: bool
    violations: list[str] = field(default_factory=list)


class Sanitizer(Protocol):
    """PII sanitizer applied before any data leaves the process."""

    def sanitize_team_data(self, data: dict[str, Any]) -> dict[str, Any]: ...

    def validate_sanitization(self, data: dict[str, Any]) -> SanitizationReport: ...
