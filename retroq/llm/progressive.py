"""
Progressive analysis for team data too large for one prompt.

The data is cut into temporal chunks; each chunk is summarized by the
provider on its own, then one final temporal_aggregation call turns the
summaries plus cross-chunk trends into retro insights. A failed chunk is
kept as a degraded placeholder so one bad window does not sink the run.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from retroq.contracts.providers import ChunkSummary, LLMProvider, ProviderResponse
from retroq.llm.progress import AI_ANALYSIS, ProgressTracker
from retroq.llm.prompt_builder import TEMPORAL_AGGREGATION, Prompt, PromptBuilder
from retroq.observability.logging import get_logger
from retroq.observability.telemetry import counter
from retroq.temporal.chunker import TemporalAnalysis, TemporalChunk, TemporalChunker

logger = get_logger(__name__)

T = TypeVar("T")

# (call factory, label) -> result, with retry and timeout applied
RetryRunner = Callable[[Callable[[], Awaitable[T]], str], Awaitable[T]]

MAX_TREND_CORRELATIONS = 10
# Relative change between halves below which activity counts as stable
TREND_TOLERANCE = 0.2
BOOLEAN_PATTERNS = ("has_code_review", "has_issue_resolution", "has_team_discussion", "has_deployment_activity")


@dataclass
class ProgressiveOutcome:
    response: ProviderResponse
    prompt: Prompt
    chunk_stats: dict[str, Any] = field(default_factory=dict)


def activity_trend(counts: Sequence[int]) -> str:
    """Compare the first and second half of the per-chunk event counts."""
    if len(counts) < 2:
        return "stable"
    middle = len(counts) // 2
    first = sum(counts[:middle]) / middle
    second = sum(counts[middle:]) / (len(counts) - middle)
    if first == 0:
        return "increasing" if second > 0 else "stable"
    change = (second - first) / first
    if change > TREND_TOLERANCE:
        return "increasing"
    if change < -TREND_TOLERANCE:
        return "decreasing"
    return "stable"


def aggregate_trends(chunks: Sequence[TemporalChunk]) -> dict[str, Any]:
    """Cross-chunk trends: activity direction, busiest window, pattern frequency, correlations."""
    if not chunks:
        return {"activity_trend": "stable", "busiest_window": None, "pattern_frequencies": {}, "correlations": []}

    counts = [chunk.event_count for chunk in chunks]
    busiest = max(chunks, key=lambda chunk: chunk.event_count)
    frequencies = {name: sum(1 for chunk in chunks if chunk.patterns.get(name)) for name in BOOLEAN_PATTERNS}

    working_hours: Counter[str] = Counter()
    correlations: list[dict[str, Any]] = []
    for chunk in chunks:
        working_hours.update(chunk.patterns.get("working_hours") or {})
        for correlation in chunk.patterns.get("correlations") or ():
            if len(correlations) < MAX_TREND_CORRELATIONS:
                correlations.append({**correlation, "chunk_id": chunk.id})

    return {
        "activity_trend": activity_trend(counts),
        "events_per_chunk": counts,
        "busiest_window": {
            "chunk_id": busiest.id,
            "time_range": busiest.time_range,
            "event_count": busiest.event_count,
        },
        "pattern_frequencies": frequencies,
        "working_hours": dict(working_hours),
        "correlations": correlations,
    }


def degraded_summary(chunk: TemporalChunk, error: BaseException) -> ChunkSummary:
    return {
        "summary": "",
        "chunk_id": chunk.id,
        "source": "temporal",
        "part": chunk.id,
        "degraded": True,
        "error": str(error),
    }


class ProgressiveAnalyzer:
    """
    Chunk, summarize and aggregate.

    Args:
        provider: LLM provider used for chunk summaries and the final call
        prompt_builder: Builds the aggregation prompt
        run_with_retry: Analyzer's retry/timeout wrapper
        chunker: TemporalChunker (default config unless given)
    """

    def __init__(
        self,
        provider: LLMProvider,
        prompt_builder: PromptBuilder,
        run_with_retry: RetryRunner,
        chunker: TemporalChunker | None = None,
    ):
        self.provider = provider
        self.prompt_builder = prompt_builder
        self.run_with_retry = run_with_retry
        self.chunker = chunker or TemporalChunker()

    async def summarize_chunks(
        self,
        chunks: Sequence[TemporalChunk],
        context: dict[str, Any],
        progress: ProgressTracker | None = None,
    ) -> list[ChunkSummary]:
        """
        One summary per chunk, in chunk order.

        Side Effects:
            - Increments llm.chunk.failed for every degraded chunk
        """
        summaries: list[ChunkSummary] = []
        total = len(chunks)
        for position, chunk in enumerate(chunks):
            chunk_context = {
                **context,
                "source": "temporal",
                "part": f"{position + 1}/{total}",
                "chunk_id": chunk.id,
                "temporal_chunk": {
                    "time_range": chunk.time_range,
                    "event_count": chunk.event_count,
                    "patterns": dict(chunk.patterns),
                },
            }
            payload = chunk.to_payload()
            try:
                summary = await self.run_with_retry(
                    lambda payload=payload, chunk_context=chunk_context: self.provider.generate_chunk_summary(
                        payload, chunk_context
                    ),
                    f"chunk_summary_{chunk.id}",
                )
                summaries.append({**summary, "chunk_id": chunk.id})
            except Exception as exc:
                logger.warning("Chunk %s summary failed, continuing degraded: %s", chunk.id, exc)
                counter("llm.chunk.failed")
                summaries.append(degraded_summary(chunk, exc))

            if progress is not None:
                progress.update_step_progress(
                    AI_ANALYSIS,
                    0.8 * (position + 1) / total,
                    f"Summarized chunk {position + 1}/{total}",
                )
        return summaries

    def build_aggregation_payload(
        self, analysis: TemporalAnalysis, summaries: Sequence[ChunkSummary]
    ) -> dict[str, Any]:
        return {
            "chunk_summaries": [
                {
                    "chunk_id": summary.get("chunk_id"),
                    "time_range": chunk.time_range,
                    "event_count": chunk.event_count,
                    "summary": summary.get("summary", ""),
                    "degraded": bool(summary.get("degraded")),
                }
                for chunk, summary in zip(analysis.chunks, summaries)
            ],
            "trends": aggregate_trends(analysis.chunks),
            "totals": {
                "total_events": analysis.total_events,
                "events_in_range": analysis.filtered_events,
                "chunks": len(analysis.chunks),
            },
        }

    async def analyze(
        self,
        team_data: dict[str, Any],
        date_range: dict[str, Any] | None,
        context: dict[str, Any],
        progress: ProgressTracker | None = None,
    ) -> ProgressiveOutcome:
        """
        Run the progressive strategy end to end.

        Raises:
            Exception: only from the final aggregation call (after retries)
        """
        config = self.chunker.config
        analysis = self.chunker.process_temporal_data(team_data, date_range, config)
        if analysis.chunks:
            advice = self.chunker.get_optimal_chunk_config(
                [event for chunk in analysis.chunks for event in chunk.events], date_range
            )
            logger.info("Chunk size advice: %s", advice.get("reason"))

        summaries = await self.summarize_chunks(analysis.chunks, context, progress)
        degraded = sum(1 for summary in summaries if summary.get("degraded"))

        payload = self.build_aggregation_payload(analysis, summaries)
        aggregation_context = {
            **context,
            "analysis_type": TEMPORAL_AGGREGATION,
            "total_chunks": len(analysis.chunks),
        }
        prompt = self.prompt_builder.build_prompt(payload, aggregation_context)
        aggregation_context["prompt"] = prompt

        response = await self.run_with_retry(
            lambda: self.provider.generate_insights(payload, aggregation_context),
            "temporal_aggregation",
        )
        chunk_stats = {
            "total_chunks": len(analysis.chunks),
            "degraded_chunks": degraded,
            "total_events": analysis.total_events,
            "events_in_range": analysis.filtered_events,
            "chunk_config": config.to_dict(),
        }
        logger.info(
            "Progressive analysis: %d chunks (%d degraded), %d events",
            chunk_stats["total_chunks"],
            degraded,
            analysis.total_events,
        )
        return ProgressiveOutcome(response=response, prompt=prompt, chunk_stats=chunk_stats)
