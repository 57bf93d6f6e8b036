"""Chronological chunking of team activity for progressive analysis."""

from retroq.temporal.chunker import (
    ChunkConfig,
    TemporalAnalysis,
    TemporalChunk,
    TemporalChunker,
    TemporalEvent,
    extract_events,
)

__all__ = [
    "ChunkConfig",
    "TemporalAnalysis",
    "TemporalChunk",
    "TemporalChunker",
    "TemporalEvent",
    "extract_events",
]
