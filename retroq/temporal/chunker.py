"""
Chronological chunking of team activity.

Flattens GitHub, Linear and Slack payloads into timestamped events, then
cuts the timeline into windows (default 24h with 2h overlap) for
progressive analysis. Each chunk carries counts, activity metrics and
simple patterns so the aggregation step can reason about trends without
re-reading raw events.

Times are epoch seconds (UTC). Working-hour buckets use UTC hours.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from retroq.observability.logging import get_logger
from retroq.utils.timestamps import isoformat, to_epoch_seconds

logger = get_logger(__name__)

HOUR = 3600.0
CORRELATION_WINDOW_SECONDS = HOUR
MAX_CORRELATIONS = 5
EVENT_TITLE_CHARS = 200


@dataclass(frozen=True)
class TemporalEvent:
    timestamp: float
    source: str
    type: str
    data: Mapping[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    title: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"time": isoformat(self.timestamp), "source": self.source, "type": self.type}
        if self.title:
            payload["title"] = self.title[:EVENT_TITLE_CHARS]
        return payload


@dataclass(frozen=True)
class ChunkConfig:
    chunk_size_hours: float = 24
    min_chunk_size_hours: float = 4
    max_chunk_size_hours: float = 72
    overlap_hours: float = 2

    @property
    def effective_chunk_hours(self) -> float:
        return max(self.min_chunk_size_hours, min(self.max_chunk_size_hours, self.chunk_size_hours))

    def to_dict(self) -> dict[str, float]:
        return {
            "chunk_size_hours": self.effective_chunk_hours,
            "min_chunk_size_hours": self.min_chunk_size_hours,
            "max_chunk_size_hours": self.max_chunk_size_hours,
            "overlap_hours": self.overlap_hours,
        }


@dataclass(frozen=True)
class TemporalChunk:
    id: str
    index: int
    start_time: float
    end_time: float
    events: tuple[TemporalEvent, ...]
    has_overlap: bool = False
    overlap_events: int = 0
    events_by_source: Mapping[str, int] = field(default_factory=dict)
    events_by_type: Mapping[str, int] = field(default_factory=dict)
    activity_metrics: Mapping[str, Any] = field(default_factory=dict)
    patterns: Mapping[str, Any] = field(default_factory=dict)
    summary: Mapping[str, Any] = field(default_factory=dict)
    context: Mapping[str, Any] = field(default_factory=dict)

    @property
    def event_count(self) -> int:
        return len(self.events)

    @property
    def duration_hours(self) -> float:
        return (self.end_time - self.start_time) / HOUR

    @property
    def time_range(self) -> str:
        return f"{isoformat(self.start_time)} - {isoformat(self.end_time)}"

    def to_payload(self) -> dict[str, Any]:
        """Compact, JSON-ready view sent to the model for chunk summaries."""
        return {
            "chunk_id": self.id,
            "time_range": self.time_range,
            "event_count": self.event_count,
            "events_by_source": dict(self.events_by_source),
            "events_by_type": dict(self.events_by_type),
            "activity_metrics": dict(self.activity_metrics),
            "patterns": dict(self.patterns),
            "events": [event.to_payload() for event in self.events],
        }


@dataclass(frozen=True)
class TemporalAnalysis:
    chunks: tuple[TemporalChunk, ...]
    total_events: int
    filtered_events: int
    config: ChunkConfig
    processed_at: str


def _first_line(text: Any) -> str | None:
    if not isinstance(text, str) or not text:
        return None
    return text.strip().splitlines()[0] if text.strip() else None


def _login(value: Any) -> str | None:
    if isinstance(value, Mapping):
        return value.get("login") or value.get("name")
    return value if isinstance(value, str) else None


def _event(timestamp: Any, source: str, event_type: str, data: Mapping[str, Any], user: Any, title: Any):
    seconds = to_epoch_seconds(timestamp)
    if seconds is None:
        return None
    return TemporalEvent(
        timestamp=seconds,
        source=source,
        type=event_type,
        data=MappingProxyType(dict(data)),
        user_id=user if isinstance(user, str) else None,
        title=title if isinstance(title, str) else None,
    )


def extract_events(team_data: Mapping[str, Any] | None) -> list[TemporalEvent]:
    """
    Flatten team data into events. Items without a parseable timestamp are skipped.

    Returns:
        Events in source order (not sorted)
    """
    team_data = team_data or {}
    candidates: list[TemporalEvent | None] = []

    github = team_data.get("github") or {}
    for commit in github.get("commits") or []:
        inner = commit.get("commit") or {}
        author = inner.get("author") or {}
        message = inner.get("message") or commit.get("message")
        candidates.append(
            _event(
                author.get("date") or commit.get("date"),
                "github",
                "github_commit",
                {"sha": commit.get("sha"), "message": message, "repo": commit.get("repo")},
                author.get("name") or _login(commit.get("author")),
                _first_line(message),
            )
        )

    for pr in github.get("pullRequests") or []:
        user = _login(pr.get("user"))
        data = {"number": pr.get("number"), "state": pr.get("state"), "repo": pr.get("repo")}
        candidates.append(_event(pr.get("created_at"), "github", "github_pr_created", data, user, pr.get("title")))
        if pr.get("merged_at"):
            candidates.append(_event(pr["merged_at"], "github", "github_pr_merged", data, user, pr.get("title")))
        elif pr.get("closed_at") and pr.get("state") == "closed":
            candidates.append(_event(pr["closed_at"], "github", "github_pr_closed", data, user, pr.get("title")))

    linear = team_data.get("linear") or {}
    for issue in linear.get("issues") or []:
        assignee = _login(issue.get("assignee"))
        state = issue.get("state")
        data = {
            "id": issue.get("id"),
            "state": state.get("name") if isinstance(state, Mapping) else state,
            "priority": issue.get("priority"),
        }
        title = issue.get("title")
        candidates.append(_event(issue.get("createdAt"), "linear", "linear_issue_created", data, assignee, title))
        if issue.get("completedAt"):
            candidates.append(
                _event(issue["completedAt"], "linear", "linear_issue_completed", data, assignee, title)
            )
        created = to_epoch_seconds(issue.get("createdAt"))
        updated = to_epoch_seconds(issue.get("updatedAt"))
        if updated is not None and updated != created:
            candidates.append(_event(updated, "linear", "linear_issue_updated", data, assignee, title))

    slack = team_data.get("slack") or {}
    for message in slack.get("messages") or []:
        data = {
            "channel": message.get("channel"),
            "reply_count": message.get("reply_count") or 0,
            "thread_ts": message.get("thread_ts"),
        }
        candidates.append(
            _event(
                message.get("ts") or message.get("timestamp"),
                "slack",
                "slack_message",
                data,
                message.get("user"),
                message.get("text"),
            )
        )

    events = [event for event in candidates if event is not None]
    skipped = len(candidates) - len(events)
    if skipped:
        logger.info("Skipped %d events without a valid timestamp", skipped)
    return events


def _range_bounds(date_range: Mapping[str, Any] | None) -> tuple[float | None, float | None]:
    if not date_range:
        return None, None
    return to_epoch_seconds(date_range.get("start")), to_epoch_seconds(date_range.get("end"))


def filter_events(events: Iterable[TemporalEvent], date_range: Mapping[str, Any] | None) -> list[TemporalEvent]:
    """Events inside [start, end] (inclusive), sorted ascending by time."""
    start, end = _range_bounds(date_range)
    kept = [
        event
        for event in events
        if (start is None or event.timestamp >= start) and (end is None or event.timestamp <= end)
    ]
    return sorted(kept, key=lambda event: event.timestamp)


def activity_metrics(events: tuple[TemporalEvent, ...]) -> dict[str, Any]:
    sources = Counter(event.source for event in events)
    spread = (events[-1].timestamp - events[0].timestamp) / HOUR if events else 0.0
    return {
        "total_events": len(events),
        "unique_users": len({event.user_id for event in events if event.user_id}),
        "code_activity": sources.get("github", 0),
        "project_activity": sources.get("linear", 0),
        "communication_activity": sources.get("slack", 0),
        "time_spread_hours": round(spread, 2),
    }


def _hour_bucket(timestamp: float) -> str:
    hour = datetime.fromtimestamp(timestamp, tz=UTC).hour
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def find_correlations(events: tuple[TemporalEvent, ...]) -> list[dict[str, Any]]:
    """Up to 5 cross-platform event pairs within one hour of each other."""
    correlations: list[dict[str, Any]] = []
    for i, first in enumerate(events):
        for second in events[i + 1 :]:
            gap = second.timestamp - first.timestamp
            if gap > CORRELATION_WINDOW_SECONDS:
                break
            if first.source == second.source:
                continue
            correlations.append(
                {
                    "type": "cross_platform",
                    "first": {"type": first.type, "source": first.source},
                    "second": {"type": second.type, "source": second.source},
                    "gap_minutes": round(gap / 60),
                    "description": f"{first.type} followed by {second.type} within {round(gap / 60)} minutes",
                }
            )
            if len(correlations) >= MAX_CORRELATIONS:
                return correlations
    return correlations


def identify_patterns(events: tuple[TemporalEvent, ...]) -> dict[str, Any]:
    working_hours = {"morning": 0, "afternoon": 0, "evening": 0, "night": 0}
    for event in events:
        working_hours[_hour_bucket(event.timestamp)] += 1

    return {
        "has_code_review": any("_pr_" in event.type for event in events),
        "has_issue_resolution": any(event.type == "linear_issue_completed" for event in events),
        "has_team_discussion": any(event.source == "slack" and event.data.get("reply_count") for event in events),
        "has_deployment_activity": any(
            event.type == "github_commit" and "deploy" in str(event.data.get("message") or "").lower()
            for event in events
        ),
        "working_hours": working_hours,
        "correlations": find_correlations(events),
    }


class TemporalChunker:
    """
    Splits events into chronological windows.

    Window i covers [start_i - overlap, end_i) for i > 0 and [start_0, end_0)
    for the first; the last window also includes events exactly at its end.
    """

    def __init__(self, config: ChunkConfig | None = None):
        self.config = config or ChunkConfig()

    def chunk(
        self,
        events_or_team_data: Iterable[TemporalEvent] | Mapping[str, Any],
        date_range: Mapping[str, Any] | None = None,
        config: ChunkConfig | None = None,
    ) -> list[TemporalChunk]:
        config = config or self.config
        if isinstance(events_or_team_data, Mapping):
            events = extract_events(events_or_team_data)
        else:
            events = list(events_or_team_data)
        ordered = filter_events(events, date_range)
        if not ordered:
            return []

        range_start, range_end = _range_bounds(date_range)
        start = ordered[0].timestamp if range_start is None else max(ordered[0].timestamp, range_start)
        end = ordered[-1].timestamp if range_end is None else min(ordered[-1].timestamp, range_end)

        size = config.effective_chunk_hours * HOUR
        overlap = max(0.0, config.overlap_hours) * HOUR
        min_size = config.min_chunk_size_hours * HOUR

        if end <= start:
            # Every event shares one instant
            raw = [self._window(0, start, end, ordered, start, inclusive_end=True)]
        else:
            raw = []
            current = start
            while current < end:
                window_end = min(current + size, end)
                index = len(raw)
                lower = current - overlap if index > 0 else current
                window = self._window(index, current, window_end, ordered, lower, inclusive_end=window_end >= end)
                if window.events or window_end - current >= min_size:
                    raw.append(window)
                current = window_end

        return self._enrich(raw)

    @staticmethod
    def _window(
        index: int, start: float, end: float, events: list[TemporalEvent], lower: float, inclusive_end: bool
    ) -> TemporalChunk:
        selected = tuple(
            event
            for event in events
            if event.timestamp >= lower and (event.timestamp < end or (inclusive_end and event.timestamp <= end))
        )
        return TemporalChunk(
            id=f"chunk_{index}",
            index=index,
            start_time=start,
            end_time=end,
            events=selected,
            has_overlap=index > 0,
            overlap_events=sum(1 for event in selected if event.timestamp < start) if index > 0 else 0,
        )

    @staticmethod
    def _enrich(chunks: list[TemporalChunk]) -> list[TemporalChunk]:
        enriched = []
        for position, chunk in enumerate(chunks):
            by_source = Counter(event.source for event in chunk.events)
            metrics = activity_metrics(chunk.events)
            source_counts = ", ".join(f"{count} {source}" for source, count in by_source.items())
            enriched.append(
                replace(
                    chunk,
                    events_by_source=MappingProxyType(dict(by_source)),
                    events_by_type=MappingProxyType(dict(Counter(event.type for event in chunk.events))),
                    activity_metrics=MappingProxyType(metrics),
                    patterns=MappingProxyType(identify_patterns(chunk.events)),
                    summary=MappingProxyType(
                        {
                            "time_range": chunk.time_range,
                            "total_events": chunk.event_count,
                            "source_counts": source_counts,
                            "unique_users": metrics["unique_users"],
                            "description": f"{chunk.event_count} events from {metrics['unique_users']} users: {source_counts}",
                        }
                    ),
                    context=MappingProxyType(
                        {
                            "is_first_chunk": position == 0,
                            "is_last_chunk": position == len(chunks) - 1,
                            "previous_chunk": chunks[position - 1].id if position > 0 else None,
                            "next_chunk": chunks[position + 1].id if position < len(chunks) - 1 else None,
                        }
                    ),
                )
            )
        return enriched

    def process_temporal_data(
        self, team_data: Mapping[str, Any], date_range: Mapping[str, Any] | None = None, config: ChunkConfig | None = None
    ) -> TemporalAnalysis:
        """Extract, filter and chunk team data in one pass."""
        config = config or self.config
        events = extract_events(team_data)
        filtered = filter_events(events, date_range)
        chunks = self.chunk(filtered, date_range, config)
        logger.info(
            "Temporal processing: %d events (%d in range) -> %d chunks of %.0fh",
            len(events),
            len(filtered),
            len(chunks),
            config.effective_chunk_hours,
        )
        return TemporalAnalysis(
            chunks=tuple(chunks),
            total_events=len(events),
            filtered_events=len(filtered),
            config=config,
            processed_at=datetime.now(UTC).isoformat(),
        )

    @staticmethod
    def get_optimal_chunk_config(
        events: list[TemporalEvent], date_range: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Chunk size from event density: >10/h -> 12h, >2/h -> 24h, else 48h."""
        if not events:
            return {"chunk_size_hours": 24, "reason": "No events to analyze"}

        start, end = _range_bounds(date_range)
        if start is None or end is None:
            ordered = sorted(event.timestamp for event in events)
            start, end = ordered[0], ordered[-1]
        total_hours = max((end - start) / HOUR, 1.0)
        per_hour = len(events) / total_hours

        if per_hour > 10:
            size, reason = 12, "High activity detected, using 12-hour chunks for detailed analysis"
        elif per_hour > 2:
            size, reason = 24, "Medium activity detected, using 24-hour chunks"
        else:
            size, reason = 48, "Low activity detected, using 48-hour chunks to ensure sufficient context"

        return {
            "chunk_size_hours": size,
            "events_per_hour": round(per_hour, 2),
            "total_events": len(events),
            "total_hours": round(total_hours),
            "reason": reason,
        }
