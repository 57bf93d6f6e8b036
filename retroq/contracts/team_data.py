"""
Shapes of the raw team activity handed to the engine.

The fetching clients (GitHub, Linear, Slack) are external; these TypedDicts
document what the engine reads from their payloads. Items stay plain dicts
because each vendor adds fields we pass through untouched.
"""

from __future__ import annotations

from typing import Any, TypedDict


class GitHubData(TypedDict, total=False):
    commits: list[dict[str, Any]]
    pullRequests: list[dict[str, Any]]


class LinearData(TypedDict, total=False):
    issues: list[dict[str, Any]]


class SlackData(TypedDict, total=False):
    messages: list[dict[str, Any]]


class TeamData(TypedDict, total=False):
    github: GitHubData
    linear: LinearData
    slack: SlackData


class DateRange(TypedDict):
    start: str
    end: str


# source name -> list collections inside that source
SOURCE_COLLECTIONS: dict[str, tuple[str, ...]] = {
    "github": ("commits", "pullRequests"),
    "linear": ("issues",),
    "slack": ("messages",),
}


def present_sources(team_data: dict[str, Any] | None) -> list[str]:
    """Sources that carry at least one item, in canonical order."""
    if not team_data:
        return []
    present = []
    for source, collections in SOURCE_COLLECTIONS.items():
        payload = team_data.get(source) or {}
        if any(payload.get(name) for name in collections):
            present.append(source)
    return present


def count_items(team_data: dict[str, Any] | None) -> dict[str, int]:
    """Item count per collection, e.g. {"github.commits": 12, ...}."""
    counts: dict[str, int] = {}
    for source, collections in SOURCE_COLLECTIONS.items():
        payload = (team_data or {}).get(source) or {}
        for name in collections:
            counts[f"{source}.{name}"] = len(payload.get(name) or [])
    return counts
