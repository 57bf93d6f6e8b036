"""
Pytest configuration shared across unit and integration tests

Provides sample team activity, a scripted fake LLM provider and telemetry
isolation.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any

import pytest

from retroq.contracts.insights import InsightSections
from retroq.observability.telemetry import reset_counters, reset_latencies


class FakeProvider:
    """
    Scripted stand-in for an LLM provider.

    responses / chunk_responses are consumed in order; the last entry repeats
    once the list runs out. An exception instance is raised instead of
    returned. delay_seconds makes every call sleep first (for timeouts).
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        chunk_responses: list[Any] | None = None,
        name: str = "gemini",
        model: str = "gemini-2.5-flash",
        connected: bool = True,
        delay_seconds: float = 0.0,
    ):
        self.responses = list(responses) if responses is not None else [default_sections()]
        self.chunk_responses = list(chunk_responses) if chunk_responses is not None else []
        self.name = name
        self.model = model
        self.connected = connected
        self.delay_seconds = delay_seconds
        self.calls: list[tuple[dict[str, Any], dict[str, Any]]] = []
        self.chunk_calls: list[tuple[dict[str, Any], dict[str, Any]]] = []

    @staticmethod
    def _next(queue: list[Any]) -> Any:
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return item

    async def generate_insights(self, sanitized_data: dict[str, Any], context: dict[str, Any]) -> Any:
        self.calls.append((sanitized_data, context))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return self._next(self.responses)

    async def generate_chunk_summary(self, chunk_data: dict[str, Any], context: dict[str, Any]) -> Any:
        self.chunk_calls.append((chunk_data, context))
        if not self.chunk_responses:
            return {
                "summary": f"{len(chunk_data.get('events', []))} events in {context.get('chunk_id')}",
                "source": context.get("source"),
                "part": context.get("part"),
            }
        return self._next(self.chunk_responses)

    def estimate_token_count(self, text: str) -> int:
        return math.ceil(len(text or "") / 4)

    def get_model(self) -> str:
        return self.model

    def get_provider_name(self) -> str:
        return self.name

    async def validate_connection(self) -> bool:
        return self.connected


def default_sections() -> InsightSections:
    return InsightSections.model_validate(
        {
            "wentWell": [
                {
                    "title": "Fast code review turnaround",
                    "details": "Pull requests were reviewed within a few hours on average",
                    "confidence": 0.9,
                }
            ],
            "didntGoWell": [
                {
                    "title": "Flaky deployment pipeline",
                    "details": "Two production deploys failed because of flaky integration tests",
                }
            ],
            "actionItems": [
                {
                    "title": "Stabilize integration tests",
                    "details": "Quarantine flaky tests and fix the top offenders",
                    "priority": "high",
                }
            ],
        }
    )


@pytest.fixture(autouse=True)
def _isolate_telemetry():
    reset_counters()
    reset_latencies()
    yield
    reset_counters()
    reset_latencies()


@pytest.fixture
def date_range() -> dict[str, str]:
    return {"start": "2024-01-01T00:00:00Z", "end": "2024-01-07T23:59:59Z"}


@pytest.fixture
def team_data() -> dict[str, Any]:
    """One week of activity across all three sources."""
    return {
        "github": {
            "commits": [
                {
                    "sha": "a1",
                    "message": "Fix flaky login test",
                    "author": "dev1",
                    "commit": {"author": {"date": "2024-01-02T10:00:00Z"}},
                },
                {
                    "sha": "a2",
                    "message": "Add deploy script for production",
                    "author": "dev2",
                    "commit": {"author": {"date": "2024-01-02T10:30:00Z"}},
                },
                {
                    "sha": "a3",
                    "message": "Refactor billing service",
                    "author": "dev1",
                    "date": "2024-01-05T15:00:00Z",
                },
            ],
            "pullRequests": [
                {
                    "number": 12,
                    "title": "Login test fix",
                    "user": {"login": "dev1"},
                    "created_at": "2024-01-02T11:00:00Z",
                    "merged_at": "2024-01-02T14:00:00Z",
                },
            ],
        },
        "linear": {
            "issues": [
                {
                    "id": "LIN-1",
                    "title": "Login fails on Safari",
                    "createdAt": "2024-01-01T09:00:00Z",
                    "updatedAt": "2024-01-02T15:00:00Z",
                    "completedAt": "2024-01-02T15:00:00Z",
                    "assignee": {"name": "dev1"},
                },
            ],
        },
        "slack": {
            "messages": [
                {"ts": "1704189600.000100", "user": "U1", "text": "Login fix is deployed"},
                {"ts": "1704456000.000200", "user": "U2", "text": "Billing refactor review please"},
            ],
        },
    }


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_provider():
    """Factory for FakeProvider with custom scripted responses."""
    return FakeProvider
