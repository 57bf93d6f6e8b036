"""
Step-based progress reporting for one analysis run.

The analyzer drives a ProgressTracker through its stages; callers subscribe
with add_listener() to receive (event, payload) callbacks such as
"step_started" or "completed". Times are milliseconds.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from retroq.observability.logging import get_logger

logger = get_logger(__name__)

ProgressListener = Callable[[str, dict[str, Any]], None]


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StepDefinition:
    name: str
    description: str
    estimated_duration_ms: float = 5000


@dataclass
class ProgressStep:
    index: int
    name: str
    description: str
    estimated_duration_ms: float
    status: StepStatus = StepStatus.PENDING
    start_ms: float | None = None
    end_ms: float | None = None
    step_progress: float = 0.0
    message: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float | None:
        if self.start_ms is None or self.end_ms is None:
            return None
        return self.end_ms - self.start_ms


DEFAULT_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition("Data Preparation", "Collecting and sanitizing team data", 3000),
    StepDefinition("Prompt Generation", "Creating optimized prompts for AI analysis", 2000),
    StepDefinition("AI Analysis", "Processing data with AI model", 15000),
    StepDefinition("Response Processing", "Parsing and validating AI insights", 2000),
    StepDefinition("Insight Merging", "Combining AI and rule-based insights", 1000),
)

# Indexes into DEFAULT_STEPS
DATA_PREPARATION = 0
PROMPT_GENERATION = 1
AI_ANALYSIS = 2
RESPONSE_PROCESSING = 3
INSIGHT_MERGING = 4


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class ProgressTracker:
    def __init__(self, session_id: str | None = None, clock: Callable[[], float] = _monotonic_ms):
        self.session_id = session_id
        self._clock = clock
        self.steps: list[ProgressStep] = []
        self.current_step = 0
        self.start_ms: float | None = None
        self.completed = False
        self.error: str | None = None
        self._listeners: list[ProgressListener] = []

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        payload = {"session_id": self.session_id, **payload}
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as exc:
                # A broken listener must not break the analysis
                logger.warning("Progress listener failed on %s: %s", event, exc)

    def _step(self, index: int) -> ProgressStep:
        if index < 0 or index >= len(self.steps):
            raise IndexError(f"Invalid step index: {index}")
        return self.steps[index]

    def initialize(self, steps: tuple[StepDefinition, ...] | list[StepDefinition] = DEFAULT_STEPS) -> None:
        """
        Reset the tracker with a fresh list of pending steps.

        Side Effects:
            - Emits "initialized"
        """
        self.steps = [
            ProgressStep(
                index=i, name=s.name, description=s.description, estimated_duration_ms=s.estimated_duration_ms
            )
            for i, s in enumerate(steps)
        ]
        self.current_step = 0
        self.start_ms = self._clock()
        self.completed = False
        self.error = None
        self._emit(
            "initialized",
            {"total_steps": len(self.steps), "steps": [{"name": s.name, "description": s.description} for s in self.steps]},
        )

    def start_step(self, index: int, metadata: dict[str, Any] | None = None) -> None:
        step = self._step(index)
        self.current_step = index
        step.status = StepStatus.IN_PROGRESS
        step.start_ms = self._clock()
        step.metadata = dict(metadata or {})
        self._emit(
            "step_started",
            {"step_index": index, "step": {"name": step.name, "metadata": step.metadata}, "progress": self.calculate_progress()},
        )

    def update_step_progress(self, index: int, step_progress: float, message: str | None = None) -> None:
        step = self._step(index)
        step.step_progress = max(0.0, min(1.0, step_progress))
        step.message = message
        self._emit(
            "step_progress",
            {"step_index": index, "step_progress": step.step_progress, "message": message, "progress": self.calculate_progress()},
        )

    def complete_step(self, index: int, result: dict[str, Any] | None = None) -> None:
        """
        Mark a step completed; completes the run once every step is settled.

        Side Effects:
            - Emits "step_completed" (and "completed" when all steps are done)
        """
        step = self._step(index)
        step.status = StepStatus.COMPLETED
        step.end_ms = self._clock()
        if step.start_ms is None:
            step.start_ms = step.end_ms
        step.step_progress = 1.0
        step.result = dict(result or {})
        self._emit(
            "step_completed",
            {
                "step_index": index,
                "step": {"name": step.name, "duration_ms": step.duration_ms, "result": step.result},
                "progress": self.calculate_progress(),
            },
        )
        if self.is_completed() and not self.completed:
            self.complete()

    def fail_step(self, index: int, error: BaseException | str) -> None:
        step = self._step(index)
        step.status = StepStatus.FAILED
        step.end_ms = self._clock()
        if step.start_ms is None:
            step.start_ms = step.end_ms
        step.error = str(error)
        self._emit(
            "step_failed",
            {
                "step_index": index,
                "step": {"name": step.name, "duration_ms": step.duration_ms, "error": step.error},
                "progress": self.calculate_progress(),
            },
        )

    def complete(self) -> None:
        self.completed = True
        total = self._clock() - self.start_ms if self.start_ms is not None else 0.0
        self._emit(
            "completed",
            {
                "total_duration_ms": total,
                "steps": [{"name": s.name, "status": s.status.value, "duration_ms": s.duration_ms} for s in self.steps],
            },
        )

    def fail(self, error: BaseException | str) -> None:
        self.error = str(error)
        self.completed = True
        self._emit(
            "failed",
            {
                "error": self.error,
                "completed_steps": sum(1 for s in self.steps if s.status == StepStatus.COMPLETED),
                "total_steps": len(self.steps),
            },
        )

    def is_completed(self) -> bool:
        return bool(self.steps) and all(s.status in (StepStatus.COMPLETED, StepStatus.FAILED) for s in self.steps)

    def estimated_time_remaining_ms(self) -> float:
        completed = [s for s in self.steps if s.status == StepStatus.COMPLETED]
        pending = [s for s in self.steps if s.status == StepStatus.PENDING]
        if not completed:
            return float(sum(s.estimated_duration_ms for s in pending))

        average = sum(s.duration_ms or 0.0 for s in completed) / len(completed)
        remaining = len(pending) * average

        current = next((s for s in self.steps if s.status == StepStatus.IN_PROGRESS), None)
        if current is not None and current.start_ms is not None:
            elapsed = self._clock() - current.start_ms
            if current.step_progress > 0:
                remaining += max(0.0, elapsed / current.step_progress - elapsed)
            else:
                remaining += max(0.0, average - elapsed)
        return max(0.0, remaining)

    def calculate_progress(self) -> dict[str, Any]:
        total = len(self.steps)
        completed = sum(1 for s in self.steps if s.status == StepStatus.COMPLETED)
        failed = sum(1 for s in self.steps if s.status == StepStatus.FAILED)
        overall = completed / total if total else 0.0
        current = next((s for s in self.steps if s.status == StepStatus.IN_PROGRESS), None)
        if current is not None and total:
            overall += current.step_progress / total

        elapsed = self._clock() - self.start_ms if self.start_ms is not None else 0.0
        remaining = self.estimated_time_remaining_ms()
        return {
            "percentage": round(overall * 100),
            "completed_steps": completed,
            "total_steps": total,
            "failed_steps": failed,
            "current_step": self.current_step,
            "elapsed_ms": elapsed,
            "estimated_remaining_ms": remaining,
            "estimated_total_ms": elapsed + remaining,
        }

    def get_status(self) -> dict[str, Any]:
        current = self.steps[self.current_step] if self.current_step < len(self.steps) else None
        return {
            "session_id": self.session_id,
            "completed": self.completed,
            "error": self.error,
            "progress": self.calculate_progress(),
            "current_step": (
                {"index": current.index, "name": current.name, "status": current.status.value} if current else None
            ),
        }
