"""Tests for ProgressTracker step lifecycle and listener events."""

from __future__ import annotations

import pytest

from retroq.llm.progress import DEFAULT_STEPS, ProgressTracker, StepDefinition, StepStatus


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    tracker = ProgressTracker("session-1", clock=clock)
    tracker.initialize([StepDefinition("One", "first", 100), StepDefinition("Two", "second", 300)])
    return tracker


def test_initialize_uses_default_steps():
    tracker = ProgressTracker()
    tracker.initialize()
    assert [s.name for s in tracker.steps] == [d.name for d in DEFAULT_STEPS]
    assert all(s.status == StepStatus.PENDING for s in tracker.steps)


def test_full_lifecycle_emits_events(tracker, clock):
    events = []
    tracker.add_listener(lambda event, payload: events.append((event, payload)))

    tracker.start_step(0)
    clock.now = 50.0
    tracker.complete_step(0, {"items": 3})
    tracker.start_step(1)
    clock.now = 150.0
    tracker.complete_step(1)

    names = [event for event, _ in events]
    assert names == ["step_started", "step_completed", "step_started", "step_completed", "completed"]
    assert all(payload["session_id"] == "session-1" for _, payload in events)
    assert events[1][1]["step"]["duration_ms"] == 50.0
    assert events[1][1]["step"]["result"] == {"items": 3}
    assert events[-1][1]["total_duration_ms"] == 150.0
    assert tracker.completed is True


def test_progress_percentage_counts_partial_step(tracker):
    tracker.start_step(0)
    tracker.update_step_progress(0, 0.5, "halfway")
    assert tracker.calculate_progress()["percentage"] == 25

    tracker.update_step_progress(0, 7.0)
    assert tracker.steps[0].step_progress == 1.0


def test_remaining_time_uses_estimates_before_any_step_completes(tracker):
    assert tracker.estimated_time_remaining_ms() == 400.0


def test_remaining_time_uses_average_duration(tracker, clock):
    tracker.start_step(0)
    clock.now = 80.0
    tracker.complete_step(0)
    assert tracker.estimated_time_remaining_ms() == 80.0


def test_fail_step_and_fail(tracker):
    events = []
    tracker.add_listener(lambda event, payload: events.append(event))

    tracker.start_step(0)
    tracker.fail_step(0, RuntimeError("provider down"))
    tracker.fail("provider down")

    assert tracker.steps[0].status == StepStatus.FAILED
    assert tracker.steps[0].error == "provider down"
    assert tracker.error == "provider down"
    assert tracker.calculate_progress()["failed_steps"] == 1
    assert events[-1] == "failed"


def test_broken_listener_does_not_stop_tracking(tracker):
    def broken(event, payload):
        raise ValueError("listener bug")

    seen = []
    tracker.add_listener(broken)
    tracker.add_listener(lambda event, payload: seen.append(event))

    tracker.start_step(0)

    assert seen == ["step_started"]
    tracker.remove_listener(broken)
    tracker.remove_listener(broken)


def test_invalid_step_index(tracker):
    with pytest.raises(IndexError, match="Invalid step index"):
        tracker.start_step(5)


def test_status_snapshot(tracker):
    tracker.start_step(1)
    status = tracker.get_status()
    assert status["session_id"] == "session-1"
    assert status["current_step"] == {"index": 1, "name": "Two", "status": "in_progress"}
    assert status["completed"] is False
