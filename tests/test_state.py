"""Tests for the generation progress state machine."""

import asyncio

import pytest

from genrelay.errors import InvalidTransition
from genrelay.models import GenerationStatus
from genrelay.state import GenerationTracker


def _run_to_complete(tracker: GenerationTracker) -> None:
    tracker.initializing(max_attempts=3)
    tracker.connecting(0)
    tracker.generating()
    tracker.processing()
    tracker.complete()


def test_happy_path_statuses_and_progress() -> None:
    tracker = GenerationTracker(reset_delay=None)
    _run_to_complete(tracker)

    assert [s.status for s in tracker.history] == [
        GenerationStatus.INITIALIZING,
        GenerationStatus.CONNECTING,
        GenerationStatus.GENERATING,
        GenerationStatus.PROCESSING,
        GenerationStatus.COMPLETE,
    ]
    assert [s.progress_percent for s in tracker.history] == [5, 10, 30, 90, 100]


def test_progress_does_not_drop_on_retry() -> None:
    tracker = GenerationTracker(reset_delay=None)
    tracker.initializing(max_attempts=3)
    tracker.connecting(0)
    tracker.generating()
    tracker.connecting(1)
    tracker.model_loading(1, wait_seconds=12)

    assert tracker.state.progress_percent == 30
    assert tracker.state.estimated_wait_seconds == 12
    assert tracker.state.attempt_index == 1


def test_model_loading_progress_is_capped() -> None:
    tracker = GenerationTracker(reset_delay=None)
    tracker.initializing(max_attempts=5)
    tracker.connecting(4)
    tracker.model_loading(4, wait_seconds=30)

    assert tracker.state.progress_percent == 25


def test_skipping_states_is_rejected() -> None:
    tracker = GenerationTracker(reset_delay=None)

    with pytest.raises(InvalidTransition):
        tracker.generating()

    tracker.initializing()
    with pytest.raises(InvalidTransition):
        tracker.complete()


def test_attempt_index_stays_within_budget() -> None:
    tracker = GenerationTracker(reset_delay=None)
    tracker.initializing(max_attempts=2)
    tracker.connecting(1)

    with pytest.raises(InvalidTransition):
        tracker.connecting(2)


def test_only_one_terminal_state() -> None:
    tracker = GenerationTracker(reset_delay=None)
    _run_to_complete(tracker)

    with pytest.raises(InvalidTransition):
        tracker.fail("too late")

    terminal = [s for s in tracker.history if s.status.is_terminal]
    assert len(terminal) == 1


def test_fail_keeps_progress_and_message() -> None:
    tracker = GenerationTracker(reset_delay=None)
    tracker.initializing()
    tracker.connecting(0)
    tracker.fail("busy")

    assert tracker.status == GenerationStatus.ERROR
    assert tracker.state.progress_percent == 10
    assert tracker.state.status_message == "busy"


def test_new_generation_can_start_after_terminal() -> None:
    tracker = GenerationTracker(reset_delay=None)
    _run_to_complete(tracker)
    tracker.initializing()

    assert tracker.status == GenerationStatus.INITIALIZING
    assert tracker.state.progress_percent == 5


def test_listeners_receive_snapshots_and_can_unsubscribe() -> None:
    tracker = GenerationTracker(reset_delay=None)
    seen = []
    unsubscribe = tracker.subscribe(seen.append)

    tracker.initializing()
    tracker.connecting(0)
    unsubscribe()
    tracker.generating()

    assert [s.status for s in seen] == [GenerationStatus.INITIALIZING, GenerationStatus.CONNECTING]
    # snapshots are copies
    assert seen[0].status == GenerationStatus.INITIALIZING


def test_failing_listener_does_not_break_transitions(caplog: pytest.LogCaptureFixture) -> None:
    tracker = GenerationTracker(reset_delay=None)

    def broken(_state):
        raise RuntimeError("listener bug")

    tracker.subscribe(broken)
    tracker.initializing()

    assert tracker.status == GenerationStatus.INITIALIZING
    assert "listener failed" in caplog.text


@pytest.mark.asyncio
async def test_terminal_state_resets_to_idle_after_delay() -> None:
    tracker = GenerationTracker(reset_delay=0.01)
    _run_to_complete(tracker)
    assert tracker.status == GenerationStatus.COMPLETE

    await asyncio.sleep(0.05)

    assert tracker.status == GenerationStatus.IDLE
    assert tracker.state.progress_percent == 0


@pytest.mark.asyncio
async def test_restart_cancels_pending_reset() -> None:
    tracker = GenerationTracker(reset_delay=0.01)
    _run_to_complete(tracker)
    tracker.initializing()

    await asyncio.sleep(0.05)

    assert tracker.status == GenerationStatus.INITIALIZING
    await tracker.aclose()


def test_no_reset_without_running_loop() -> None:
    tracker = GenerationTracker(reset_delay=0.01)
    _run_to_complete(tracker)

    assert tracker.status == GenerationStatus.COMPLETE
