"""Generation progress tracking."""

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Dict, FrozenSet, List, Optional

from .errors import InvalidTransition
from .models import GenerationState, GenerationStatus

logger = logging.getLogger(__name__)

S = GenerationStatus

# Progress waypoints per status
PROGRESS = {
    S.IDLE: 0,
    S.INITIALIZING: 5,
    S.CONNECTING: 10,
    S.MODEL_LOADING: 15,
    S.GENERATING: 30,
    S.PROCESSING: 90,
    S.COMPLETE: 100,
}
MODEL_LOADING_PROGRESS_CAP = 25

ALLOWED: Dict[GenerationStatus, FrozenSet[GenerationStatus]] = {
    S.IDLE: frozenset({S.INITIALIZING}),
    S.INITIALIZING: frozenset({S.CONNECTING}),
    S.CONNECTING: frozenset({S.CONNECTING, S.MODEL_LOADING, S.GENERATING}),
    S.MODEL_LOADING: frozenset({S.CONNECTING, S.MODEL_LOADING}),
    S.GENERATING: frozenset({S.PROCESSING, S.CONNECTING, S.MODEL_LOADING}),
    S.PROCESSING: frozenset({S.COMPLETE}),
    S.COMPLETE: frozenset({S.INITIALIZING}),
    S.ERROR: frozenset({S.INITIALIZING}),
}

Listener = Callable[[GenerationState], None]


class GenerationTracker:
    """
    State machine for one in-flight generation.

    Tracks:
    - Current status, progress and attempt counters
    - Every snapshot observed (``history``)
    - Listeners notified on each transition

    Progress never goes backwards before a terminal state. After
    ``complete`` or ``error`` the tracker drops back to ``idle`` once
    ``reset_delay`` seconds have passed, so a UI can show the outcome
    briefly.
    """

    def __init__(self, max_attempts: int = 1, reset_delay: Optional[float] = 2.0):
        self.state = GenerationState(max_attempts=max(1, max_attempts))
        self.reset_delay = reset_delay
        self.history: List[GenerationState] = []
        self._listeners: List[Listener] = []
        self._reset_task: Optional[asyncio.Task] = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def status(self) -> GenerationStatus:
        return self.state.status

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def initializing(self, message: str = "Starting generation...", max_attempts: Optional[int] = None):
        self._cancel_reset()
        if max_attempts is not None:
            self.state.max_attempts = max(1, max_attempts)
        self.state.attempt_index = 0
        self.state.estimated_wait_seconds = 0
        self.state.progress_percent = 0
        self._transition(S.INITIALIZING, PROGRESS[S.INITIALIZING], message)

    def connecting(self, attempt: int, message: Optional[str] = None):
        message = message or f"Connecting to model (attempt {attempt + 1}/{self.state.max_attempts})..."
        self._transition(S.CONNECTING, PROGRESS[S.CONNECTING], message,
                         attempt_index=attempt, estimated_wait_seconds=0)

    def model_loading(self, attempt: int, wait_seconds: float, message: Optional[str] = None):
        progress = min(PROGRESS[S.MODEL_LOADING] + 5 * attempt, MODEL_LOADING_PROGRESS_CAP)
        message = message or (f"Model is warming up (attempt {attempt + 1}/{self.state.max_attempts}), "
                              f"~{int(wait_seconds)}s...")
        self._transition(S.MODEL_LOADING, progress, message,
                         attempt_index=attempt, estimated_wait_seconds=int(wait_seconds))

    def generating(self, message: str = "Generating..."):
        self._transition(S.GENERATING, PROGRESS[S.GENERATING], message, estimated_wait_seconds=0)

    def processing(self, message: str = "Processing result..."):
        self._transition(S.PROCESSING, PROGRESS[S.PROCESSING], message)

    def complete(self, message: str = "Done"):
        self._transition(S.COMPLETE, PROGRESS[S.COMPLETE], message)

    def fail(self, message: str):
        """Move to ``error`` from any non-terminal state."""
        if self.state.status.is_terminal:
            raise InvalidTransition(f"Generation already finished ({self.state.status.value})")
        self._apply(S.ERROR, self.state.progress_percent, message)

    def _transition(self, status: GenerationStatus, progress: int, message: str, **fields):
        current = self.state.status
        if status not in ALLOWED[current]:
            raise InvalidTransition(f"{current.value} -> {status.value}")

        attempt = fields.get("attempt_index", self.state.attempt_index)
        if not status.is_terminal and attempt >= self.state.max_attempts:
            raise InvalidTransition(
                f"attempt {attempt} exceeds budget of {self.state.max_attempts}")

        if not status.is_terminal:
            progress = max(progress, self.state.progress_percent)
        self._apply(status, progress, message, **fields)

    def _apply(self, status: GenerationStatus, progress: int, message: str, **fields):
        self.state.status = status
        self.state.progress_percent = progress
        self.state.status_message = message
        for name, value in fields.items():
            setattr(self.state, name, value)

        logger.debug(f"Generation state -> {status.value} ({progress}%): {message}")
        self._notify()

        if status.is_terminal:
            self._schedule_reset()

    def _notify(self):
        snapshot = replace(self.state)
        self.history.append(snapshot)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Generation state listener failed")

    # ------------------------------------------------------------------
    # Reset to idle
    # ------------------------------------------------------------------

    def reset(self):
        """Return to ``idle`` immediately."""
        self._cancel_reset()
        self.state = GenerationState(max_attempts=self.state.max_attempts)
        self._notify()

    def _schedule_reset(self):
        if self.reset_delay is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._reset_task = loop.create_task(self._reset_later(self.reset_delay))

    async def _reset_later(self, delay: float):
        await asyncio.sleep(delay)
        self._reset_task = None
        self.state = GenerationState(max_attempts=self.state.max_attempts)
        self._notify()

    def _cancel_reset(self):
        if self._reset_task and not self._reset_task.done():
            self._reset_task.cancel()
        self._reset_task = None

    async def aclose(self):
        """Cancel a pending reset."""
        task = self._reset_task
        self._cancel_reset()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
