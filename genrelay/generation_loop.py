"""
Fallback orchestration across a model pool.

Each call walks the pool starting at the affinity cursor:

- success returns immediately; the winning index comes back as
  ``next_index`` for the caller to keep as its affinity cursor
- a warming-up model is retried in place after a bounded wait
- any other failure advances to the next model until the budget is spent

Exhaustion is returned as a failed ``GenerationResult``; nothing a
provider does is raised to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from .config import Config
from .errors import USER_SAFE_MESSAGE, AdapterError, ErrorKind
from .models import AttemptOutcome, GenerationAttempt, GenerationRequest, GenerationResult
from .pool import ModelPool
from .provider_client import ProviderAdapter
from .sse import SSEDecoder
from .state import GenerationTracker

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Generation cancelled"


@dataclass
class RetrySettings:
    """Knobs for the fallback loop."""
    loading_cap: float = 30.0
    max_loading_waits: int = 3
    retry_pause: float = 0.5

    @classmethod
    def from_config(cls, cfg: Config) -> "RetrySettings":
        return cls(
            loading_cap=cfg.model_loading_cap,
            max_loading_waits=cfg.max_loading_waits,
            retry_pause=cfg.retry_pause,
        )


async def _wait(seconds: float, cancel: Optional[asyncio.Event]) -> None:
    """Sleep, waking early if the cancel token is set."""
    if seconds <= 0:
        return
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class _FallbackRun:
    """Loop state shared by the blocking and streaming entry points."""

    def __init__(
        self,
        request: GenerationRequest,
        pool: ModelPool,
        start_index: Optional[int],
        max_attempts: Optional[int],
        tracker: Optional[GenerationTracker],
        settings: Optional[RetrySettings],
        cancel: Optional[asyncio.Event],
    ):
        self.request = request
        self.pool = pool
        self.start_index = (start_index if start_index is not None else pool.current) % len(pool)
        self.index = self.start_index
        self.budget = max_attempts or len(pool)
        self.tracker = tracker or GenerationTracker(self.budget, reset_delay=None)
        self.settings = settings or RetrySettings()
        self.cancel = cancel
        self.attempt = 0
        self.calls = 0
        self.loading_waits = 0
        self.attempts: List[GenerationAttempt] = []

    @property
    def has_budget(self) -> bool:
        return self.attempt < self.budget

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def begin(self):
        self.tracker.initializing(max_attempts=self.budget)

    def start_attempt(self) -> GenerationAttempt:
        model = self.pool[self.index]
        record = GenerationAttempt(attempt_index=self.attempt, model=model)
        self.attempts.append(record)
        self.calls += 1
        logger.info(f"Attempt {self.attempt + 1}/{self.budget}: using {model.id}")
        self.tracker.connecting(self.attempt, f"Connecting to {model.display_name}...")
        self.tracker.generating(f"Generating with {model.display_name}...")
        return record

    def succeed(self, record: GenerationAttempt):
        record.outcome = AttemptOutcome.SUCCESS

    async def fail_attempt(self, record: GenerationAttempt, exc: Exception):
        """Classify a failed attempt and move the loop forward."""
        if isinstance(exc, AdapterError):
            error = exc
        else:
            logger.exception(f"Unexpected error from {record.model.id}")
            error = AdapterError(ErrorKind.TRANSPORT, f"{type(exc).__name__}: {exc}")
        record.error_kind = error.kind.value

        if error.kind == ErrorKind.MODEL_LOADING and self.loading_waits < self.settings.max_loading_waits:
            self.loading_waits += 1
            wait = min(error.retry_after or self.settings.loading_cap, self.settings.loading_cap)
            record.outcome = AttemptOutcome.RETRYABLE_FAILURE
            logger.info(f"Model {record.model.id} is loading, waiting {wait:.0f}s "
                        f"({self.loading_waits}/{self.settings.max_loading_waits})")
            self.tracker.model_loading(self.attempt, wait)
            await _wait(wait, self.cancel)
            return

        self.attempt += 1
        if self.has_budget:
            record.outcome = AttemptOutcome.RETRYABLE_FAILURE
            self.index = (self.index + 1) % len(self.pool)
            logger.warning(f"Model {record.model.id} failed ({error.kind.value}: {error.message}), "
                           f"switching to {self.pool[self.index].id}")
            await _wait(self.settings.retry_pause, self.cancel)
        else:
            record.outcome = AttemptOutcome.FATAL_FAILURE
            logger.error(f"Model {record.model.id} failed ({error.kind.value}: {error.message}), "
                         f"no attempts left")

    def exhausted(self) -> GenerationResult:
        logger.error(f"All {self.calls} attempts failed for pool '{self.pool.name}'")
        self.tracker.fail(USER_SAFE_MESSAGE)
        return GenerationResult.failure(
            USER_SAFE_MESSAGE, exhausted=True,
            attempts=self.calls, next_index=self.start_index,
        )

    def aborted(self) -> GenerationResult:
        logger.info(f"Generation cancelled after {self.calls} attempts")
        self.tracker.fail(CANCELLED_MESSAGE)
        return GenerationResult.failure(
            CANCELLED_MESSAGE, exhausted=False,
            attempts=self.calls, next_index=self.start_index,
        )

    def abandon(self):
        """Task cancellation: mark the tracker failed before re-raising."""
        if not self.tracker.status.is_terminal:
            self.tracker.fail(CANCELLED_MESSAGE)


async def attempt_generation(
    request: GenerationRequest,
    pool: ModelPool,
    adapter: ProviderAdapter,
    start_index: Optional[int] = None,
    max_attempts: Optional[int] = None,
    tracker: Optional[GenerationTracker] = None,
    settings: Optional[RetrySettings] = None,
    cancel: Optional[asyncio.Event] = None,
) -> GenerationResult:
    """
    Run one blocking generation with fallback across ``pool``.

    Args:
        request: What to generate
        pool: Models eligible for fallback
        adapter: Provider adapter used for every attempt
        start_index: Where to start (defaults to the pool cursor)
        max_attempts: Attempt budget (defaults to pool size)
        tracker: Receives state transitions
        settings: Model-loading and pause bounds
        cancel: Optional token; setting it ends the call early
    """
    run = _FallbackRun(request, pool, start_index, max_attempts, tracker, settings, cancel)
    run.begin()

    while run.has_budget:
        if run.cancelled:
            return run.aborted()

        record = run.start_attempt()
        try:
            response = await adapter.invoke(request, record.model)
        except asyncio.CancelledError:
            run.abandon()
            raise
        except Exception as e:
            await run.fail_attempt(record, e)
            continue

        run.succeed(record)
        run.tracker.processing()
        run.tracker.complete(f"Generated with {record.model.display_name}")
        logger.info(f"Generation succeeded with {record.model.id} after {run.calls} calls "
                    f"({response.latency_ms}ms)")
        return GenerationResult(
            content=response.content,
            tokens_used=response.tokens_used,
            latency_ms=response.latency_ms,
            model_used=record.model,
            attempts=run.calls,
            next_index=run.index,
        )

    if run.cancelled:
        return run.aborted()
    return run.exhausted()


class GenerationStream:
    """
    Streaming generation with fallback while opening the stream.

    Fallback applies until a provider accepts the request. From then on the
    model is committed and fragments are yielded in arrival order. A failure
    mid-stream ends the sequence; ``result`` holds the outcome once
    iteration finishes.
    """

    def __init__(
        self,
        request: GenerationRequest,
        pool: ModelPool,
        adapter: ProviderAdapter,
        start_index: Optional[int] = None,
        max_attempts: Optional[int] = None,
        tracker: Optional[GenerationTracker] = None,
        settings: Optional[RetrySettings] = None,
        cancel: Optional[asyncio.Event] = None,
    ):
        self.adapter = adapter
        self._run = _FallbackRun(request, pool, start_index, max_attempts, tracker, settings, cancel)
        self._iterated = False
        self.result: Optional[GenerationResult] = None

    @property
    def tracker(self) -> GenerationTracker:
        return self._run.tracker

    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterated:
            raise RuntimeError("GenerationStream can only be iterated once")
        self._iterated = True
        return self._generate()

    async def _generate(self) -> AsyncIterator[str]:
        run = self._run
        run.begin()
        loop = asyncio.get_running_loop()

        while run.has_budget:
            if run.cancelled:
                self.result = run.aborted()
                return

            record = run.start_attempt()
            started = loop.time()
            parts: List[str] = []
            opened = False
            try:
                async with self.adapter.stream(run.request, record.model) as body:
                    opened = True
                    run.succeed(record)
                    fragments = SSEDecoder().decode(body)
                    try:
                        async for fragment in fragments:
                            parts.append(fragment)
                            yield fragment
                            if run.cancelled:
                                break
                    finally:
                        await fragments.aclose()
            except (asyncio.CancelledError, GeneratorExit):
                run.abandon()
                raise
            except Exception as e:
                if not opened:
                    await run.fail_attempt(record, e)
                    continue
                logger.error(f"Stream from {record.model.id} broke after {len(parts)} fragments: {e}")
                run.tracker.fail(USER_SAFE_MESSAGE)
                self.result = GenerationResult.failure(
                    USER_SAFE_MESSAGE, exhausted=False, content="".join(parts),
                    model_used=record.model, attempts=run.calls, next_index=run.index,
                )
                return

            latency_ms = int((loop.time() - started) * 1000)
            if run.cancelled:
                run.tracker.fail(CANCELLED_MESSAGE)
                self.result = GenerationResult.failure(
                    CANCELLED_MESSAGE, exhausted=False, content="".join(parts),
                    model_used=record.model, attempts=run.calls, next_index=run.index,
                )
                return

            run.tracker.processing()
            run.tracker.complete(f"Streamed from {record.model.display_name}")
            logger.info(f"Stream from {record.model.id} complete: {len(parts)} fragments, {latency_ms}ms")
            self.result = GenerationResult(
                content="".join(parts),
                latency_ms=latency_ms,
                model_used=record.model,
                attempts=run.calls,
                next_index=run.index,
            )
            return

        self.result = run.aborted() if run.cancelled else run.exhausted()


def stream_generation(
    request: GenerationRequest,
    pool: ModelPool,
    adapter: ProviderAdapter,
    **kwargs,
) -> GenerationStream:
    """Streaming counterpart of :func:`attempt_generation`."""
    return GenerationStream(request, pool, adapter, **kwargs)
