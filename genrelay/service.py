"""
Caller-facing generation service.

Ties pools, adapters, the fallback loop, state tracking and history
recording together behind four entry points:

- send_chat: blocking chat reply
- stream_chat: incremental chat reply as StreamEvents
- generate_artifact: structured JSON deliverable
- generate: single-prompt generation for any modality
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional

from .artifacts import ArtifactTool, ReformattingAdapter, artifact_request
from .config import Config, config as default_config
from .generation_loop import GenerationStream, RetrySettings, attempt_generation
from .history import (
    HistoryEntry,
    HistoryOutcome,
    HistoryRecorder,
    InMemoryHistoryRecorder,
    JsonlHistoryRecorder,
    record_finish,
    record_start,
)
from .models import (
    Chunk,
    Complete,
    Done,
    GenerationRequest,
    GenerationResult,
    Modality,
    ModelDescriptor,
    StreamEvent,
    UserEcho,
)
from .pool import AUDIO_MODELS, IMAGE_MODELS, TEXT_MODELS, VIDEO_MODELS, ModelPool, display_name_for
from .provider_client import ChatCompletionsAdapter, InferenceAdapter, ProviderAdapter
from .state import GenerationTracker, Listener

logger = logging.getLogger(__name__)

CODE_SYSTEM_PROMPT = "You are an expert programmer. Write clean, well-commented code."

# Which pool serves each modality
POOL_FOR_MODALITY = {
    Modality.CHAT: "chat",
    Modality.TEXT: "text",
    Modality.CODE: "text",
    Modality.IMAGE: "image",
    Modality.VIDEO: "video",
    Modality.AUDIO: "audio",
}


def default_pools(cfg: Config) -> Dict[str, ModelPool]:
    chat = ModelPool.from_ids("chat", cfg.chat_pool_ids())
    # Calls without a hint start at the default role's model
    chat.current = chat.index_of(cfg.resolve_role(cfg.default_role)) or 0
    return {
        "chat": chat,
        "text": ModelPool("text", TEXT_MODELS),
        "image": ModelPool("image", IMAGE_MODELS),
        "video": ModelPool("video", VIDEO_MODELS),
        "audio": ModelPool("audio", AUDIO_MODELS),
    }


def build_recorder(cfg: Config) -> HistoryRecorder:
    if cfg.history_path:
        return JsonlHistoryRecorder(cfg.history_path)
    return InMemoryHistoryRecorder(max_entries=cfg.history_max_entries)


@dataclass
class ArtifactResult:
    artifact: Optional[Dict[str, Any]]
    result: GenerationResult


class GenerationService:
    """Entry points used by the HTTP layer and by library callers."""

    def __init__(
        self,
        cfg: Optional[Config] = None,
        chat_adapter: Optional[ProviderAdapter] = None,
        inference_adapter: Optional[ProviderAdapter] = None,
        history: Optional[HistoryRecorder] = None,
        pools: Optional[Dict[str, ModelPool]] = None,
        settings: Optional[RetrySettings] = None,
    ):
        self.config = cfg or default_config
        self.chat_adapter = chat_adapter or ChatCompletionsAdapter(self.config)
        self.inference_adapter = inference_adapter or InferenceAdapter(self.config)
        self.history = history if history is not None else build_recorder(self.config)
        self.pools = pools or default_pools(self.config)
        self.settings = settings or RetrySettings.from_config(self.config)

    async def close(self):
        await self.chat_adapter.close()
        await self.inference_adapter.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def pool_for(self, modality: Modality) -> ModelPool:
        return self.pools[POOL_FOR_MODALITY[modality]]

    def max_attempts_for(self, modality: Modality, pool: ModelPool) -> int:
        if modality == Modality.VIDEO:
            return self.config.video_max_attempts
        return len(pool)

    def resolve_model(self, model: Optional[str], pool: ModelPool) -> Optional[ModelDescriptor]:
        """Turn a role name or model id into a descriptor hint."""
        if not model:
            return None
        model_id = self.config.resolve_role(model) if pool.name == "chat" else model
        return pool.get(model_id) or ModelDescriptor(
            id=model_id,
            display_name=display_name_for(model_id),
            endpoint_kind=pool.models[0].endpoint_kind,
        )

    def _tracker(self, budget: int, listener: Optional[Listener]) -> GenerationTracker:
        tracker = GenerationTracker(budget, reset_delay=self.config.state_reset_delay)
        if listener is not None:
            tracker.subscribe(listener)
        return tracker

    def _keep_cursor(self, pool: ModelPool, result: GenerationResult):
        if result.ok and result.next_index is not None:
            pool.current = result.next_index

    async def _start_history(self, request: GenerationRequest, pool: ModelPool) -> Optional[str]:
        model = request.model_hint or pool.current_model
        entry = HistoryEntry(
            prompt=request.prompt_text,
            model_id=model.id,
            modality=request.modality.value,
            parameters=dict(request.parameters),
        )
        return await record_start(self.history, entry)

    async def _finish_history(
        self,
        entry_id: Optional[str],
        started: float,
        content: Optional[str],
        error: Optional[str],
    ):
        await record_finish(self.history, entry_id, HistoryOutcome(
            status="failed" if error else "completed",
            result_content=content,
            error_message=error,
            duration_ms=int((time.perf_counter() - started) * 1000),
        ))

    async def _run(
        self,
        request: GenerationRequest,
        adapter: ProviderAdapter,
        listener: Optional[Listener],
        cancel: Optional[asyncio.Event],
    ) -> GenerationResult:
        pool = self.pool_for(request.modality)
        budget = self.max_attempts_for(request.modality, pool)
        tracker = self._tracker(budget, listener)

        entry_id = await self._start_history(request, pool)
        started = time.perf_counter()
        try:
            result = await attempt_generation(
                request,
                pool,
                adapter,
                start_index=pool.start_index_for(request.model_hint),
                max_attempts=budget,
                tracker=tracker,
                settings=self.settings,
                cancel=cancel,
            )
        except asyncio.CancelledError:
            await self._finish_history(entry_id, started, None, "cancelled")
            raise

        self._keep_cursor(pool, result)
        await self._finish_history(
            entry_id, started,
            result.content if result.ok else None,
            None if result.ok else result.error_message,
        )
        return result

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def send_chat(
        self,
        messages: Iterable[Mapping[str, Any]],
        model_hint: Optional[str] = None,
        listener: Optional[Listener] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        """Blocking chat reply with fallback across the chat pool."""
        pool = self.pool_for(Modality.CHAT)
        request = GenerationRequest.chat(messages, model_hint=self.resolve_model(model_hint, pool))
        return await self._run(request, self.chat_adapter, listener, cancel)

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any]],
        model_hint: Optional[str] = None,
        user_message: Optional[Dict[str, Any]] = None,
        listener: Optional[Listener] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a chat reply.

        Yields ``UserEcho`` (when ``user_message`` is given), then one
        ``Chunk`` per fragment in arrival order, then ``Complete`` and
        ``Done``.
        """
        pool = self.pool_for(Modality.CHAT)
        request = GenerationRequest.chat(messages, model_hint=self.resolve_model(model_hint, pool))
        tracker = self._tracker(len(pool), listener)

        if user_message is not None:
            yield UserEcho(user_message)

        entry_id = await self._start_history(request, pool)
        started = time.perf_counter()
        stream = GenerationStream(
            request,
            pool,
            self.chat_adapter,
            start_index=pool.start_index_for(request.model_hint),
            tracker=tracker,
            settings=self.settings,
            cancel=cancel,
        )

        fragments = stream.__aiter__()
        finished = False
        try:
            async for fragment in fragments:
                yield Chunk(fragment)

            result = stream.result
            self._keep_cursor(pool, result)
            await self._finish_history(
                entry_id, started, result.content,
                None if result.ok else result.error_message,
            )
            finished = True

            message = {
                "id": uuid.uuid4().hex,
                "role": "assistant",
                "content": result.content or "",
                "model": result.model_used.id if result.model_used else None,
                "created_at": datetime.now().isoformat(),
            }
            yield Complete(
                final_content=result.content or "",
                message=message,
                error=None if result.ok else result.error_message,
            )
            yield Done()
        finally:
            if not finished:
                await fragments.aclose()
                logger.info("Chat stream closed before completion")
                await self._finish_history(entry_id, started, None, "cancelled")

    async def generate_artifact(
        self,
        tool: str,
        inputs: Mapping[str, str],
        context: Optional[Mapping[str, Any]] = None,
        model_hint: Optional[str] = None,
        listener: Optional[Listener] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> ArtifactResult:
        """
        Generate a structured artifact.

        Raises ValueError for an unknown tool. Provider and parsing failures
        come back as ``ArtifactResult(artifact=None, result=<failure>)``.
        """
        artifact_tool = ArtifactTool(tool)
        pool = self.pool_for(Modality.CHAT)
        request = artifact_request(artifact_tool, inputs, context, self.resolve_model(model_hint, pool))
        result = await self._run(request, ReformattingAdapter(self.chat_adapter), listener, cancel)

        if not result.ok:
            return ArtifactResult(artifact=None, result=result)

        artifact = json.loads(result.content)
        artifact.update({
            "id": uuid.uuid4().hex,
            "type": artifact_tool.value,
            "createdAt": datetime.now().isoformat(),
        })
        return ArtifactResult(artifact=artifact, result=result)

    async def generate(
        self,
        modality: Modality,
        prompt: str,
        model: Optional[str] = None,
        parameters: Optional[Mapping[str, Any]] = None,
        listener: Optional[Listener] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        """Single-prompt generation for any modality (video gets a larger budget)."""
        modality = Modality(modality)
        if modality == Modality.CHAT:
            return await self.send_chat([{"role": "user", "content": prompt}], model, listener, cancel)

        pool = self.pool_for(modality)
        params = dict(parameters or {})
        if modality == Modality.CODE:
            system = params.pop("system_prompt", CODE_SYSTEM_PROMPT)
            prompt = f"{system}\n\n{prompt}"

        request = GenerationRequest(
            modality=modality,
            prompt=prompt,
            model_hint=self.resolve_model(model, pool),
            parameters=params,
        )
        return await self._run(request, self.inference_adapter, listener, cancel)
