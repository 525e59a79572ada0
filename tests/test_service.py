"""Tests for the caller-facing generation service."""

import pytest

from genrelay.config import Config
from genrelay.errors import USER_SAFE_MESSAGE
from genrelay.generation_loop import RetrySettings
from genrelay.history import InMemoryHistoryRecorder, JsonlHistoryRecorder
from genrelay.models import (
    Chunk,
    Complete,
    Done,
    EndpointKind,
    GenerationStatus,
    Modality,
    UserEcho,
)
from genrelay.pool import ModelPool
from genrelay.service import CODE_SYSTEM_PROMPT, GenerationService, build_recorder, default_pools

from fakes import DONE_FRAME, ScriptedAdapter, rate_limited, sse_frame

MESSAGES = [{"role": "user", "content": "Hello?"}]


def _config(**overrides) -> Config:
    values = dict(
        model_map={"planner": "a/A", "coder": "b/B"},
        default_role="planner",
        video_max_attempts=5,
        state_reset_delay=None,
        history_path="",
    )
    values.update(overrides)
    return Config(**values)


def _pools():
    return {
        "chat": ModelPool.from_ids("chat", ["a/A", "b/B", "c/C"]),
        "text": ModelPool.from_ids("text", ["t/One", "t/Two"], EndpointKind.TEXT),
        "image": ModelPool.from_ids("image", ["i/One"], EndpointKind.IMAGE),
        "video": ModelPool.from_ids("video", ["v/One", "v/Two"], EndpointKind.VIDEO),
        "audio": ModelPool.from_ids("audio", ["s/One"], EndpointKind.AUDIO),
    }


def _service(chat=None, inference=None, history=None) -> GenerationService:
    return GenerationService(
        _config(),
        chat_adapter=ScriptedAdapter(chat or {}),
        inference_adapter=ScriptedAdapter(inference or {}),
        history=history if history is not None else InMemoryHistoryRecorder(),
        pools=_pools(),
        settings=RetrySettings(retry_pause=0),
    )


# =============================================================================
# send_chat
# =============================================================================

@pytest.mark.asyncio
async def test_send_chat_keeps_winning_model_as_cursor() -> None:
    service = _service(chat={"a/A": [rate_limited()], "b/B": ["Hi!"]})

    result = await service.send_chat(MESSAGES)

    assert result.content == "Hi!"
    assert service.pools["chat"].current == 1

    service.chat_adapter.calls.clear()
    await service.send_chat(MESSAGES)
    assert service.chat_adapter.calls == ["b/B"]


@pytest.mark.asyncio
async def test_send_chat_records_history() -> None:
    service = _service(chat={"a/A": ["Hi!"]})

    await service.send_chat(MESSAGES)

    [entry] = service.history.list()
    assert entry.prompt == "Hello?"
    assert entry.modality == "chat"
    assert entry.status == "completed"
    assert entry.result_content == "Hi!"
    assert entry.duration_ms is not None


@pytest.mark.asyncio
async def test_send_chat_exhaustion_is_data() -> None:
    service = _service(chat={"a/A": [rate_limited()], "b/B": [rate_limited()], "c/C": [rate_limited()]})

    result = await service.send_chat(MESSAGES)

    assert not result.ok
    assert result.to_dict() == {
        "success": False,
        "attempts": 3,
        "latency_ms": 0,
        "error": USER_SAFE_MESSAGE,
        "exhausted": True,
    }
    assert service.pools["chat"].current == 0
    [entry] = service.history.list()
    assert entry.status == "failed"
    assert entry.error_message == USER_SAFE_MESSAGE


@pytest.mark.asyncio
async def test_role_names_resolve_to_pool_models() -> None:
    service = _service(chat={"b/B": ["from coder"]})

    result = await service.send_chat(MESSAGES, model_hint="coder")

    assert result.model_used.id == "b/B"
    assert service.chat_adapter.calls == ["b/B"]


@pytest.mark.asyncio
async def test_unknown_role_uses_default_role() -> None:
    service = _service(chat={"a/A": ["planner here"]})
    service.pools["chat"].current = 2

    await service.send_chat(MESSAGES, model_hint="astrologer")

    assert service.chat_adapter.calls == ["a/A"]


@pytest.fixture
def default_config(monkeypatch: pytest.MonkeyPatch) -> Config:
    """Config built from the shipped defaults, ignoring the environment."""
    for name in ("MODEL_MAP", "DEFAULT_ROLE", "CHAT_MODELS"):
        monkeypatch.delenv(name, raising=False)
    return Config(state_reset_delay=None, history_path="")


def _default_service(cfg: Config, chat) -> GenerationService:
    return GenerationService(
        cfg,
        chat_adapter=ScriptedAdapter(chat),
        inference_adapter=ScriptedAdapter({}),
        history=InMemoryHistoryRecorder(),
        settings=RetrySettings(retry_pause=0),
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["coder", "marketing", "planner", "analyst"])
async def test_default_pools_reach_every_mapped_role(default_config: Config, role: str) -> None:
    target = default_config.model_map[role]
    service = _default_service(default_config, {target: ["from " + role]})

    result = await service.send_chat(MESSAGES, model_hint=role)

    assert service.chat_adapter.calls[0] == target
    assert result.model_used.id == target


@pytest.mark.asyncio
async def test_default_pools_unknown_role_uses_default_role_model(default_config: Config) -> None:
    planner = default_config.model_map["planner"]
    service = _default_service(default_config, {planner: ["planned"]})

    await service.send_chat(MESSAGES, model_hint="astrologer")

    assert service.chat_adapter.calls == [planner]


@pytest.mark.asyncio
async def test_default_pools_start_unhinted_calls_at_default_role(default_config: Config) -> None:
    planner = default_config.model_map["planner"]
    service = _default_service(default_config, {planner: ["planned"]})

    await service.send_chat(MESSAGES)

    assert service.chat_adapter.calls == [planner]


def test_default_chat_pool_keeps_fallback_models(default_config: Config) -> None:
    pool = default_pools(default_config)["chat"]
    ids = [m.id for m in pool]

    assert set(default_config.model_map.values()) <= set(ids)
    assert set(default_config.chat_models) <= set(ids)
    assert len(ids) == len(set(ids))


@pytest.mark.asyncio
async def test_listener_sees_progress() -> None:
    service = _service(chat={"a/A": ["ok"]})
    seen = []

    await service.send_chat(MESSAGES, listener=seen.append)

    assert seen[0].status == GenerationStatus.INITIALIZING
    assert seen[-1].status == GenerationStatus.COMPLETE
    assert seen[-1].progress_percent == 100


# =============================================================================
# stream_chat
# =============================================================================

@pytest.mark.asyncio
async def test_stream_chat_event_order() -> None:
    service = _service(chat={"a/A": [[sse_frame("He"), sse_frame("llo"), DONE_FRAME]]})
    echo = {"id": "u1", "role": "user", "content": "Hello?"}

    events = [e async for e in service.stream_chat(MESSAGES, user_message=echo)]

    assert events[0] == UserEcho(echo)
    assert events[1:3] == [Chunk("He"), Chunk("llo")]
    assert isinstance(events[3], Complete)
    assert events[3].final_content == "Hello"
    assert events[3].error is None
    assert events[3].message["role"] == "assistant"
    assert events[3].message["model"] == "a/A"
    assert events[4] == Done()
    assert service.history.list()[0].result_content == "Hello"


@pytest.mark.asyncio
async def test_stream_chat_failure_still_completes_stream() -> None:
    service = _service(chat={"a/A": [rate_limited()], "b/B": [rate_limited()], "c/C": [rate_limited()]})

    events = [e async for e in service.stream_chat(MESSAGES)]

    assert [type(e) for e in events] == [Complete, Done]
    assert events[0].error == USER_SAFE_MESSAGE
    assert service.history.list()[0].status == "failed"


@pytest.mark.asyncio
async def test_stream_chat_closed_early_records_cancellation() -> None:
    service = _service(chat={"a/A": [[sse_frame("one"), sse_frame("two"), DONE_FRAME]]})

    events = service.stream_chat(MESSAGES)
    assert await events.__anext__() == Chunk("one")
    await events.aclose()

    [entry] = service.history.list()
    assert entry.status == "failed"
    assert entry.error_message == "cancelled"


# =============================================================================
# generate_artifact
# =============================================================================

@pytest.mark.asyncio
async def test_generate_artifact_adds_metadata() -> None:
    service = _service(chat={"a/A": ['```json\n{"name": "Ada", "role": "Nurse"}\n```']})

    outcome = await service.generate_artifact("persona", {"description": "night-shift nurse"})

    assert outcome.result.ok
    assert outcome.artifact["name"] == "Ada"
    assert outcome.artifact["type"] == "persona"
    assert outcome.artifact["id"]
    assert outcome.artifact["createdAt"]


@pytest.mark.asyncio
async def test_generate_artifact_falls_back_after_unparseable_output() -> None:
    service = _service(chat={"a/A": ["not json"], "b/B": ['{"name": "Ada"}']})

    outcome = await service.generate_artifact("persona", {})

    assert outcome.artifact["name"] == "Ada"
    assert service.chat_adapter.calls == ["a/A", "a/A", "b/B"]


@pytest.mark.asyncio
async def test_generate_artifact_unknown_tool() -> None:
    with pytest.raises(ValueError):
        await _service().generate_artifact("horoscope", {})


@pytest.mark.asyncio
async def test_generate_artifact_exhaustion_has_no_artifact() -> None:
    outcome = await _service().generate_artifact("flow", {"feature": "signup"})

    assert outcome.artifact is None
    assert outcome.result.error_message == USER_SAFE_MESSAGE


# =============================================================================
# generate
# =============================================================================

@pytest.mark.asyncio
async def test_video_gets_larger_budget() -> None:
    service = _service()

    result = await service.generate(Modality.VIDEO, "a cat surfing")

    assert result.exhausted
    assert service.inference_adapter.calls == ["v/One", "v/Two", "v/One", "v/Two", "v/One"]


@pytest.mark.asyncio
async def test_image_budget_is_pool_size() -> None:
    service = _service()

    await service.generate(Modality.IMAGE, "a fox")

    assert service.inference_adapter.calls == ["i/One"]


@pytest.mark.asyncio
async def test_code_prompt_gets_system_prefix() -> None:
    service = _service(inference={"t/One": ["def add(a, b): return a + b"]})

    result = await service.generate(Modality.CODE, "add two numbers", parameters={"max_new_tokens": 64})

    request = service.inference_adapter.requests[0]
    assert request.prompt.startswith(CODE_SYSTEM_PROMPT)
    assert request.prompt.endswith("add two numbers")
    assert request.parameters == {"max_new_tokens": 64}
    assert result.content.startswith("def add")
    assert service.history.list()[0].prompt.endswith("add two numbers")


@pytest.mark.asyncio
async def test_chat_modality_uses_chat_adapter() -> None:
    service = _service(chat={"a/A": ["hi"]})

    result = await service.generate("chat", "hello")

    assert result.content == "hi"
    assert service.inference_adapter.calls == []


@pytest.mark.asyncio
async def test_close_closes_adapters() -> None:
    service = _service()

    await service.close()

    assert service.chat_adapter.closed
    assert service.inference_adapter.closed


def test_build_recorder_uses_history_path(tmp_path) -> None:
    assert isinstance(build_recorder(_config()), InMemoryHistoryRecorder)
    recorder = build_recorder(_config(history_path=str(tmp_path / "h.jsonl")))
    assert isinstance(recorder, JsonlHistoryRecorder)


def test_build_recorder_applies_entry_cap() -> None:
    recorder = build_recorder(_config(history_max_entries=10))

    assert recorder.max_entries == 10


@pytest.mark.asyncio
async def test_default_history_stays_bounded_for_large_results() -> None:
    media = "data:video/mp4;base64," + "A" * 1_000_000
    service = _service(inference={"v/One": [media]}, history=InMemoryHistoryRecorder(max_entries=10))

    for i in range(50):
        result = await service.generate(Modality.VIDEO, f"clip {i}")
        assert result.ok

    entries = service.history.list()
    assert len(entries) == 10
    assert entries[-1].prompt == "clip 49"
    assert all(e.status == "completed" for e in entries)
