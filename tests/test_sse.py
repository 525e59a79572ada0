"""Tests for provider stream decoding and outbound framing."""

import json

import pytest

from genrelay.sse import SSEDecoder, extract_delta_content, format_sse_data, format_sse_done

from fakes import DONE_FRAME, sse_frame


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _collect(decoder: SSEDecoder, *parts: bytes):
    return [fragment async for fragment in decoder.decode(_chunks(*parts))]


@pytest.mark.asyncio
async def test_decodes_fragments_until_done() -> None:
    body = sse_frame("He") + sse_frame("llo") + DONE_FRAME

    assert await _collect(SSEDecoder(), body) == ["He", "llo"]


@pytest.mark.asyncio
async def test_frames_split_at_every_byte_boundary() -> None:
    body = sse_frame("He") + sse_frame("llo ") + sse_frame("wörld ✓") + DONE_FRAME

    for cut in range(1, len(body)):
        fragments = await _collect(SSEDecoder(), body[:cut], body[cut:])
        assert "".join(fragments) == "Hello wörld ✓", f"split at byte {cut}"


@pytest.mark.asyncio
async def test_single_byte_chunks_keep_multibyte_characters() -> None:
    body = sse_frame("日本語") + DONE_FRAME
    parts = [body[i:i + 1] for i in range(len(body))]

    assert "".join(await _collect(SSEDecoder(), *parts)) == "日本語"


@pytest.mark.asyncio
async def test_malformed_frames_are_skipped() -> None:
    decoder = SSEDecoder()
    body = sse_frame("a") + b"data: {not json}\n\n" + sse_frame("b") + DONE_FRAME

    assert await _collect(decoder, body) == ["a", "b"]
    assert decoder.skipped_frames == 1


@pytest.mark.asyncio
async def test_frames_without_content_yield_nothing() -> None:
    role_only = b'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n'
    empty = b'data: {"choices": [{"delta": {"content": ""}}]}\n\n'
    no_choices = b'data: {"id": "gen-1"}\n\n'

    body = role_only + empty + no_choices + sse_frame("x") + DONE_FRAME

    assert await _collect(SSEDecoder(), body) == ["x"]


@pytest.mark.asyncio
async def test_non_data_lines_and_crlf_are_ignored() -> None:
    body = b": keep-alive\r\nevent: message\r\n" + sse_frame("ok").replace(b"\n", b"\r\n") + DONE_FRAME

    assert await _collect(SSEDecoder(), body) == ["ok"]


@pytest.mark.asyncio
async def test_stream_ending_without_done_is_not_an_error() -> None:
    decoder = SSEDecoder()
    # final frame has no trailing newline
    body = sse_frame("a") + b'data: {"choices": [{"delta": {"content": "b"}}]}'

    assert await _collect(decoder, body) == ["a", "b"]
    assert decoder.finished


@pytest.mark.asyncio
async def test_frames_after_done_are_ignored() -> None:
    body = sse_frame("a") + DONE_FRAME + sse_frame("late")

    assert await _collect(SSEDecoder(), body) == ["a"]


@pytest.mark.asyncio
async def test_decoder_cannot_be_reused() -> None:
    decoder = SSEDecoder()
    await _collect(decoder, DONE_FRAME)

    with pytest.raises(RuntimeError):
        await _collect(decoder, DONE_FRAME)


def test_feed_returns_completed_fragments_only() -> None:
    decoder = SSEDecoder()
    frame = sse_frame("abc")

    assert decoder.feed(frame[:10]) == []
    assert decoder.feed(frame[10:]) == ["abc"]


def test_extract_delta_content_rejects_odd_shapes() -> None:
    assert extract_delta_content([]) is None
    assert extract_delta_content({"choices": []}) is None
    assert extract_delta_content({"choices": ["x"]}) is None
    assert extract_delta_content({"choices": [{"delta": {"content": 3}}]}) is None
    assert extract_delta_content({"choices": [{"delta": {"content": "y"}}]}) == "y"


def test_outbound_frames() -> None:
    frame = format_sse_data({"type": "chunk", "content": "hi"})

    assert frame.startswith("data: ") and frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "chunk", "content": "hi"}
    assert format_sse_done() == "data: [DONE]\n\n"
