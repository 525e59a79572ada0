"""
Server-Sent-Events decoding and framing.

Provider streams arrive as ``data: {...}`` lines terminated by a
``data: [DONE]`` sentinel. ``SSEDecoder`` turns the raw byte stream into
content fragments; the ``format_*`` helpers build the frames relayed to
downstream clients.
"""

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}
SSE_MEDIA_TYPE = "text/event-stream"


def extract_delta_content(payload: Any) -> Optional[str]:
    """Return ``choices[0].delta.content`` if it is a non-empty string."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


class SSEDecoder:
    """
    Incremental decoder for one provider stream.

    Bytes are decoded with an incremental UTF-8 decoder so multi-byte
    characters split across chunks survive. Instances are single-use.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._started = False
        self.finished = False
        self.skipped_frames = 0

    def feed(self, data: bytes) -> List[str]:
        """Consume one chunk and return the fragments it completed."""
        if self.finished:
            return []
        self._buffer += self._utf8.decode(data)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._process(lines)

    def flush(self) -> List[str]:
        """Process whatever is left once the stream has closed."""
        if self.finished:
            return []
        self._buffer += self._utf8.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        fragments = self._process([tail]) if tail else []
        self.finished = True
        return fragments

    def _process(self, lines: List[str]) -> List[str]:
        fragments = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):]
            if data == DONE_SENTINEL:
                self.finished = True
                break
            try:
                payload = json.loads(data)
            except json.JSONDecodeError:
                self.skipped_frames += 1
                logger.debug(f"Skipping malformed SSE frame: {data[:100]}")
                continue
            content = extract_delta_content(payload)
            if content is not None:
                fragments.append(content)
        return fragments

    async def decode(self, byte_stream: AsyncIterable[bytes]) -> AsyncIterator[str]:
        """Yield content fragments until ``[DONE]`` or the stream closes."""
        if self._started:
            raise RuntimeError("SSEDecoder instances cannot be reused")
        self._started = True

        async for data in byte_stream:
            for fragment in self.feed(data):
                yield fragment
            if self.finished:
                return

        for fragment in self.flush():
            yield fragment


# =============================================================================
# Outbound framing
# =============================================================================

def format_sse_data(payload: Dict[str, Any]) -> str:
    """Format a JSON payload as one SSE frame."""
    return f"data: {json.dumps(payload)}\n\n"


def format_sse_done() -> str:
    return f"data: {DONE_SENTINEL}\n\n"
