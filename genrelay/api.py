"""
HTTP endpoints for the generation relay.

Provides blocking and streaming chat, structured artifacts, single-prompt
generation per modality and the model catalogue. Streaming chat is relayed
as SSE frames typed ``user_message``, ``chunk`` and ``complete``, followed
by ``data: [DONE]``.
"""

import logging
import time
import uuid
from datetime import datetime
from typing import AsyncIterator

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from .models import (
    ArtifactRequest,
    ChatRequest,
    Chunk,
    Complete,
    Done,
    GenerateRequest,
    Modality,
    UserEcho,
)
from .service import GenerationService
from .sse import SSE_HEADERS, SSE_MEDIA_TYPE, format_sse_data, format_sse_done

logger = logging.getLogger(__name__)

router = APIRouter()


def _service(request: Request) -> GenerationService:
    return request.app.state.service


@router.get("/v1/models")
async def list_models(request: Request):
    """List pooled models, grouped by pool."""
    service = _service(request)
    data = [
        {
            "id": model.id,
            "object": "model",
            "created": int(time.time()),
            "name": model.display_name,
            "pool": pool.name,
            "endpoint_kind": model.endpoint_kind.value,
        }
        for pool in service.pools.values()
        for model in pool
    ]
    return {"object": "list", "data": data, "roles": service.config.model_map}


@router.post("/v1/chat")
async def chat(body: ChatRequest, request: Request):
    """Blocking chat reply. Failures come back with ``success: false``."""
    messages = [m.model_dump() for m in body.messages]
    logger.info(f"Chat request: messages={len(messages)}, model={body.model}")

    result = await _service(request).send_chat(messages, model_hint=body.model)
    return result.to_dict()


@router.post("/v1/chat/stream")
async def chat_stream(body: ChatRequest, request: Request):
    """
    Streaming chat reply as SSE.

    The stream carries:
    - ``user_message``: echo of the last user message
    - ``chunk``: one content fragment, in arrival order
    - ``complete``: final content and the stored assistant message
    """
    messages = [m.model_dump() for m in body.messages]
    logger.info(f"Chat stream: messages={len(messages)}, model={body.model}")

    last_user = next((m for m in reversed(messages) if m["role"] == "user"), None)
    user_message = None
    if last_user is not None:
        user_message = {
            "id": uuid.uuid4().hex,
            "role": "user",
            "content": last_user["content"],
            "created_at": datetime.now().isoformat(),
        }

    return StreamingResponse(
        _relay(_service(request), messages, body.model, user_message),
        media_type=SSE_MEDIA_TYPE,
        headers=SSE_HEADERS,
    )


async def _relay(service: GenerationService, messages, model, user_message) -> AsyncIterator[str]:
    """Convert StreamEvents into SSE frames."""
    async for event in service.stream_chat(messages, model_hint=model, user_message=user_message):
        if isinstance(event, UserEcho):
            yield format_sse_data({"type": "user_message", "message": event.message})

        elif isinstance(event, Chunk):
            yield format_sse_data({"type": "chunk", "content": event.text})

        elif isinstance(event, Complete):
            frame = {
                "type": "complete",
                "content": event.final_content,
                "message": event.message,
            }
            if event.error:
                frame["error"] = event.error
            yield format_sse_data(frame)

        elif isinstance(event, Done):
            yield format_sse_done()


@router.post("/v1/artifacts")
async def create_artifact(body: ArtifactRequest, request: Request):
    """Generate a structured artifact (persona, flow, wireframe, ...)."""
    logger.info(f"Artifact request: tool={body.tool}, model={body.model}")
    try:
        outcome = await _service(request).generate_artifact(
            body.tool, body.inputs, context=body.context, model_hint=body.model,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Unknown artifact tool: {body.tool}") from e

    response = outcome.result.to_dict()
    response.pop("content", None)
    response["artifact"] = outcome.artifact
    return response


@router.post("/v1/generate/{modality}")
async def generate(modality: str, body: GenerateRequest, request: Request):
    """Single-prompt generation; media results are returned as data URLs."""
    try:
        kind = Modality(modality)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Unknown modality: {modality}") from e

    logger.info(f"Generate request: modality={kind.value}, model={body.model}")
    result = await _service(request).generate(
        kind, body.prompt, model=body.model, parameters=body.parameters,
    )
    return result.to_dict()
