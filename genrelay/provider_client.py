"""Provider adapters: one HTTP call against one named model."""

import base64
import json
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx

from .config import Config, config as default_config
from .errors import AdapterError, ErrorKind
from .models import GenerationRequest, ModelDescriptor, ProviderResponse

logger = logging.getLogger(__name__)

MEDIA_PREFIXES = ("image/", "video/", "audio/")


def _parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_message(body: Any) -> Optional[str]:
    """Pull a message out of the common provider error body shapes."""
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    if body.get("message"):
        return str(body["message"])
    return None


def error_from_response(
    status_code: int,
    content: bytes,
    headers: Mapping[str, str],
) -> AdapterError:
    """
    Convert a non-success HTTP response into a typed AdapterError.

    - 429 -> RATE_LIMITED (Retry-After used as hint)
    - 503 with ``estimated_time`` -> MODEL_LOADING
    - parseable JSON body -> UPSTREAM with the body's message
    - anything else -> TRANSPORT
    """
    if status_code == 429:
        return AdapterError(
            ErrorKind.RATE_LIMITED,
            "Rate limited (HTTP 429)",
            retry_after=_parse_retry_after(headers),
            status_code=status_code,
        )

    try:
        body = json.loads(content) if content else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None

    if body is None:
        return AdapterError(
            ErrorKind.TRANSPORT,
            f"HTTP {status_code} with unparseable body",
            status_code=status_code,
        )

    if status_code == 503 and isinstance(body, dict) and "estimated_time" in body:
        try:
            wait = float(body["estimated_time"])
        except (TypeError, ValueError):
            wait = None
        return AdapterError(
            ErrorKind.MODEL_LOADING,
            _error_message(body) or "Model is loading",
            retry_after=wait,
            status_code=status_code,
        )

    return AdapterError(
        ErrorKind.UPSTREAM,
        _error_message(body) or f"HTTP {status_code}",
        status_code=status_code,
    )


class ProviderAdapter(ABC):
    """Interface every provider backend implements."""

    @abstractmethod
    async def invoke(self, request: GenerationRequest, model: ModelDescriptor) -> ProviderResponse:
        """Blocking call. Raises AdapterError on any failure."""
        ...

    def stream(self, request: GenerationRequest, model: ModelDescriptor):
        """
        Open a streaming call.

        Returns an async context manager yielding an async iterator of raw
        body bytes. Raises AdapterError on entry if the provider refuses.
        """
        raise NotImplementedError(f"{type(self).__name__} does not support streaming")

    async def close(self) -> None:
        pass


class _HttpAdapter(ProviderAdapter):
    """Shared httpx plumbing."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        try:
            response = await self.client.post(url, json=payload, headers=self._headers())
        except httpx.TransportError as e:
            raise AdapterError(ErrorKind.TRANSPORT, f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise error_from_response(response.status_code, response.content, response.headers)
        return response


class ChatCompletionsAdapter(_HttpAdapter):
    """
    OpenAI-compatible ``/chat/completions`` client (OpenRouter by default).

    Non-streaming calls return the full text from
    ``choices[0].message.content``; streaming calls hand the raw SSE body
    to the caller for decoding.
    """

    def __init__(self, cfg: Optional[Config] = None, client: Optional[httpx.AsyncClient] = None):
        cfg = cfg or default_config
        super().__init__(cfg.openrouter_base_url, cfg.openrouter_api_key, cfg.request_timeout, client)
        self.temperature = cfg.temperature
        self.max_tokens = cfg.max_tokens
        self.site_url = cfg.site_url
        self.site_name = cfg.site_name

    @property
    def url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = self.site_url
        headers["X-Title"] = self.site_name
        return headers

    def _payload(self, request: GenerationRequest, model: ModelDescriptor, stream: bool) -> Dict[str, Any]:
        params = request.parameters
        return {
            "model": model.id,
            "messages": request.message_dicts(),
            "temperature": params.get("temperature", self.temperature),
            "max_tokens": params.get("max_tokens", self.max_tokens),
            "stream": stream,
        }

    async def invoke(self, request: GenerationRequest, model: ModelDescriptor) -> ProviderResponse:
        payload = self._payload(request, model, stream=False)
        logger.info(f"Chat request: model={model.id}, messages={len(payload['messages'])}")

        start = time.perf_counter()
        response = await self._post(self.url, payload)
        latency_ms = int((time.perf_counter() - start) * 1000)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise AdapterError(ErrorKind.TRANSPORT, "Provider returned a non-JSON body",
                               status_code=response.status_code) from e

        # Some providers report failures inside a 200 body
        message = _error_message(data) if isinstance(data, dict) and "error" in data else None
        if message:
            raise AdapterError(ErrorKind.UPSTREAM, message, status_code=response.status_code)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise AdapterError(ErrorKind.UPSTREAM, "Provider returned no content",
                               status_code=response.status_code)

        usage = data.get("usage") or {}
        return ProviderResponse(
            content=content,
            latency_ms=latency_ms,
            tokens_used=usage.get("total_tokens"),
            raw=data,
        )

    @asynccontextmanager
    async def stream(self, request: GenerationRequest, model: ModelDescriptor) -> AsyncIterator[AsyncIterator[bytes]]:
        payload = self._payload(request, model, stream=True)
        logger.info(f"Starting chat stream: model={model.id}, messages={len(payload['messages'])}")

        try:
            async with self.client.stream("POST", self.url, json=payload, headers=self._headers()) as response:
                if not response.is_success:
                    body = await response.aread()
                    raise error_from_response(response.status_code, body, response.headers)
                yield response.aiter_bytes()
        except httpx.TransportError as e:
            raise AdapterError(ErrorKind.TRANSPORT, f"{type(e).__name__}: {e}") from e


class InferenceAdapter(_HttpAdapter):
    """
    Hugging Face style inference client for text, image, video and audio.

    Cold models answer 503 with ``estimated_time``; that surfaces as a
    MODEL_LOADING error so the orchestrator can wait and retry.
    """

    def __init__(self, cfg: Optional[Config] = None, client: Optional[httpx.AsyncClient] = None):
        cfg = cfg or default_config
        super().__init__(cfg.hf_base_url, cfg.huggingface_api_key, cfg.request_timeout, client)

    async def invoke(self, request: GenerationRequest, model: ModelDescriptor) -> ProviderResponse:
        payload: Dict[str, Any] = {"inputs": request.prompt_text}
        if request.parameters:
            payload["parameters"] = dict(request.parameters)

        logger.info(f"Inference request: model={model.id}, kind={model.endpoint_kind.value}")

        start = time.perf_counter()
        response = await self._post(f"{self.base_url}/{model.id}", payload)
        latency_ms = int((time.perf_counter() - start) * 1000)

        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        if content_type.startswith(MEDIA_PREFIXES):
            encoded = base64.b64encode(response.content).decode("ascii")
            return ProviderResponse(
                content=f"data:{content_type};base64,{encoded}",
                latency_ms=latency_ms,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise AdapterError(ErrorKind.TRANSPORT, "Provider returned an unreadable body",
                               status_code=response.status_code) from e

        if isinstance(data, list) and data and isinstance(data[0], dict):
            data = data[0]
        if isinstance(data, dict):
            message = _error_message(data)
            if message and "generated_text" not in data:
                raise AdapterError(ErrorKind.UPSTREAM, message, status_code=response.status_code)
            text = data.get("generated_text")
            if text:
                return ProviderResponse(content=text, latency_ms=latency_ms, raw=data)

        raise AdapterError(ErrorKind.UPSTREAM, "Provider returned no content",
                           status_code=response.status_code)
