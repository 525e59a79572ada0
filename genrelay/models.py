"""Data models for the generation relay."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================

class EndpointKind(str, Enum):
    """Which provider endpoint family a model is served from."""
    CHAT = "chat"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    TEXT = "text"


class Modality(str, Enum):
    """What the caller wants generated."""
    CHAT = "chat"
    TEXT = "text"
    CODE = "code"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class GenerationStatus(str, Enum):
    """Lifecycle of a single generation call."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    CONNECTING = "connecting"
    MODEL_LOADING = "model_loading"
    GENERATING = "generating"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStatus.COMPLETE, GenerationStatus.ERROR)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


# ============================================================================
# Core records
# ============================================================================

@dataclass(frozen=True)
class ModelDescriptor:
    """A model that can serve requests. Defined once at startup."""
    id: str
    display_name: str
    endpoint_kind: EndpointKind = EndpointKind.CHAT


@dataclass(frozen=True)
class Message:
    role: str
    content: Any


@dataclass(frozen=True)
class GenerationRequest:
    """
    One generation call.

    Chat requests carry ``messages``; single-prompt modalities carry
    ``prompt``. ``parameters`` is passed to the provider untouched.
    """
    modality: Modality = Modality.CHAT
    messages: Tuple[Message, ...] = ()
    prompt: Optional[str] = None
    model_hint: Optional[ModelDescriptor] = None
    parameters: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def chat(cls, messages, model_hint=None, **parameters) -> "GenerationRequest":
        msgs = tuple(
            m if isinstance(m, Message) else Message(role=m["role"], content=m["content"])
            for m in messages
        )
        return cls(modality=Modality.CHAT, messages=msgs, model_hint=model_hint,
                   parameters=parameters)

    def message_dicts(self) -> List[Dict[str, Any]]:
        if self.messages:
            return [{"role": m.role, "content": m.content} for m in self.messages]
        return [{"role": "user", "content": self.prompt or ""}]

    @property
    def prompt_text(self) -> str:
        """Text used when recording history."""
        if self.prompt is not None:
            return self.prompt
        for m in reversed(self.messages):
            if m.role == "user" and isinstance(m.content, str):
                return m.content
        return ""


@dataclass
class GenerationAttempt:
    """One adapter invocation inside an orchestrator run."""
    attempt_index: int
    model: ModelDescriptor
    started_at: float = field(default_factory=time.monotonic)
    outcome: Optional[AttemptOutcome] = None
    error_kind: Optional[str] = None


@dataclass
class ProviderResponse:
    """Normalized non-streaming provider response."""
    content: str
    latency_ms: int
    tokens_used: Optional[int] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class GenerationResult:
    """Outcome of an orchestrator call. Failures are data, not exceptions."""
    content: Optional[str] = None
    tokens_used: Optional[int] = None
    latency_ms: int = 0
    model_used: Optional[ModelDescriptor] = None
    error_message: Optional[str] = None
    exhausted: bool = False
    attempts: int = 0
    next_index: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error_message is None

    @classmethod
    def failure(cls, message: str, exhausted: bool = True, **kwargs) -> "GenerationResult":
        return cls(error_message=message, exhausted=exhausted, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.ok,
            "attempts": self.attempts,
            "latency_ms": self.latency_ms,
        }
        if self.ok:
            data["content"] = self.content
            data["tokens_used"] = self.tokens_used
            data["model"] = self.model_used.id if self.model_used else None
        else:
            data["error"] = self.error_message
            data["exhausted"] = self.exhausted
        return data


@dataclass
class GenerationState:
    """Snapshot of progress exposed to callers for UX rendering."""
    status: GenerationStatus = GenerationStatus.IDLE
    progress_percent: int = 0
    attempt_index: int = 0
    max_attempts: int = 1
    estimated_wait_seconds: int = 0
    status_message: str = ""


# ============================================================================
# Stream events
# ============================================================================

@dataclass(frozen=True)
class UserEcho:
    message: Dict[str, Any]


@dataclass(frozen=True)
class Chunk:
    text: str


@dataclass(frozen=True)
class Complete:
    final_content: str
    message: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Done:
    pass


StreamEvent = Union[UserEcho, Chunk, Complete, Done]


# ============================================================================
# HTTP request bodies
# ============================================================================

class ChatMessage(BaseModel):
    """OpenAI chat message format."""
    role: str
    content: Any


class ChatRequest(BaseModel):
    """Chat request; ``model`` is a role name or provider model id."""
    messages: List[ChatMessage]
    model: Optional[str] = None


class ArtifactRequest(BaseModel):
    tool: str
    inputs: Dict[str, str] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None


class GenerateRequest(BaseModel):
    prompt: str
    model: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
