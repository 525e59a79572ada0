"""Relay configuration."""

import os
from dataclasses import dataclass, field
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

DEFAULT_MODEL_MAP = (
    "coder=mistralai/devstral-2512:free,"
    "marketing=xiaomi/mimo-v2-flash:free,"
    "planner=allenai/olmo-3.1-32b-think:free,"
    "analyst=deepseek/deepseek-chat:free"
)

DEFAULT_CHAT_MODELS = (
    "meta-llama/llama-3.2-3b-instruct:free,"
    "qwen/qwen-2.5-7b-instruct:free,"
    "google/gemma-2-9b-it:free,"
    "mistralai/mistral-7b-instruct:free,"
    "deepseek/deepseek-chat:free"
)


def parse_model_map(raw: str) -> Dict[str, str]:
    """Parse ``role=model,role=model`` into a dict, ignoring malformed pairs."""
    mapping = {}
    for pair in raw.split(","):
        role, sep, model_id = pair.partition("=")
        if sep and role.strip() and model_id.strip():
            mapping[role.strip()] = model_id.strip()
    return mapping


def _split(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Config:
    """Configuration loaded from environment variables."""

    # Server
    host: str = field(default_factory=lambda: os.getenv("GENRELAY_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.getenv("GENRELAY_PORT", "8000")))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # Chat provider (OpenAI-compatible)
    openrouter_api_key: str = field(default_factory=lambda: os.getenv("OPENROUTER_API_KEY", ""))
    openrouter_base_url: str = field(default_factory=lambda:
        os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"))
    site_url: str = field(default_factory=lambda: os.getenv("SITE_URL", "http://localhost:8080"))
    site_name: str = field(default_factory=lambda: os.getenv("SITE_NAME", "genrelay"))

    # Inference provider (image/video/audio/text)
    huggingface_api_key: str = field(default_factory=lambda: os.getenv("HUGGINGFACE_API_KEY", ""))
    hf_base_url: str = field(default_factory=lambda:
        os.getenv("HF_BASE_URL", "https://api-inference.huggingface.co/models"))

    # Models
    model_map: Dict[str, str] = field(default_factory=lambda:
        parse_model_map(os.getenv("MODEL_MAP", DEFAULT_MODEL_MAP)))
    default_role: str = field(default_factory=lambda: os.getenv("DEFAULT_ROLE", "planner"))
    chat_models: List[str] = field(default_factory=lambda:
        _split(os.getenv("CHAT_MODELS", DEFAULT_CHAT_MODELS)))

    # Sampling
    temperature: float = field(default_factory=lambda: float(os.getenv("TEMPERATURE", "0.7")))
    max_tokens: int = field(default_factory=lambda: int(os.getenv("MAX_TOKENS", "4096")))

    # Retry behaviour
    request_timeout: float = field(default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT", "120")))
    model_loading_cap: float = field(default_factory=lambda: float(os.getenv("MODEL_LOADING_CAP", "30")))
    max_loading_waits: int = field(default_factory=lambda: int(os.getenv("MAX_LOADING_WAITS", "3")))
    retry_pause: float = field(default_factory=lambda: float(os.getenv("RETRY_PAUSE", "0.5")))
    video_max_attempts: int = field(default_factory=lambda: int(os.getenv("VIDEO_MAX_ATTEMPTS", "5")))

    # State / history
    state_reset_delay: float = field(default_factory=lambda: float(os.getenv("STATE_RESET_DELAY", "2.0")))
    history_path: str = field(default_factory=lambda: os.getenv("HISTORY_PATH", ""))
    history_max_entries: int = field(default_factory=lambda: int(os.getenv("HISTORY_MAX_ENTRIES", "500")))

    def resolve_role(self, role: str) -> str:
        """Map a symbolic role name to a concrete provider model id.

        Unknown roles fall back to ``default_role``. A value that already
        looks like a provider id (contains ``/``) is passed through.
        """
        if role in self.model_map:
            return self.model_map[role]
        if "/" in role:
            return role
        return self.model_map.get(self.default_role, role)

    def chat_pool_ids(self) -> List[str]:
        """Role-mapped models first, then ``chat_models``, without duplicates."""
        return list(dict.fromkeys([*self.model_map.values(), *self.chat_models]))


# Global config instance
config = Config()
