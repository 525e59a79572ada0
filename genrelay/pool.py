"""Ordered pools of interchangeable models."""

import logging
from typing import Iterable, Iterator, List, Optional

from .models import EndpointKind, ModelDescriptor

logger = logging.getLogger(__name__)


class ModelPool:
    """
    Ordered, named collection of models with an affinity cursor.

    ``current`` is the index of the last model that succeeded. It is only a
    hint for where the next call should start; concurrent callers may
    overwrite each other's value.
    """

    def __init__(self, name: str, models: Iterable[ModelDescriptor], current: int = 0):
        self.name = name
        self.models: List[ModelDescriptor] = list(models)
        if not self.models:
            raise ValueError(f"Model pool '{name}' is empty")
        self._current = 0
        self.current = current

    def __len__(self) -> int:
        return len(self.models)

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self.models)

    def __getitem__(self, index: int) -> ModelDescriptor:
        return self.models[index % len(self.models)]

    @property
    def current(self) -> int:
        return self._current

    @current.setter
    def current(self, index: int):
        self._current = index % len(self.models)

    @property
    def current_model(self) -> ModelDescriptor:
        return self.models[self._current]

    def index_of(self, model_id: str) -> Optional[int]:
        for i, model in enumerate(self.models):
            if model.id == model_id:
                return i
        return None

    def start_index_for(self, hint: Optional[ModelDescriptor]) -> int:
        """Index to start from: the hinted model if pooled, else the cursor."""
        if hint is not None:
            index = self.index_of(hint.id)
            if index is not None:
                return index
            logger.debug(f"Model hint {hint.id} not in pool '{self.name}', using cursor")
        return self._current

    def get(self, model_id: str) -> Optional[ModelDescriptor]:
        index = self.index_of(model_id)
        return self.models[index] if index is not None else None

    @classmethod
    def from_ids(cls, name: str, ids: Iterable[str], kind: EndpointKind = EndpointKind.CHAT) -> "ModelPool":
        return cls(name, [ModelDescriptor(id=i, display_name=display_name_for(i), endpoint_kind=kind)
                          for i in ids])


def display_name_for(model_id: str) -> str:
    """``meta-llama/llama-3.2-3b-instruct:free`` -> ``llama-3.2-3b-instruct``."""
    name = model_id.rsplit("/", 1)[-1]
    return name.split(":", 1)[0]


# Default inference pools, one per modality.
IMAGE_MODELS = [
    ModelDescriptor("black-forest-labs/FLUX.1-schnell", "FLUX.1 Schnell", EndpointKind.IMAGE),
    ModelDescriptor("stabilityai/stable-diffusion-xl-base-1.0", "SDXL", EndpointKind.IMAGE),
    ModelDescriptor("stabilityai/stable-diffusion-3.5-large-turbo", "SD 3.5 Turbo", EndpointKind.IMAGE),
]

VIDEO_MODELS = [
    ModelDescriptor("Wan-AI/Wan2.2-T2V-14B", "Wan 2.2", EndpointKind.VIDEO),
    ModelDescriptor("guoyww/animatediff", "AnimateDiff", EndpointKind.VIDEO),
]

AUDIO_MODELS = [
    ModelDescriptor("facebook/mms-tts-eng", "MMS TTS", EndpointKind.AUDIO),
    ModelDescriptor("parler-tts/parler-tts-mini-v1", "Parler TTS", EndpointKind.AUDIO),
]

TEXT_MODELS = [
    ModelDescriptor("mistralai/Mistral-7B-Instruct-v0.3", "Mistral 7B", EndpointKind.TEXT),
    ModelDescriptor("Qwen/Qwen2.5-7B-Instruct", "Qwen 2.5", EndpointKind.TEXT),
    ModelDescriptor("microsoft/Phi-3-mini-4k-instruct", "Phi-3 Mini", EndpointKind.TEXT),
]
