"""Error taxonomy for provider calls and artifact parsing."""

from enum import Enum
from typing import Optional

# Shown to users whenever every model in the budget failed.
USER_SAFE_MESSAGE = "AI models are currently busy, please try again"


class GenRelayError(Exception):
    """Base class for relay errors."""


class ErrorKind(str, Enum):
    """Classification of a failed provider call."""
    RATE_LIMITED = "rate_limited"
    MODEL_LOADING = "model_loading"
    TRANSPORT = "transport"
    UPSTREAM = "upstream"


class AdapterError(GenRelayError):
    """
    Typed failure raised by a provider adapter.

    Adapters build these from status codes and response bodies so the
    orchestrator never has to inspect free-text messages.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retry_after = retry_after
        self.status_code = status_code

    def __repr__(self) -> str:
        return (f"AdapterError(kind={self.kind.value}, status={self.status_code}, "
                f"retry_after={self.retry_after}, message={self.message!r})")


class ArtifactParseError(GenRelayError):
    """Model output could not be turned into a JSON object."""

    def __init__(self, message: str, text: str = ""):
        super().__init__(message)
        self.text = text


class InvalidTransition(GenRelayError):
    """Generation state machine was driven out of order."""
