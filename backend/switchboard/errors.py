"""
errors.py – exception taxonomy shared by providers, the manager and the HTTP layer.

  ProviderError            – root of every provider failure (carries provider + retryable)
    ProviderUnavailableError – availability probe said no
      ProviderNotFoundError  – no provider registered under that name
    ProbeTimeoutError        – a network probe / download lost the race against its timer
    InitializationError      – setup or model download failed
    SessionError             – session creation failed
    StreamingError           – mid-generation transport failure
    ResourceLossError        – accelerator / device loss (routed to the recovery supervisor)

  StreamCancelled          – control condition, deliberately NOT a ProviderError

describe_error() turns any exception into an ErrorContext with a user-facing message.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ProviderError(Exception):
    """Base exception for provider failures."""

    def __init__(self, message: str, provider: str = "", retryable: bool = True):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable


class ProviderUnavailableError(ProviderError):
    """The provider cannot serve requests right now; try the next one."""


class ProviderNotFoundError(ProviderUnavailableError):
    def __init__(self, name: str):
        super().__init__(f"Provider '{name}' is not registered", provider=name, retryable=False)


class ProbeTimeoutError(ProviderError):
    """A network-bound probe or download did not finish in time."""

    def __init__(self, what: str, timeout: float, provider: str = ""):
        super().__init__(f"{what} timed out after {timeout:g}s", provider=provider)
        self.timeout = timeout


class InitializationError(ProviderError):
    pass


class SessionError(ProviderError):
    pass


class StreamingError(ProviderError):
    """Generation failed mid-stream. The session stays usable."""


class ResourceLossError(ProviderError):
    """The accelerator context (GPU device, VRAM) went away under the provider."""

    def __init__(self, message: str, provider: str = "", reason: str = "device-lost"):
        super().__init__(message, provider=provider, retryable=True)
        self.reason = reason


class StreamCancelled(Exception):
    """Raised exactly once to the consumer of a cancelled stream."""

    def __init__(self, message: str = "Stream cancelled"):
        super().__init__(message)


# ──────────────────────────────────────────────────────────────────────────────
# User-facing error descriptions
# ──────────────────────────────────────────────────────────────────────────────

class ErrorCategory(str, Enum):
    MODEL_LOAD_FAILURE = "model-load-failure"
    MEMORY_EXHAUSTION = "memory-exhaustion"
    STORAGE_QUOTA_EXCEEDED = "storage-quota-exceeded"
    GPU_CONTEXT_LOSS = "gpu-context-loss"
    NETWORK_ERROR = "network-error"
    INFERENCE_ERROR = "inference-error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    category: ErrorCategory
    technical_message: str
    user_message: str
    troubleshooting_steps: list[str] = field(default_factory=list)
    recoverable: bool = True

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "message": self.user_message,
            "detail": self.technical_message,
            "troubleshooting": self.troubleshooting_steps,
            "recoverable": self.recoverable,
        }

    def format_markdown(self) -> str:
        lines = [self.user_message]
        if self.troubleshooting_steps:
            lines += ["", "**Troubleshooting steps:**", ""]
            lines += [f"{i}. {step}" for i, step in enumerate(self.troubleshooting_steps, 1)]
        if not self.recoverable:
            lines += ["", "_This error may require resetting the application._"]
        return "\n".join(lines)


_GUIDANCE: dict[ErrorCategory, tuple[str, list[str], bool]] = {
    ErrorCategory.MODEL_LOAD_FAILURE: (
        "The AI model could not be loaded.",
        [
            "Check that the model download finished and the cache directory is writable",
            "Verify there is enough free disk space for the model weights",
            "Try a smaller model or switch to a different provider",
        ],
        True,
    ),
    ErrorCategory.MEMORY_EXHAUSTION: (
        "The system ran out of memory while generating.",
        [
            "Close other GPU-heavy applications",
            "Start a new conversation to shrink the context",
            "Pick a smaller model or reduce max_tokens",
        ],
        True,
    ),
    ErrorCategory.STORAGE_QUOTA_EXCEEDED: (
        "Local storage is full.",
        [
            "Remove unused models from the cache directory",
            "Use the reset-application action to clear all local state",
        ],
        True,
    ),
    ErrorCategory.GPU_CONTEXT_LOSS: (
        "The connection to the GPU was lost.",
        [
            "The system will try to reinitialize the provider automatically",
            "Update your graphics drivers",
            "If the issue persists, use the reset-application action",
        ],
        True,
    ),
    ErrorCategory.NETWORK_ERROR: (
        "A network request failed.",
        [
            "Check your internet connection",
            "Verify API keys and endpoints in config.yaml",
            "Local providers keep working without network access",
        ],
        True,
    ),
    ErrorCategory.INFERENCE_ERROR: (
        "The model hit an error while generating a response.",
        [
            "Try rephrasing your message",
            "Start a new conversation to reset context",
            "Switch to a different provider",
        ],
        True,
    ),
    ErrorCategory.CANCELLED: ("Generation was stopped.", [], True),
    ErrorCategory.UNKNOWN: (
        "Something went wrong. Check the server log for details.",
        ["Retry the request", "If the issue persists, use the reset-application action"],
        False,
    ),
}


def detect_error_category(exc: BaseException) -> ErrorCategory:
    """Classify *exc* by type first, then by message keywords."""
    if isinstance(exc, StreamCancelled):
        return ErrorCategory.CANCELLED
    if isinstance(exc, ResourceLossError):
        return ErrorCategory.GPU_CONTEXT_LOSS
    if isinstance(exc, InitializationError):
        return ErrorCategory.MODEL_LOAD_FAILURE
    if isinstance(exc, (ProbeTimeoutError, ProviderUnavailableError)):
        return ErrorCategory.NETWORK_ERROR

    message = str(exc).lower()
    name = type(exc).__name__.lower()
    if "quota" in message or "no space left" in message:
        return ErrorCategory.STORAGE_QUOTA_EXCEEDED
    if "out of memory" in message or "oom" in message.split() or isinstance(exc, MemoryError):
        return ErrorCategory.MEMORY_EXHAUSTION
    if "gpu" in message and ("lost" in message or "context" in message):
        return ErrorCategory.GPU_CONTEXT_LOSS
    if "model" in message and ("load" in message or "download" in message):
        return ErrorCategory.MODEL_LOAD_FAILURE
    if "network" in message or "connect" in message or "timeout" in name:
        return ErrorCategory.NETWORK_ERROR
    if isinstance(exc, StreamingError) or "generation" in message or "inference" in message:
        return ErrorCategory.INFERENCE_ERROR
    return ErrorCategory.UNKNOWN


def describe_error(exc: BaseException, category: Optional[ErrorCategory] = None) -> ErrorContext:
    category = category or detect_error_category(exc)
    user_message, steps, recoverable = _GUIDANCE[category]
    return ErrorContext(
        category=category,
        technical_message=str(exc),
        user_message=user_message,
        troubleshooting_steps=list(steps),
        recoverable=recoverable,
    )
