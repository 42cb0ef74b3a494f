"""
remote_api.py – Provider that forwards prompts to an external inference API.

Backends:
  openai     – official OpenAI API (SDK)
  anthropic  – Anthropic Messages API (SDK)
  ollama     – Ollama server, native NDJSON API (httpx)
  lm_studio  – any OpenAI-compatible server (SDK with a custom base_url)

Prompts leave the device for every backend except a keyless one on a loopback
endpoint, so the manager never auto-selects this provider without an opt-in.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx

from ...errors import InitializationError, ProbeTimeoutError
from ...utils.timeouts import with_timeout
from ..streaming import ChunkReader
from .backends.anthropic_backend import AnthropicBackend
from .backends.ollama_backend import OllamaBackend
from .backends.openai_backend import OpenAIBackend
from .base import Availability, ChunkMode, ModelProvider, ProviderConfig, ProviderKind, Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendInfo:
    name: str
    models: tuple[str, ...]
    default_endpoint: str
    requires_api_key: bool


API_BACKENDS: dict[str, BackendInfo] = {
    "openai": BackendInfo(
        name="OpenAI",
        models=("gpt-4o-mini", "gpt-4o", "gpt-4.1-mini", "gpt-3.5-turbo"),
        default_endpoint="https://api.openai.com/v1",
        requires_api_key=True,
    ),
    "anthropic": BackendInfo(
        name="Anthropic",
        models=("claude-3-5-haiku-latest", "claude-3-5-sonnet-latest", "claude-3-opus-latest"),
        default_endpoint="https://api.anthropic.com",
        requires_api_key=True,
    ),
    "ollama": BackendInfo(
        name="Ollama",
        models=("llama3.2", "mistral", "phi3", "qwen2.5"),
        default_endpoint="http://localhost:11434",
        requires_api_key=False,
    ),
    "lm_studio": BackendInfo(
        name="LM Studio",
        models=(),  # whatever the server has loaded
        default_endpoint="http://localhost:1234/v1",
        requires_api_key=False,
    ),
}

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class RemoteAPIProvider(ModelProvider):
    name = "remote-api"
    kind = ProviderKind.REMOTE_API
    description = "External API (OpenAI / Anthropic / Ollama / LM Studio)"
    chunk_mode = ChunkMode.DELTA

    def __init__(
        self,
        backend: str = "openai",
        model_id: Optional[str] = None,
        api_key: str = "",
        endpoint: str = "",
        timeout: float = 60.0,
        probe_timeout: float = 10.0,
    ) -> None:
        super().__init__()
        if backend not in API_BACKENDS:
            raise ValueError(f"Unknown backend '{backend}'. Known: {sorted(API_BACKENDS)}")
        self._backend = backend
        self._model_id = model_id or self._first_model(backend)
        self._api_key = api_key
        self._endpoint = endpoint
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self._client = None

    @staticmethod
    def _first_model(backend: str) -> str:
        models = API_BACKENDS[backend].models
        return models[0] if models else "local-model"

    # ── Identity ──────────────────────────────────────────────────────────────

    @property
    def backend(self) -> str:
        return self._backend

    @property
    def backend_info(self) -> BackendInfo:
        return API_BACKENDS[self._backend]

    @property
    def current_model_id(self) -> str:
        return self._model_id

    @property
    def endpoint(self) -> str:
        return self._endpoint or self.backend_info.default_endpoint

    def requires_privacy_warning(self) -> bool:
        """True when prompts will leave this machine."""
        if self.backend_info.requires_api_key:
            return True
        host = urlparse(self.endpoint).hostname or ""
        return host not in _LOOPBACK_HOSTS

    def get_models(self) -> list[str]:
        return list(self.backend_info.models)

    async def list_models(self) -> list[str]:
        """Models the backend offers right now.

        Ollama is asked via /api/tags; every other backend (or an Ollama server
        that cannot be reached) falls back to the static list.
        """
        if self._backend != "ollama":
            return self.get_models()
        backend = OllamaBackend(self.endpoint, self.timeout)
        try:
            models = await backend.list_models()
        finally:
            await backend.aclose()
        return models or self.get_models()

    def _make_backend(self):
        if self._backend == "openai":
            return OpenAIBackend(self._api_key, self._endpoint or None, self.timeout)
        if self._backend == "anthropic":
            return AnthropicBackend(self._api_key, self._endpoint or None, self.timeout)
        if self._backend == "ollama":
            return OllamaBackend(self.endpoint, self.timeout)
        return OpenAIBackend(self._api_key, self.endpoint, self.timeout)

    # ── Availability ──────────────────────────────────────────────────────────

    async def _check_availability(self) -> Availability:
        info = self.backend_info
        if info.requires_api_key:
            if not self._api_key:
                return Availability.unavailable(
                    f"{info.name} API key not configured. Add it to config.yaml or the environment."
                )
            return Availability(available=True)

        # Keyless backends are servers we can actually reach (or not).
        backend = self._make_backend()
        try:
            await with_timeout(
                backend.probe(self.probe_timeout),
                self.probe_timeout,
                f"{info.name} probe",
                provider=self.name,
            )
        except (httpx.HTTPError, ProbeTimeoutError) as exc:
            return Availability.unavailable(f"Cannot reach {info.name} at {self.endpoint}: {exc}")
        finally:
            await backend.aclose()
        return Availability(available=True)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def _effective_config(self, config: ProviderConfig) -> ProviderConfig:
        return ProviderConfig(
            model_id=config.model_id or self._model_id,
            api_key=config.api_key or self._api_key or None,
            api_endpoint=config.api_endpoint or self.endpoint,
        )

    async def _setup(self, config: ProviderConfig) -> None:
        if config.model_id:
            self._model_id = config.model_id
        if config.api_key:
            self._api_key = config.api_key
        if config.api_endpoint:
            self._endpoint = config.api_endpoint

        info = self.backend_info
        if info.requires_api_key and not self._api_key:
            raise InitializationError(
                f"{info.name} requires an API key. Please configure it.",
                provider=self.name,
                retryable=False,
            )
        self._client = self._make_backend()
        logger.info("Remote API ready: %s (model=%s)", info.name, self._model_id)

    async def _teardown(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    async def set_backend(self, backend: str) -> None:
        """Change backend; the provider must be initialized again afterwards.

        Setters that dispose go through ProviderManager.reconfigure_provider()
        while the provider is registered.
        """
        if backend not in API_BACKENDS:
            raise ValueError(f"Invalid backend: {backend}")
        await self.dispose()
        self._backend = backend
        self._model_id = self._first_model(backend)

    async def set_model(self, model_id: str) -> None:
        info = self.backend_info
        # Keyless servers run whatever has been pulled; only hosted APIs have a fixed list.
        if info.requires_api_key and model_id not in info.models:
            raise ValueError(f"Invalid model for {info.name}: {model_id}")
        self._model_id = model_id

    async def set_api_key(self, api_key: str) -> None:
        """Store a new key; an initialized provider is disposed so the next initialize() uses it."""
        self._api_key = api_key
        if self.is_ready:
            await self.dispose()

    async def set_endpoint(self, endpoint: str) -> None:
        self._endpoint = endpoint
        if self.is_ready:
            await self.dispose()

    # ── Streaming ─────────────────────────────────────────────────────────────

    async def _open_stream(self, session: Session, text: str) -> ChunkReader:
        model = session.config.model_id or self._model_id
        return await self._client.stream(model, list(session.history), session.config)
