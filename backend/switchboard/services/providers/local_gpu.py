"""
local_gpu.py – Provider for GGUF models run on the local GPU via llama.cpp.

Uses llama-cpp-python (imported lazily) for inference and httpx to fetch model
weights into the cache directory on first use.

initialize() moves the progress snapshot through
  downloading (0-100 %) → loading → ready
and removes any partially downloaded file if it fails.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import httpx

from ...capabilities import CapabilityProfile
from ...errors import InitializationError, ResourceLossError
from ...utils.timeouts import with_timeout
from ..streaming import ChunkReader, ThreadedIteratorReader
from .base import Availability, ChunkMode, ModelProvider, ProviderConfig, ProviderKind, Session

logger = logging.getLogger(__name__)

_GB = 1024 ** 3


@dataclass(frozen=True)
class LocalModelInfo:
    id: str
    name: str
    description: str
    estimated_vram_gb: float
    context_length: int
    url: str
    download_size_bytes: int

    @property
    def filename(self) -> str:
        return self.url.rsplit("/", 1)[-1]


LOCAL_MODELS: list[LocalModelInfo] = [
    LocalModelInfo(
        id="Llama-3.2-1B-Instruct-Q4_K_M",
        name="Llama 3.2 1B",
        description="Compact Llama model, good for most tasks",
        estimated_vram_gb=1.5,
        context_length=4096,
        url="https://huggingface.co/bartowski/Llama-3.2-1B-Instruct-GGUF/resolve/main/Llama-3.2-1B-Instruct-Q4_K_M.gguf",
        download_size_bytes=int(0.81 * _GB),
    ),
    LocalModelInfo(
        id="Llama-3.2-3B-Instruct-Q4_K_M",
        name="Llama 3.2 3B",
        description="Larger Llama model, better quality",
        estimated_vram_gb=3.0,
        context_length=4096,
        url="https://huggingface.co/bartowski/Llama-3.2-3B-Instruct-GGUF/resolve/main/Llama-3.2-3B-Instruct-Q4_K_M.gguf",
        download_size_bytes=int(2.02 * _GB),
    ),
    LocalModelInfo(
        id="Mistral-7B-Instruct-v0.3-Q4_K_M",
        name="Mistral 7B",
        description="High-quality instruction-following model",
        estimated_vram_gb=5.0,
        context_length=8192,
        url="https://huggingface.co/bartowski/Mistral-7B-Instruct-v0.3-GGUF/resolve/main/Mistral-7B-Instruct-v0.3-Q4_K_M.gguf",
        download_size_bytes=int(4.37 * _GB),
    ),
    LocalModelInfo(
        id="Phi-3.5-mini-instruct-Q4_K_M",
        name="Phi-3.5 Mini",
        description="Microsoft Phi model, efficient and capable",
        estimated_vram_gb=2.5,
        context_length=4096,
        url="https://huggingface.co/bartowski/Phi-3.5-mini-instruct-GGUF/resolve/main/Phi-3.5-mini-instruct-Q4_K_M.gguf",
        download_size_bytes=int(2.39 * _GB),
    ),
]

DEFAULT_LOCAL_MODEL = LOCAL_MODELS[0].id

# Substrings of llama.cpp / driver errors that mean the device itself went away.
_RESOURCE_LOSS_MARKERS = (
    "out of memory",
    "cuda error",
    "device lost",
    "devicelost",
    "ggml_metal",
    "vk::",
)


def get_model_info(model_id: str) -> Optional[LocalModelInfo]:
    return next((m for m in LOCAL_MODELS if m.id == model_id), None)


def _is_resource_loss(exc: BaseException) -> bool:
    message = str(exc).lower()
    return isinstance(exc, MemoryError) or any(marker in message for marker in _RESOURCE_LOSS_MARKERS)


def _load_llama(model_path: Path, n_gpu_layers: int, n_ctx: int) -> Any:
    """Load a GGUF file with llama-cpp-python. Runs in a worker thread."""
    try:
        # Import here to avoid startup cost if not using this provider
        from llama_cpp import Llama
    except ImportError:
        raise InitializationError(
            "llama-cpp-python not installed. Install with:\n"
            "  pip install 'switchboard[local]'\n"
            "For GPU support:\n"
            "  CMAKE_ARGS='-DGGML_CUDA=on' pip install llama-cpp-python",
            provider=LocalGPUProvider.name,
            retryable=False,
        )
    return Llama(model_path=str(model_path), n_gpu_layers=n_gpu_layers, n_ctx=n_ctx, verbose=False)


class LocalGPUProvider(ModelProvider):
    name = "local-gpu"
    kind = ProviderKind.LOCAL
    description = "Local GGUF inference on the GPU (llama.cpp)"
    chunk_mode = ChunkMode.DELTA

    def __init__(
        self,
        cache_dir: str | Path,
        profile: Optional[CapabilityProfile] = None,
        model_id: str = DEFAULT_LOCAL_MODEL,
        n_gpu_layers: int = -1,
        n_ctx: int = 4096,
        download_timeout: float = 1800.0,
        loader: Optional[Callable[[Path, int, int], Any]] = None,
    ) -> None:
        super().__init__()
        self.cache_dir = Path(cache_dir).expanduser()
        self.profile = profile or CapabilityProfile()
        self.n_gpu_layers = n_gpu_layers
        self.n_ctx = n_ctx
        self.download_timeout = download_timeout
        self._model_id = model_id
        self._loader = loader or _load_llama
        self._engine: Any = None
        self._partial_path: Optional[Path] = None

    @property
    def current_model_id(self) -> str:
        return self._model_id

    @staticmethod
    def available_models() -> list[LocalModelInfo]:
        return list(LOCAL_MODELS)

    def _model_path(self, info: LocalModelInfo) -> Path:
        return self.cache_dir / info.filename

    # ── Availability ──────────────────────────────────────────────────────────

    async def _check_availability(self) -> Availability:
        info = get_model_info(self._model_id)
        if info is None:
            return Availability.unavailable(f"Unknown local model '{self._model_id}'")
        if not self.profile.has_gpu:
            return Availability.unavailable("No GPU detected on this host")
        if not self.profile.fits(info.estimated_vram_gb):
            return Availability.unavailable(
                f"Insufficient GPU memory for {info.name} "
                f"(estimated {self.profile.estimated_vram_gb:.1f}GB, need {info.estimated_vram_gb}GB)"
            )
        if self._model_path(info).is_file():
            return Availability(available=True)
        return Availability(
            available=True,
            requires_download=True,
            download_size_bytes=info.download_size_bytes,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def _effective_config(self, config: ProviderConfig) -> ProviderConfig:
        # Only the model matters here.
        return ProviderConfig(model_id=config.model_id or self._model_id)

    async def _setup(self, config: ProviderConfig) -> None:
        model_id = config.model_id or self._model_id
        info = get_model_info(model_id)
        if info is None:
            known = ", ".join(m.id for m in LOCAL_MODELS)
            raise InitializationError(
                f"Unknown local model '{model_id}'. Available: {known}",
                provider=self.name,
                retryable=False,
            )
        self._model_id = model_id

        path = self._model_path(info)
        if not path.is_file():
            await with_timeout(
                self._download(info, path),
                self.download_timeout,
                f"Download of {info.name}",
                provider=self.name,
            )

        self._set_progress("loading", 0, info.name)
        logger.info("Loading %s (n_gpu_layers=%d, n_ctx=%d)", path.name, self.n_gpu_layers, self.n_ctx)
        self._engine = await asyncio.to_thread(self._loader, path, self.n_gpu_layers, self.n_ctx)
        self._set_progress("ready", 100, info.name)

    async def _download(self, info: LocalModelInfo, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(path.name + ".part")
        self._partial_path = partial
        self._set_progress("downloading", 0, info.filename)
        logger.info("Downloading %s from %s", info.filename, info.url)

        timeout = httpx.Timeout(60.0, connect=10.0)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            async with client.stream("GET", info.url) as resp:
                resp.raise_for_status()
                total = int(resp.headers.get("content-length") or info.download_size_bytes)
                received = 0
                with open(partial, "wb") as f:
                    async for block in resp.aiter_bytes():
                        f.write(block)
                        received += len(block)
                        self._set_progress("downloading", received / total * 100 if total else 0, info.filename)

        partial.rename(path)
        self._partial_path = None
        logger.info("Downloaded %s (%d bytes)", info.filename, received)

    async def _teardown(self) -> None:
        if self._engine is not None:
            close = getattr(self._engine, "close", None)
            if close is not None:
                close()
            self._engine = None
        if self._partial_path is not None:
            self._partial_path.unlink(missing_ok=True)
            self._partial_path = None

    async def set_model(self, model_id: str) -> None:
        """Switch the loaded model; disposes the current one first.

        While registered with a manager, call this via ProviderManager.reconfigure_provider().
        """
        if get_model_info(model_id) is None:
            known = ", ".join(m.id for m in LOCAL_MODELS)
            raise ValueError(f"Invalid model ID: {model_id}. Available models: {known}")
        if model_id == self._model_id and self.is_ready:
            return
        await self.dispose()
        self._model_id = model_id
        await self.initialize(ProviderConfig(model_id=model_id))

    # ── Streaming ─────────────────────────────────────────────────────────────

    async def _open_stream(self, session: Session, text: str) -> ChunkReader:
        completion = self._engine.create_chat_completion(
            messages=list(session.history),
            temperature=session.config.temperature,
            top_k=session.config.top_k,
            max_tokens=session.config.max_tokens or 2048,
            stream=True,
        )
        return ThreadedIteratorReader(self._iter_deltas(completion))

    def _iter_deltas(self, completion: Iterator[dict]) -> Iterator[str]:
        try:
            for chunk in completion:
                choices = chunk.get("choices") or [{}]
                delta = choices[0].get("delta", {}).get("content")
                if delta:
                    yield delta
        except Exception as exc:
            if _is_resource_loss(exc):
                raise ResourceLossError(
                    f"GPU resource lost during generation: {exc}", provider=self.name
                ) from exc
            raise
        finally:
            close = getattr(completion, "close", None)
            if close is not None:
                close()
