"""
providers/__init__.py – Provider construction from config.

Exports:
  build_provider()   – instantiate one provider by name from current settings
  build_providers()  – every enabled provider, in priority order
  PROVIDER_NAMES     – set of all built-in provider keys
"""
from __future__ import annotations

import logging
from typing import Optional

from ...capabilities import CapabilityProfile
from ...config import Settings, get_settings
from .base import (
    Availability,
    ChunkMode,
    DownloadProgress,
    ModelProvider,
    ProviderConfig,
    ProviderDescriptor,
    ProviderKind,
    ProviderState,
    Session,
    SessionConfig,
)
from .local_gpu import LocalGPUProvider
from .native import NativeProvider, PlatformModel
from .remote_api import API_BACKENDS, RemoteAPIProvider

logger = logging.getLogger(__name__)

PROVIDER_NAMES = {NativeProvider.name, LocalGPUProvider.name, RemoteAPIProvider.name}

__all__ = [
    "Availability",
    "ChunkMode",
    "DownloadProgress",
    "ModelProvider",
    "ProviderConfig",
    "ProviderDescriptor",
    "ProviderKind",
    "ProviderState",
    "Session",
    "SessionConfig",
    "NativeProvider",
    "LocalGPUProvider",
    "RemoteAPIProvider",
    "PROVIDER_NAMES",
    "build_provider",
    "build_providers",
]


def build_provider(
    name: str,
    settings: Optional[Settings] = None,
    platform: Optional[PlatformModel] = None,
) -> ModelProvider:
    """Instantiate the named provider from config."""
    settings = settings or get_settings()
    cfg = settings.providers.get(name)
    if cfg is None:
        raise ValueError(f"Provider '{name}' is not configured in config.yaml")

    if name == NativeProvider.name:
        return NativeProvider(platform=platform)

    if name == LocalGPUProvider.name:
        return LocalGPUProvider(
            cache_dir=settings.local.cache_dir,
            profile=CapabilityProfile.from_settings(settings.hardware),
            model_id=cfg.default_model or LocalGPUProvider.available_models()[0].id,
            n_gpu_layers=settings.local.n_gpu_layers,
            n_ctx=settings.local.n_ctx,
            download_timeout=settings.local.download_timeout,
        )

    if name == RemoteAPIProvider.name:
        backend = cfg.backend or "openai"
        if backend not in API_BACKENDS:
            raise ValueError(f"Unknown remote backend '{backend}'. Known: {sorted(API_BACKENDS)}")
        return RemoteAPIProvider(
            backend=backend,
            model_id=cfg.default_model or None,
            api_key=cfg.api_key,
            endpoint=cfg.base_url,
            timeout=cfg.timeout,
            probe_timeout=settings.selection.probe_timeout,
        )

    raise ValueError(f"Unknown provider '{name}'. Known: {sorted(PROVIDER_NAMES)}")


def build_providers(
    settings: Optional[Settings] = None,
    platform: Optional[PlatformModel] = None,
) -> list[ModelProvider]:
    """Return every enabled provider, lowest `priority` first."""
    settings = settings or get_settings()
    providers: list[ModelProvider] = []
    enabled = sorted(
        ((name, cfg) for name, cfg in settings.providers.items() if cfg.enabled),
        key=lambda item: item[1].priority,
    )
    for name, _cfg in enabled:
        try:
            providers.append(build_provider(name, settings, platform=platform))
        except ValueError as exc:
            logger.warning("Skipping provider %s: %s", name, exc)
    return providers
