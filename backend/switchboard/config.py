"""
config.py – loads config.yaml and exposes typed settings throughout the app.

Providers are configured through a `providers` dict keyed by provider name and
merged over built-in defaults, so a YAML file only needs the keys it changes.
String values matching ${VAR_NAME} are expanded from environment variables.
"""
from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


# ──────────────────────────────────────────────────────────────────────────────
# Env-var expansion helper
# ──────────────────────────────────────────────────────────────────────────────

_ENV_VAR_RE = re.compile(r"^\$\{([^}]+)\}$")


def _expand(value: Any) -> Any:
    """Expand '${VAR_NAME}' strings from the process environment."""
    if isinstance(value, str):
        m = _ENV_VAR_RE.match(value)
        if m:
            return os.environ.get(m.group(1), "")
    return value


# ──────────────────────────────────────────────────────────────────────────────
# Provider config (generic – works for every provider)
# ──────────────────────────────────────────────────────────────────────────────

class ProviderSettings(BaseModel):
    enabled: bool = True
    priority: int = 100            # lower = tried earlier by auto-select
    base_url: str = ""
    api_key: str = ""
    backend: str = ""              # remote-api only: openai | anthropic | ollama | lm_studio
    default_model: str = ""
    timeout: float = 60.0

    @field_validator("api_key", "base_url", "default_model", "backend", mode="before")
    @classmethod
    def expand_env_vars(cls, v: Any) -> Any:
        return _expand(v)


def _default_providers() -> dict[str, ProviderSettings]:
    return {
        "native": ProviderSettings(priority=1),
        "local-gpu": ProviderSettings(
            priority=2,
            default_model="Llama-3.2-1B-Instruct-Q4_K_M",
            timeout=600.0,
        ),
        "remote-api": ProviderSettings(
            priority=3,
            backend="openai",
            default_model="gpt-4o-mini",
            api_key="${OPENAI_API_KEY}",
        ),
    }


# ──────────────────────────────────────────────────────────────────────────────
# Generation / selection
# ──────────────────────────────────────────────────────────────────────────────

class GenerationConfig(BaseModel):
    temperature: float = Field(0.7, ge=0.0, le=1.0)
    top_k: int = Field(40, gt=0)
    max_tokens: Optional[int] = Field(None, gt=0)
    system_prompt: Optional[str] = None


class SelectionConfig(BaseModel):
    default_provider: Optional[str] = None
    # Remote backends send prompts off-device, so they need an explicit opt-in.
    allow_remote_auto_select: bool = False
    probe_timeout: float = 10.0


class LocalEngineConfig(BaseModel):
    cache_dir: str = "./data/models"
    n_gpu_layers: int = -1
    n_ctx: int = 4096
    download_timeout: float = 1800.0


class HardwareConfig(BaseModel):
    has_gpu: bool = False
    estimated_vram_gb: float = 0.0
    gpu_name: str = ""


class RecoveryConfig(BaseModel):
    settle_delay: float = 1.0
    state_dirs: list[str] = Field(default_factory=lambda: ["./data/models"])


class AppConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"


class Settings(BaseModel):
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    providers: dict[str, ProviderSettings] = Field(default_factory=_default_providers)
    local: LocalEngineConfig = Field(default_factory=LocalEngineConfig)
    hardware: HardwareConfig = Field(default_factory=HardwareConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    app: AppConfig = Field(default_factory=AppConfig)

    @model_validator(mode="before")
    @classmethod
    def merge_providers(cls, data: Any) -> Any:
        """Merge YAML providers with defaults so omitted keys still work."""
        if not isinstance(data, dict):
            return data
        defaults = _default_providers()
        raw_providers = data.get("providers") or {}
        merged: dict[str, Any] = {}
        # Start from defaults, overlay YAML values
        for name, default_cfg in defaults.items():
            yaml_cfg = raw_providers.get(name, {})
            if isinstance(yaml_cfg, dict):
                merged[name] = {**default_cfg.model_dump(), **yaml_cfg}
            else:
                merged[name] = default_cfg.model_dump()
        # Include any extra providers defined only in YAML
        for name, cfg in raw_providers.items():
            if name not in merged:
                merged[name] = cfg
        data["providers"] = merged
        return data


# ──────────────────────────────────────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────────────────────────────────────

def _find_config() -> Path:
    candidates = [
        Path(os.environ.get("SWITCHBOARD_CONFIG", "")),
        Path(__file__).parent.parent.parent / "config.yaml",  # repo root
        Path(__file__).parent.parent / "config.yaml",          # backend/
    ]
    for c in candidates:
        if c.is_file():
            return c
    return candidates[1]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    cfg_path = _find_config()
    if cfg_path.is_file():
        with open(cfg_path) as f:
            raw = yaml.safe_load(f) or {}
        return Settings(**raw)
    return Settings()


def reload_settings() -> Settings:
    """Clear the cache and reload config.yaml."""
    get_settings.cache_clear()
    return get_settings()
