"""
providers.py – provider discovery and switching endpoints.

GET  /api/providers                 – probe every registered provider
GET  /api/providers/active          – current provider and session
POST /api/providers/switch          – switch active provider (optionally model + sampling)
POST /api/providers/auto-select     – pick the first usable provider
GET  /api/providers/{name}/progress – download / load progress while initializing
GET  /api/providers/{name}/models   – models the provider can run
POST /api/providers/{name}/model    – change the model (reloads an active provider)
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..deps import get_manager, http_error
from ..errors import ProviderError
from ..services.provider_manager import ProviderManager
from ..services.providers import LocalGPUProvider, RemoteAPIProvider, SessionConfig

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/providers", tags=["providers"])


# ── Schemas ───────────────────────────────────────────────────────────────────

class SwitchRequest(BaseModel):
    provider: str
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=1.0)
    top_k: Optional[int] = Field(None, gt=0)
    max_tokens: Optional[int] = Field(None, gt=0)
    system_prompt: Optional[str] = None


class ModelRequest(BaseModel):
    model: str


def _active_payload(manager: ProviderManager) -> dict:
    provider = manager.get_active_provider()
    session = manager.active_session
    return {
        "provider": provider.name if provider else None,
        "kind": provider.kind.value if provider else None,
        "state": provider.state.value if provider else None,
        "session_id": session.id if session else None,
        "model": (session.config.model_id if session else None) or getattr(provider, "current_model_id", None),
    }


# ── Endpoints ─────────────────────────────────────────────────────────────────

@router.get("")
async def get_providers(manager: ProviderManager = Depends(get_manager)):
    """Availability of every registered provider, in registration order."""
    active = manager.get_active_provider()
    statuses = await manager.detect_providers()
    return {
        "providers": [
            {**s.to_dict(), "active": active is not None and active.name == s.descriptor.name}
            for s in statuses
        ]
    }


@router.get("/active")
async def get_active_provider(manager: ProviderManager = Depends(get_manager)):
    return _active_payload(manager)


@router.post("/switch")
async def switch_active_provider(req: SwitchRequest, manager: ProviderManager = Depends(get_manager)):
    """Switch to a different provider.

    Sampling fields that are omitted fall back to the `generation` section of config.yaml.
    """
    overrides = req.model_dump(exclude={"provider", "model"}, exclude_none=True)
    if req.model:
        overrides["model_id"] = req.model
    config = SessionConfig(**{**manager.default_session_config.model_dump(), **overrides})

    try:
        await manager.set_active_provider(req.provider, config)
    except ProviderError as exc:
        logger.warning("Switch to %s failed: %s", req.provider, exc)
        raise http_error(exc)
    return {"switched_to": req.provider, **_active_payload(manager)}


@router.post("/auto-select")
async def auto_select(manager: ProviderManager = Depends(get_manager)):
    provider = await manager.auto_select_provider()
    return {
        "selected": provider.name if provider else None,
        "failures": manager.last_failures,
        **_active_payload(manager),
    }


@router.get("/{name}/progress")
async def get_progress(name: str, manager: ProviderManager = Depends(get_manager)):
    provider = manager.get_provider(name)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"Provider '{name}' not found")
    progress = provider.get_progress()
    return {
        "provider": name,
        "state": provider.state.value,
        "progress": progress.to_dict() if progress else None,
    }


@router.get("/{name}/models")
async def get_provider_models(name: str, manager: ProviderManager = Depends(get_manager)):
    provider = manager.get_provider(name)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"Provider '{name}' not found")
    if isinstance(provider, LocalGPUProvider):
        models = [m.id for m in provider.available_models()]
        current = provider.current_model_id
    elif isinstance(provider, RemoteAPIProvider):
        models = await provider.list_models()
        current = provider.current_model_id
    else:
        models, current = [], None
    return {"provider": name, "models": models, "current": current}


@router.post("/{name}/model")
async def set_provider_model(name: str, req: ModelRequest, manager: ProviderManager = Depends(get_manager)):
    """Change the model a provider runs; an active provider is reloaded in place."""
    provider = manager.get_provider(name)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"Provider '{name}' not found")
    if not isinstance(provider, (LocalGPUProvider, RemoteAPIProvider)):
        raise HTTPException(status_code=400, detail=f"Provider '{name}' has a fixed model")

    try:
        await manager.reconfigure_provider(name, lambda p: p.set_model(req.model))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except ProviderError as exc:
        logger.warning("Model change on %s failed: %s", name, exc)
        raise http_error(exc)
    return {"provider": name, "current": provider.current_model_id, **_active_payload(manager)}
