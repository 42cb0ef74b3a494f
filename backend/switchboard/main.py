"""
main.py – FastAPI application entry point for Switchboard.

Run locally:
    uvicorn switchboard.main:app --app-dir backend --reload --port 8000
"""
from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .routers import chat, providers, recovery
from .services.chat_service import ChatService
from .services.provider_manager import ProviderManager

# ──────────────────────────────────────────────────────────────────────────────
# Logging
# ──────────────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=get_settings().app.log_level.upper(),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[ProviderManager] = None,
    chat_service: Optional[ChatService] = None,
    auto_select: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    manager = manager or ProviderManager.from_settings(settings)
    chat_service = chat_service or ChatService.from_settings(manager, settings)

    app = FastAPI(
        title="Switchboard",
        description=(
            "One streaming chat contract over interchangeable inference backends: "
            "a platform on-device model, llama.cpp on the local GPU, or a remote API "
            "(OpenAI, Anthropic, Ollama, LM Studio), with failover and bounded recovery."
        ),
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.settings = settings
    app.state.manager = manager
    app.state.chat = chat_service

    # CORS – allow the frontend (served separately during dev)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.app.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{duration:.3f}s"
        return response

    @app.on_event("startup")
    async def startup_event():
        names = ", ".join(p.name for p in manager.providers) or "none"
        logger.info("Switchboard started | providers: %s", names)
        if auto_select:
            selected = await manager.auto_select_provider()
            logger.info("Active provider: %s", selected.name if selected else "none")

    @app.on_event("shutdown")
    async def shutdown_event():
        await manager.dispose()

    app.include_router(providers.router)
    app.include_router(chat.router)
    app.include_router(recovery.router)

    @app.get("/api/health", tags=["system"])
    async def health():
        provider = manager.get_active_provider()
        return {
            "status": "ok",
            "provider": provider.name if provider else None,
            "state": provider.state.value if provider else None,
            "recovery": chat_service.supervisor.get_status().to_dict(),
        }

    return app


app = create_app()
