"""
deps.py – FastAPI dependencies for the objects created once per app in main.create_app().
"""
from __future__ import annotations

from fastapi import HTTPException, Request

from .errors import (
    InitializationError,
    ProviderError,
    ProviderNotFoundError,
    ProviderUnavailableError,
    describe_error,
)
from .services.chat_service import ChatService
from .services.provider_manager import ProviderManager
from .services.recovery import RecoverySupervisor


def get_manager(request: Request) -> ProviderManager:
    return request.app.state.manager


def get_chat(request: Request) -> ChatService:
    return request.app.state.chat


def get_supervisor(request: Request) -> RecoverySupervisor:
    return request.app.state.chat.supervisor


def http_error(exc: ProviderError) -> HTTPException:
    """Map a provider failure onto an HTTP status with a user-facing payload."""
    if isinstance(exc, ProviderNotFoundError):
        status = 404
    elif isinstance(exc, ProviderUnavailableError):
        status = 503
    elif isinstance(exc, InitializationError):
        status = 502
    else:
        status = 500
    return HTTPException(status_code=status, detail=describe_error(exc).to_dict())
