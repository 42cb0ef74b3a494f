"""
native.py – Provider for a platform-supplied on-device model.

The host operating system / runtime exposes the model through a PlatformModel
binding. The binding reports "readily", "after-download" or "no", creates
sessions that keep their own conversation state, and streams the whole reply so
far on every chunk (full-replace), which the base class turns into deltas.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

from ...errors import InitializationError, SessionError
from ..streaming import ChunkReader
from .base import (
    Availability,
    ChunkMode,
    ModelProvider,
    ProviderConfig,
    ProviderKind,
    Session,
    new_session_id,
)

logger = logging.getLogger(__name__)

READILY = "readily"
AFTER_DOWNLOAD = "after-download"
NO = "no"


class PlatformSession(Protocol):
    def prompt_streaming(self, text: str) -> ChunkReader: ...

    async def destroy(self) -> None: ...

    async def clone(self) -> "PlatformSession": ...


class PlatformModel(Protocol):
    async def capabilities(self) -> str:
        """One of "readily", "after-download", "no"."""
        ...

    async def create(
        self,
        *,
        temperature: float,
        top_k: int,
        system_prompt: Optional[str] = None,
        monitor: Optional[Callable[[int, int], None]] = None,
    ) -> PlatformSession: ...


class NativeProvider(ModelProvider):
    name = "native"
    kind = ProviderKind.LOCAL
    description = "Platform built-in on-device model"
    chunk_mode = ChunkMode.FULL_REPLACE

    def __init__(self, platform: Optional[PlatformModel] = None) -> None:
        super().__init__()
        self._platform = platform

    # ── Availability ──────────────────────────────────────────────────────────

    async def _check_availability(self) -> Availability:
        if self._platform is None:
            return Availability.unavailable("No platform model binding is installed on this host")
        status = await self._platform.capabilities()
        if status == READILY:
            return Availability(available=True)
        if status == AFTER_DOWNLOAD:
            return Availability(
                available=True,
                requires_download=True,
                reason="Model needs to be downloaded",
            )
        return Availability.unavailable("The platform model is not supported on this device")

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def _effective_config(self, config: ProviderConfig) -> ProviderConfig:
        # The platform ships exactly one model and needs no credentials.
        return ProviderConfig()

    async def _setup(self, config: ProviderConfig) -> None:
        if self._platform is None:
            raise InitializationError("No platform model binding", provider=self.name, retryable=False)
        status = await self._platform.capabilities()
        if status not in (READILY, AFTER_DOWNLOAD):
            raise InitializationError(
                "The platform model is not available", provider=self.name, retryable=False
            )
        if status == AFTER_DOWNLOAD:
            # The platform downloads lazily when the first session is created.
            self._set_progress("downloading", 0)
        else:
            self._set_progress("ready", 100)

    def _on_download_progress(self, loaded: int, total: int) -> None:
        if total <= 0:
            return
        pct = loaded / total * 100
        self._set_progress("ready" if loaded >= total else "downloading", pct)

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def _open_session(self, session: Session) -> Any:
        platform_session = await self._platform.create(
            temperature=session.config.temperature,
            top_k=session.config.top_k,
            system_prompt=session.config.system_prompt,
            monitor=self._on_download_progress,
        )
        self._set_progress("ready", 100)
        return platform_session

    async def _close_session(self, session: Session) -> None:
        await session.state.destroy()

    async def clone_session(self, session: Session) -> Session:
        """Branch a conversation: the copy shares history up to now, then diverges."""
        stored = self.get_session(session.id)
        if stored is None:
            raise SessionError(f"Session '{session.id}' not found", provider=self.name, retryable=False)
        try:
            cloned_state = await stored.state.clone()
        except Exception as exc:
            raise SessionError(f"Failed to clone session: {exc}", provider=self.name) from exc

        clone = Session(
            id=new_session_id(),
            provider=self.name,
            config=stored.config,
            history=list(stored.history),
            state=cloned_state,
        )
        self._sessions[clone.id] = clone
        return clone

    # ── Streaming ─────────────────────────────────────────────────────────────

    async def _open_stream(self, session: Session, text: str) -> ChunkReader:
        return session.state.prompt_streaming(text)
