"""
base.py – Abstract ModelProvider contract.

Every concrete provider implements the private hooks:
  _check_availability() – probe the backend (may raise; the public method converts)
  _setup()              – load/download/connect; partial state is torn down on failure
  _open_stream()        – start one generation and return a ChunkReader
and optionally _teardown(), _open_session(), _close_session().

The public methods enforce the shared rules: availability probes never raise,
initialize() is idempotent per model/config, streams always yield deltas in
order and honour a per-request CancellationToken, destroy/dispose never raise.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...errors import InitializationError, ProviderError, SessionError, StreamCancelled, StreamingError
from ..streaming import CancellationToken, ChunkReader, guarded_stream, to_deltas

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Data model
# ──────────────────────────────────────────────────────────────────────────────

class ProviderKind(str, Enum):
    LOCAL = "local"
    REMOTE_API = "remote-api"


class ChunkMode(str, Enum):
    DELTA = "delta"                # each chunk is only the newly generated text
    FULL_REPLACE = "full-replace"  # each chunk is the whole text so far


class ProviderState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SESSION_ACTIVE = "session-active"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class ProviderDescriptor:
    name: str
    kind: ProviderKind
    description: str
    chunk_mode: ChunkMode = ChunkMode.DELTA

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "description": self.description,
            "chunk_mode": self.chunk_mode.value,
        }


@dataclass(frozen=True)
class Availability:
    available: bool
    reason: Optional[str] = None
    requires_download: bool = False
    download_size_bytes: Optional[int] = None

    @classmethod
    def unavailable(cls, reason: str) -> "Availability":
        return cls(available=False, reason=reason)

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "reason": self.reason,
            "requires_download": self.requires_download,
            "download_size_bytes": self.download_size_bytes,
        }


class SessionConfig(BaseModel):
    """Sampling settings fixed for the lifetime of one session."""

    model_config = ConfigDict(frozen=True)

    temperature: float = Field(0.7, ge=0.0, le=1.0)
    top_k: int = Field(40, gt=0)
    max_tokens: Optional[int] = Field(None, gt=0)
    system_prompt: Optional[str] = None
    model_id: Optional[str] = None


class ProviderConfig(BaseModel):
    """Options accepted by initialize()."""

    model_config = ConfigDict(frozen=True)

    model_id: Optional[str] = None
    api_key: Optional[str] = None
    api_endpoint: Optional[str] = None


@dataclass(frozen=True)
class DownloadProgress:
    phase: Literal["downloading", "loading", "ready"]
    percentage: int = 0
    current_item: Optional[str] = None

    def to_dict(self) -> dict:
        return {"phase": self.phase, "percentage": self.percentage, "current_item": self.current_item}


@dataclass(eq=False)
class Session:
    """Conversation handle owned by exactly one provider.

    `state` is backend-private; nothing outside the owning provider touches it.
    """

    id: str
    provider: str
    config: SessionConfig
    history: list[dict[str, str]] = field(default_factory=list)
    state: Any = field(default=None, repr=False)


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:12]}"


# ──────────────────────────────────────────────────────────────────────────────
# Contract
# ──────────────────────────────────────────────────────────────────────────────

class ModelProvider(ABC):
    """Abstract base class for all inference backends."""

    name: str = "base"
    kind: ProviderKind = ProviderKind.LOCAL
    description: str = ""
    chunk_mode: ChunkMode = ChunkMode.DELTA

    def __init__(self) -> None:
        self._state = ProviderState.UNINITIALIZED
        self._sessions: dict[str, Session] = {}
        self._progress: Optional[DownloadProgress] = None
        self._init_key: Optional[str] = None
        self._init_lock = asyncio.Lock()

    # ── Identity ──────────────────────────────────────────────────────────────

    @property
    def descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(self.name, self.kind, self.description, self.chunk_mode)

    @property
    def state(self) -> ProviderState:
        if self._state is ProviderState.READY and self._sessions:
            return ProviderState.SESSION_ACTIVE
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ProviderState.READY

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    # ── Availability ──────────────────────────────────────────────────────────

    async def check_availability(self) -> Availability:
        """Probe the backend. Never raises; failures come back as available=False."""
        try:
            return await self._check_availability()
        except Exception as exc:
            logger.warning("%s availability check failed: %s", self.name, exc)
            return Availability.unavailable(f"Availability check failed: {exc}")

    @abstractmethod
    async def _check_availability(self) -> Availability:
        ...

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self, config: Optional[ProviderConfig] = None) -> None:
        """Prepare the backend. A no-op if already ready for a config that resolves the same way.

        Raises:
            InitializationError: setup failed; partial state has been torn down.
        """
        async with self._init_lock:
            if self.is_ready and (config is None or self._config_key(config) == self._init_key):
                return
            if self.is_ready:
                # A different model/config was requested: start over.
                await self._dispose_locked()

            self._state = ProviderState.INITIALIZING
            try:
                await self._setup(config or ProviderConfig())
            except Exception as exc:
                await self._safe_teardown()
                self._progress = None
                self._state = ProviderState.UNINITIALIZED
                if isinstance(exc, InitializationError):
                    raise
                raise InitializationError(
                    f"Failed to initialize {self.name}: {exc}", provider=self.name
                ) from exc

            self._init_key = self._config_key(config or ProviderConfig())
            self._state = ProviderState.READY
            logger.info("Provider %s initialized", self.name)

    def _config_key(self, config: ProviderConfig) -> str:
        return self._effective_config(config).model_dump_json(exclude_none=True)

    def _effective_config(self, config: ProviderConfig) -> ProviderConfig:
        """What *config* resolves to on this provider, with omitted fields filled from current settings.

        Two configs that resolve to the same thing do not trigger a reload.
        """
        return config

    @abstractmethod
    async def _setup(self, config: ProviderConfig) -> None:
        ...

    async def _teardown(self) -> None:
        """Release backend resources. Override when there is something to free."""

    def get_progress(self) -> Optional[DownloadProgress]:
        """Latest download/load snapshot, or None when nothing is in flight."""
        return self._progress

    def _set_progress(self, phase: str, percentage: float, current_item: Optional[str] = None) -> None:
        pct = max(0, min(100, int(round(percentage))))
        self._progress = DownloadProgress(phase=phase, percentage=pct, current_item=current_item)

    async def dispose(self) -> None:
        """Release every session and backend resource. Never raises.

        Afterwards the provider accepts initialize() again as if freshly built.
        """
        async with self._init_lock:
            await self._dispose_locked()

    async def _dispose_locked(self) -> None:
        self._state = ProviderState.DISPOSED
        for session in list(self._sessions.values()):
            await self.destroy_session(session)
        await self._safe_teardown()
        self._progress = None
        self._init_key = None
        self._state = ProviderState.UNINITIALIZED

    async def _safe_teardown(self) -> None:
        try:
            await self._teardown()
        except Exception as exc:
            logger.warning("%s teardown failed: %s", self.name, exc)

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def create_session(self, config: Optional[SessionConfig] = None) -> Session:
        """Create a new session. Raises SessionError before initialize()."""
        if not self.is_ready:
            raise SessionError(
                f"{self.name} is not initialized. Call initialize() first.",
                provider=self.name,
                retryable=False,
            )
        config = config or SessionConfig()
        session = Session(id=new_session_id(), provider=self.name, config=config)
        if config.system_prompt:
            session.history.append({"role": "system", "content": config.system_prompt})
        try:
            session.state = await self._open_session(session)
        except SessionError:
            raise
        except Exception as exc:
            raise SessionError(f"Failed to create session: {exc}", provider=self.name) from exc

        self._sessions[session.id] = session
        logger.debug("%s created %s", self.name, session.id)
        return session

    async def _open_session(self, session: Session) -> Any:
        """Return backend-private session state (None for history-only backends)."""
        return None

    async def destroy_session(self, session: Session) -> None:
        """Best-effort; unknown or already-destroyed sessions are ignored."""
        stored = self._sessions.pop(session.id, None)
        if stored is None:
            return
        try:
            await self._close_session(stored)
        except Exception as exc:
            logger.warning("%s failed to destroy %s: %s", self.name, session.id, exc)

    async def _close_session(self, session: Session) -> None:
        pass

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    # ── Streaming ─────────────────────────────────────────────────────────────

    async def prompt_streaming(
        self,
        session: Session,
        text: str,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Yield the reply to *text* as deltas, in generation order.

        Raises:
            StreamCancelled: *token* was cancelled (raised once, then iteration ends)
            StreamingError: unknown session or transport failure
            ResourceLossError: the accelerator went away mid-generation
        """
        stored = self._sessions.get(session.id)
        if stored is None:
            raise StreamingError(
                f"Session '{session.id}' is not known to {self.name}",
                provider=self.name,
                retryable=False,
            )

        user_turn = {"role": "user", "content": text}
        stored.history.append(user_turn)
        parts: list[str] = []
        completed = False
        try:
            reader = await self._open_stream(stored, text)
            chunks = guarded_stream(reader, token)
            if self.chunk_mode is ChunkMode.FULL_REPLACE:
                chunks = to_deltas(chunks)
            async with aclosing(chunks) as stream:
                async for delta in stream:
                    parts.append(delta)
                    yield delta
            completed = True
        except StreamCancelled:
            logger.debug("%s stream for %s cancelled", self.name, stored.id)
            raise
        except ProviderError:
            raise
        except Exception as exc:
            raise StreamingError(f"Streaming failed: {exc}", provider=self.name) from exc
        finally:
            if completed:
                stored.history.append({"role": "assistant", "content": "".join(parts)})
            elif stored.history and stored.history[-1] is user_turn:
                stored.history.pop()

    @abstractmethod
    async def _open_stream(self, session: Session, text: str) -> ChunkReader:
        """Start generating a reply; the session history already ends with *text*."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} state={self.state.value}>"
